import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from signer_login.utils.error_codes import InvalidInputError

HEX_PUBKEY = re.compile(r"^[0-9a-f]{64}$")

BUNKER_SCHEME = "bunker"
CONNECT_SCHEME = "nostrconnect"


@dataclass(frozen=True)
class BunkerPointer:
    signer_pubkey: str
    relays: tuple
    secret: str


@dataclass(frozen=True)
class ConnectPointer:
    client_pubkey: str
    relays: tuple
    secret: str


def _split(raw: str, scheme: str):
    if raw is None or not raw.strip():
        raise InvalidInputError("Connection string is empty")
    value = raw.strip()
    parts = urlsplit(value)
    if parts.scheme.lower() != scheme:
        raise InvalidInputError(f"Expected a {scheme}:// connection string")

    # bunker://<pubkey>?... puts the key in netloc
    pubkey = (parts.netloc or parts.path.lstrip("/")).lower()
    if not HEX_PUBKEY.match(pubkey):
        raise InvalidInputError("Connection string does not contain a valid public key")

    params = parse_qs(parts.query)
    relays = tuple(r for r in params.get("relay", []) if r.startswith(("ws://", "wss://")))
    if not relays:
        raise InvalidInputError("Connection string does not name a relay")
    return pubkey, relays, params


def parse_bunker_url(raw: str) -> BunkerPointer:
    """
    Validates a signer-issued bunker:// URL.
    A URL without a secret is refused: anyone who saw it could hijack the connection.
    """
    pubkey, relays, params = _split(raw, BUNKER_SCHEME)
    secret = (params.get("secret") or [""])[0].strip()
    if not secret:
        raise InvalidInputError(
            "This bunker URL does not contain a verification secret. "
            "Generate a new bunker URL from your signer app that includes a secret."
        )
    return BunkerPointer(signer_pubkey=pubkey, relays=relays, secret=secret)


def parse_connect_uri(raw: str) -> ConnectPointer:
    pubkey, relays, params = _split(raw, CONNECT_SCHEME)
    secret = (params.get("secret") or [""])[0].strip()
    if not secret:
        raise InvalidInputError("Connection URI is missing its secret")
    return ConnectPointer(client_pubkey=pubkey, relays=relays, secret=secret)
