import logging
from typing import Optional
from urllib.parse import urlencode

from signer_login.core.config import RelayConfig
from signer_login.core.models import SessionToken
from signer_login.crypto.key_manager import KeyManager

logger = logging.getLogger(__name__)


def build_connection_uri(client_pubkey: str, secret: str, relays, name: str, permissions) -> str:
    query = [("relay", relay) for relay in relays]
    query.append(("secret", secret))
    query.append(("name", name))
    if permissions:
        query.append(("perms", ",".join(permissions)))
    return f"nostrconnect://{client_pubkey}?{urlencode(query)}"


class ConnectionUriBuilder:
    """Mints DirectConnect tokens, one fresh client key and secret per attempt."""

    def __init__(self, config: Optional[RelayConfig] = None, key_manager: Optional[KeyManager] = None):
        self.config = config or RelayConfig()
        self.key_manager = key_manager or KeyManager()

    def new_token(self) -> SessionToken:
        self.key_manager.generate_ephemeral_keys()
        client_pubkey = self.key_manager.get_public_key_hex()
        uri = build_connection_uri(
            client_pubkey,
            KeyManager.new_secret(),
            self.config.relays,
            self.config.app_name,
            self.config.permissions,
        )
        logger.info("Generated connection URI for client %s... on %d relays",
                    client_pubkey[:16], len(self.config.relays))
        return SessionToken.direct(uri)

    def close(self):
        self.key_manager.wipe_keys()
