import json
import logging
import time
from typing import Awaitable, Callable, Optional

import nacl.utils
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from signer_login.core.models import AuthResult, PeerIdentity
from signer_login.network.transport import SignerTransport
from signer_login.utils.error_codes import ErrorKind, SessionTimeoutError, SignerLoginError

logger = logging.getLogger(__name__)

AUTH_EVENT_KIND = 22242


class RelayAuthenticator:
    """
    Default authenticate() for the CLI: the signer signs a fresh login
    challenge and we check the signature against the peer key.
    """

    def __init__(
        self,
        transport: SignerTransport,
        on_synced: Optional[Callable[[PeerIdentity], Awaitable[None]]] = None,
    ):
        self.transport = transport
        self.on_synced = on_synced

    @staticmethod
    def build_challenge() -> bytes:
        return json.dumps({
            "kind": AUTH_EVENT_KIND,
            "created_at": int(time.time()),
            "nonce": nacl.utils.random(16).hex(),
        }, sort_keys=True).encode("utf-8")

    async def __call__(self, peer: PeerIdentity, *, on_progress, timeout_seconds: float) -> AuthResult:
        on_progress("signing", "Signing authentication event...")
        challenge = self.build_challenge()
        try:
            signature = await self.transport.request_signature(challenge, timeout_seconds)
        except SessionTimeoutError as e:
            return AuthResult(success=False, error_kind=ErrorKind.TIMEOUT, error_message=e.message)
        except SignerLoginError as e:
            return AuthResult(success=False, error_kind=e.kind, error_message=e.message)

        try:
            VerifyKey(bytes.fromhex(peer.public_key)).verify(challenge, signature)
        except (BadSignatureError, ValueError) as e:
            logger.warning("Signature from %s did not verify: %s", peer.short, e)
            return AuthResult(
                success=False,
                error_kind=ErrorKind.AUTHENTICATE_FAILURE,
                error_message="The signer returned an invalid signature",
            )

        on_progress("syncing", "Loading your data...")
        if self.on_synced:
            await self.on_synced(peer)
        on_progress("complete", "Done!")
        return AuthResult(success=True)
