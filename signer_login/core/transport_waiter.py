import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from signer_login.core.models import PeerIdentity, SessionToken
from signer_login.network.transport import ConnectStatus, SignerTransport
from signer_login.utils.error_codes import ErrorKind, SignerLoginError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitResult:
    success: bool
    peer_identity: Optional[PeerIdentity] = None
    needs_approval: bool = False
    approval_uri: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "WaitResult":
        return cls(success=False, error_kind=kind, error_message=message)


class TransportWaiter:
    """
    One connect attempt for one token.

    wait_for_peer() may be called once and never retries. release() can be
    called at any time; after it, whatever the transport produces is dropped
    and wait_for_peer() returns None.
    """

    def __init__(self, transport: SignerTransport, on_approval_uri=None):
        self.transport = transport
        self.on_approval_uri = on_approval_uri
        self._task = None
        self._used = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def wait_for_peer(self, token: SessionToken) -> Optional[WaitResult]:
        if self._used:
            raise RuntimeError("TransportWaiter is single-use; create a new one per attempt")
        self._used = True
        if self._released:
            return None

        self._task = asyncio.ensure_future(
            self.transport.connect(token, on_approval_uri=self._forward_approval_uri)
        )
        try:
            outcome = await self._task
        except asyncio.CancelledError:
            if self._released:
                logger.debug("Transport wait released before the signer answered")
                return None
            raise
        except SignerLoginError as e:
            result = WaitResult.failure(e.kind, e.message)
        except (OSError, asyncio.TimeoutError) as e:
            result = WaitResult.failure(ErrorKind.TRANSPORT_ERROR, str(e) or "Connection failed")
        else:
            if outcome.status is ConnectStatus.NEEDS_APPROVAL:
                result = WaitResult(
                    success=False,
                    needs_approval=True,
                    approval_uri=outcome.approval_uri,
                    error_message=outcome.message,
                )
            elif outcome.public_key:
                result = WaitResult(success=True, peer_identity=PeerIdentity(outcome.public_key))
            else:
                result = WaitResult.failure(ErrorKind.TRANSPORT_ERROR, "Signer did not report a public key")

        if self._released:
            logger.debug("Discarding transport result that arrived after release")
            return None
        return result

    def _forward_approval_uri(self, uri: str):
        if not self._released and self.on_approval_uri:
            self.on_approval_uri(uri)

    def release(self):
        """Drops the pending wait. Closing the subscription itself is the transport owner's job."""
        if self._released:
            return
        self._released = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
