import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from signer_login.core.models import PeerIdentity, SessionToken
from signer_login.core.transport_waiter import TransportWaiter
from signer_login.network.transport import SignerTransport
from signer_login.utils.error_codes import TERMINAL_TOKEN_KINDS, ErrorKind

logger = logging.getLogger(__name__)


class PollOutcome(Enum):
    APPROVED = auto()
    STILL_PENDING = auto()
    EXHAUSTED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    attempt: int
    max_attempts: int
    peer_identity: Optional[PeerIdentity] = None
    approval_uri: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    manual: bool = False


class ApprovalPoller:
    """
    Re-probes the signer with the same token while a human approves the request.

    Approval flows tolerate repeated probing, so every probe reuses the token,
    each through its own single-use TransportWaiter. Probes never overlap and
    each one gives up after probe_timeout_seconds.
    Running out of scheduled attempts is reported as EXHAUSTED and leaves
    check_now() usable; only stop() ends the poller for good.
    """

    def __init__(
        self,
        transport: SignerTransport,
        interval_seconds: float = 4.0,
        max_attempts: int = 30,
        probe_timeout_seconds: float = 30.0,
        on_approval_uri: Optional[Callable[[str], None]] = None,
    ):
        self.transport = transport
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.probe_timeout_seconds = probe_timeout_seconds
        self.on_approval_uri = on_approval_uri
        self._token = None
        self._on_result = None
        self._attempts = 0
        self._stopped = True
        self._interval_task = None
        self._waiter = None
        self._lock = asyncio.Lock()

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def polling(self) -> bool:
        return self._interval_task is not None and not self._interval_task.done()

    def start(self, token: SessionToken, on_result: Callable[[PollResult], None]):
        self.stop()
        self._token = token
        self._on_result = on_result
        self._attempts = 0
        self._stopped = False
        logger.info("Starting approval polling every %gs, up to %d attempts",
                    self.interval_seconds, self.max_attempts)
        self._interval_task = asyncio.create_task(self._run())

    async def _run(self):
        while self._attempts < self.max_attempts:
            await asyncio.sleep(self.interval_seconds)
            if self._stopped:
                return
            self._attempts += 1
            logger.debug("Approval poll attempt %d/%d", self._attempts, self.max_attempts)

            result = await self._probe(manual=False)
            if result is None:
                return
            if result.outcome is PollOutcome.STILL_PENDING and self._attempts >= self.max_attempts:
                logger.info("Approval polling exhausted after %d attempts", self._attempts)
                result = PollResult(
                    outcome=PollOutcome.EXHAUSTED,
                    attempt=result.attempt,
                    max_attempts=self.max_attempts,
                    approval_uri=result.approval_uri,
                )
            self._deliver(result)
            if result.outcome in (PollOutcome.APPROVED, PollOutcome.FAILED):
                return

    async def check_now(self) -> Optional[PollResult]:
        """Out-of-cycle probe; the scheduled attempt counter is left alone."""
        if self._stopped or self._token is None:
            return None
        logger.info("Manual approval check")
        result = await self._probe(manual=True)
        if result is not None:
            self._deliver(result)
        return result

    async def _probe(self, manual: bool) -> Optional[PollResult]:
        async with self._lock:
            if self._stopped:
                return None
            waiter = TransportWaiter(self.transport, on_approval_uri=self.on_approval_uri)
            self._waiter = waiter
            timed_out = False
            try:
                wait = await asyncio.wait_for(
                    waiter.wait_for_peer(self._token), self.probe_timeout_seconds
                )
            except asyncio.TimeoutError:
                waiter.release()
                wait = None
                timed_out = True
            finally:
                self._waiter = None
        if self._stopped:
            return None

        common = dict(attempt=self._attempts, max_attempts=self.max_attempts, manual=manual)
        if timed_out:
            # A silent signer is still a pending approval; the attempt counts.
            logger.warning("Approval probe got no answer within %gs", self.probe_timeout_seconds)
            return PollResult(
                outcome=PollOutcome.STILL_PENDING,
                error_kind=ErrorKind.TIMEOUT,
                error_message="The signer did not answer the approval check",
                **common,
            )
        if wait is None:
            return None
        if wait.success:
            logger.info("Approval detected for %s", wait.peer_identity.short)
            return PollResult(outcome=PollOutcome.APPROVED, peer_identity=wait.peer_identity, **common)
        if wait.needs_approval:
            return PollResult(outcome=PollOutcome.STILL_PENDING, approval_uri=wait.approval_uri, **common)
        if wait.error_kind in TERMINAL_TOKEN_KINDS:
            return PollResult(
                outcome=PollOutcome.FAILED,
                error_kind=wait.error_kind,
                error_message=wait.error_message,
                **common,
            )
        # Relay hiccups do not end the approval window.
        logger.warning("Approval probe failed, will keep polling: %s", wait.error_message)
        return PollResult(
            outcome=PollOutcome.STILL_PENDING,
            error_kind=wait.error_kind,
            error_message=wait.error_message,
            **common,
        )

    def _deliver(self, result: PollResult):
        callback = self._on_result
        if self._stopped or callback is None:
            return
        if result.outcome in (PollOutcome.APPROVED, PollOutcome.FAILED):
            self.stop()
        callback(result)

    def stop(self):
        if self._stopped and self._interval_task is None:
            return
        logger.debug("Stopping approval polling")
        self._stopped = True
        self._on_result = None
        task, self._interval_task = self._interval_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self._waiter is not None:
            self._waiter.release()
