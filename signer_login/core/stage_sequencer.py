import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional

from signer_login.core.config import StageTimings
from signer_login.core.models import AuthResult, PeerIdentity
from signer_login.core.state_machine import Stage
from signer_login.utils.error_codes import ErrorKind, SignerLoginError

logger = logging.getLogger(__name__)

SEQUENCE = (Stage.CONNECTED, Stage.SIGNING, Stage.SYNCING)

# authenticate(peer, *, on_progress, timeout_seconds) -> AuthResult
Authenticate = Callable[..., Awaitable[AuthResult]]


class StageFailure(Exception):
    def __init__(self, stage: Stage, kind: ErrorKind, message: str):
        self.stage = stage
        self.kind = kind
        self.message = message
        super().__init__(f"{stage.name}: {message}")


class StageSequencer:
    """
    Walks CONNECTED -> SIGNING -> SYNCING -> COMPLETE for a known peer.

    A stage is left only once it has been visible for its minimum time AND
    its readiness signal has fired. Readiness comes from the authenticate
    progress callback (or its final success) and is delivered through
    asyncio.Event objects that the walk awaits directly. If readiness beats
    the minimum, the walk sleeps out the rest of the minimum.
    """

    def __init__(
        self,
        authenticate: Authenticate,
        timings: StageTimings,
        on_stage: Callable[[Stage], None],
        timeout_seconds: float = 30.0,
    ):
        self.authenticate = authenticate
        self.timings = timings
        self.on_stage = on_stage
        self.timeout_seconds = timeout_seconds
        self.current_stage: Optional[Stage] = None
        self.stage_entered_at: Optional[float] = None
        self.auth_calls = 0
        self._completed = False
        self._ready = {}
        self._failed = None
        self._failure = None

    @property
    def completed(self) -> bool:
        return self._completed

    async def run(self, peer: PeerIdentity, resume_at: Stage = Stage.CONNECTED):
        """Returns once COMPLETE has been reported; raises StageFailure otherwise."""
        if self._completed:
            raise RuntimeError("Sequence already completed")
        stages = SEQUENCE[SEQUENCE.index(resume_at):]

        ready = {stage: asyncio.Event() for stage in SEQUENCE}
        ready[Stage.CONNECTED].set()  # the peer key is already confirmed
        self._ready = ready
        self._failed = asyncio.Event()
        self._failure = None

        auth_task = None
        try:
            for stage in stages:
                self._enter(stage)
                if auth_task is None:
                    auth_task = asyncio.create_task(self._authenticate(peer, ready))
                await self._dwell(stage)
            self._complete()
        finally:
            if auth_task is not None and not auth_task.done():
                auth_task.cancel()

    def _enter(self, stage: Stage):
        self.current_stage = stage
        self.stage_entered_at = asyncio.get_running_loop().time()
        self.on_stage(stage)

    async def _dwell(self, stage: Stage):
        await self._until(self._ready[stage].wait())
        elapsed = asyncio.get_running_loop().time() - self.stage_entered_at
        left = self.timings.min_display(stage) - elapsed
        if left > 0:
            await self._until(asyncio.sleep(left))

    async def _until(self, awaitable):
        step = asyncio.ensure_future(awaitable)
        failed = asyncio.ensure_future(self._failed.wait())
        try:
            await asyncio.wait({step, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            step.cancel()
            failed.cancel()
        if self._failure is not None:
            raise self._failure

    def _complete(self):
        if self._completed:
            return
        self._completed = True
        self.current_stage = Stage.COMPLETE
        self.on_stage(Stage.COMPLETE)

    async def _authenticate(self, peer: PeerIdentity, ready):
        self.auth_calls += 1
        on_progress = functools.partial(self._on_progress, ready)
        try:
            result = await self.authenticate(
                peer, on_progress=on_progress, timeout_seconds=self.timeout_seconds
            )
        except SignerLoginError as e:
            self._fail(e.kind, e.message)
            return
        except Exception as e:
            logger.exception("authenticate raised")
            self._fail(ErrorKind.AUTHENTICATE_FAILURE, str(e) or "Authentication failed")
            return

        if result.success:
            for event in ready.values():
                event.set()
        else:
            self._fail(
                result.error_kind or ErrorKind.AUTHENTICATE_FAILURE,
                result.error_message or "Authentication failed",
            )

    @staticmethod
    def _on_progress(ready, stage_name: str, message: Optional[str] = None):
        logger.debug("Authenticate progress: %s %s", stage_name, message or "")
        if stage_name in ("syncing", "complete"):
            ready[Stage.SIGNING].set()
        if stage_name == "complete":
            ready[Stage.SYNCING].set()

    def _fail(self, kind: ErrorKind, message: str):
        if self._failure is not None or self._completed:
            return
        stage = self.current_stage or Stage.CONNECTED
        logger.warning("Authentication failed during %s: %s", stage.name, message)
        self._failure = StageFailure(stage, kind, message)
        self._failed.set()
