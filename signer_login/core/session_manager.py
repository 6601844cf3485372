import asyncio
import functools
import logging
from typing import Callable, Optional

from signer_login.core.approval_poller import ApprovalPoller, PollOutcome, PollResult
from signer_login.core.config import SessionConfig
from signer_login.core.models import (
    ApprovalRequest,
    PeerIdentity,
    ProgressSnapshot,
    SessionToken,
    TokenScheme,
)
from signer_login.core.stage_sequencer import Authenticate, StageFailure, StageSequencer
from signer_login.core.state_machine import Stage, StateMachine
from signer_login.core.timeout_supervisor import TimeoutSupervisor
from signer_login.core.transport_waiter import TransportWaiter, WaitResult
from signer_login.network.transport import SignerTransport
from signer_login.utils.error_codes import (
    TERMINAL_TOKEN_KINDS,
    ErrorKind,
    ExpiredTokenError,
    InvalidInputError,
)
from signer_login.utils.validators import parse_bunker_url

logger = logging.getLogger(__name__)

APPROVAL_HINT = "Approve the connection request in your signer app."
STILL_WAITING = "Still waiting for approval. Please approve the connection in your signer app."
POLLING_STOPPED = "Stopped checking automatically. Approve the request in your signer app, then check again."

# Stages in which an attempt is running and must survive a bad paste.
_ATTEMPT_STAGES = frozenset({
    Stage.WAITING, Stage.AWAITING_APPROVAL, Stage.CONNECTED, Stage.SIGNING, Stage.SYNCING,
})


class _Session:
    """One connection attempt. Every async callback checks `disposed` before touching state."""

    def __init__(self, token: Optional[SessionToken]):
        self.token = token
        self.disposed = False
        self.waiter: Optional[TransportWaiter] = None
        self.poller: Optional[ApprovalPoller] = None
        self.flow_task: Optional[asyncio.Task] = None


class ConnectionStateMachine:
    """
    Single source of truth for a remote-signer login.

    Composes TransportWaiter, ApprovalPoller, StageSequencer and
    TimeoutSupervisor, and publishes a ProgressSnapshot after every change.
    At most one session, and therefore one transport subscription, is live:
    opening a new attempt always releases the previous one first.
    """

    def __init__(
        self,
        transport: SignerTransport,
        authenticate: Authenticate,
        config: Optional[SessionConfig] = None,
        token_factory: Optional[Callable[[], SessionToken]] = None,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        on_complete: Optional[Callable[[PeerIdentity], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        self.transport = transport
        self.authenticate = authenticate
        self.config = config or SessionConfig()
        self.token_factory = token_factory
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_cancel = on_cancel

        self.state_machine = StateMachine()
        self.supervisor = TimeoutSupervisor(self._on_deadline, self._on_slow)
        self._session: Optional[_Session] = None
        self._token: Optional[SessionToken] = None
        self._peer: Optional[PeerIdentity] = None
        self._error = None  # (kind, message, stage)
        self._message: Optional[str] = None
        self._approval_uri: Optional[str] = None
        # Raw tokens that must never be probed again. One entry per finished attempt,
        # kept for the life of this machine.
        self._spent_tokens = set()
        self._background = set()
        self._snapshot = ProgressSnapshot(stage=Stage.IDLE)

    # -- read side ---------------------------------------------------------

    @property
    def stage(self) -> Stage:
        return self.state_machine.current_state

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    @property
    def connection_uri(self) -> Optional[str]:
        """The DirectConnect URI for the caller to show or hand to an 'open app' primitive."""
        if self._token is not None and self._token.scheme is TokenScheme.DIRECT_CONNECT:
            return self._token.raw
        return None

    @property
    def peer_identity(self) -> Optional[PeerIdentity]:
        return self._peer

    # -- public operations -------------------------------------------------

    async def start(self, token: Optional[SessionToken] = None):
        if token is None:
            if self.token_factory is None:
                raise ValueError("start() needs a token when no token factory is configured")
            token = self.token_factory()
        if token.scheme is not TokenScheme.DIRECT_CONNECT:
            raise ValueError("start() takes a DirectConnect token; use submit_connection_string() for bunker URLs")
        finished = self.state_machine.is_terminal and self._token is not None and token.raw == self._token.raw
        if finished or token.raw in self._spent_tokens:
            raise ExpiredTokenError("A new connection string is required to sign in again")

        session = await self._open_session(token)
        if self.config.passive_scanning:
            logger.info("Passive scanning context, waiting for the signer right away")
            self._begin_waiting(session)

    async def open_in_signer(self) -> Optional[str]:
        """Returns the URI to open in a signer app and starts waiting if nothing is waiting yet."""
        session = self._session
        uri = self.connection_uri
        if session is None or session.disposed or uri is None:
            return None
        if self.stage is Stage.IDLE:
            self._begin_waiting(session)
        return uri

    async def submit_connection_string(self, raw: str):
        value = (raw or "").strip()
        try:
            pointer = parse_bunker_url(value)
        except InvalidInputError as e:
            self._reject_input(e.kind, e.message)
            return
        if value in self._spent_tokens:
            self._reject_input(
                ErrorKind.EXPIRED_TOKEN,
                "This bunker URL was already used. Generate a new one in your signer app.",
            )
            return

        logger.info("Connecting with bunker URL for signer %s... (secret length %d)",
                    pointer.signer_pubkey[:16], len(pointer.secret))
        session = await self._open_session(SessionToken.bunker(value))
        self._begin_waiting(session)

    async def check_approval_now(self) -> Optional[PollResult]:
        session = self._session
        if self.stage is not Stage.AWAITING_APPROVAL or session is None or session.poller is None:
            return None
        return await session.poller.check_now()

    async def retry(self):
        if self.stage is not Stage.ERROR:
            logger.debug("retry() ignored in %s", self.stage.name)
            return
        session = self._session
        input_error = self._error is not None and self._error[2] is None and self._peer is None
        if input_error and session is not None and not session.disposed and self.connection_uri:
            logger.info("Back to the connection options after an input error")
            self._error = None
            self._message = None
            self.state_machine.transition_to(Stage.IDLE)
            self._publish()
            return
        if (
            session is not None
            and not session.disposed
            and self._peer is not None
            and self.transport.is_connected()
        ):
            logger.info("Signer still connected, retrying from the signing stage")
            self._error = None
            self._message = None
            self.state_machine.transition_to(Stage.SIGNING)
            self._publish()
            session.flow_task = asyncio.create_task(self._run_sequence(session, Stage.SIGNING))
            return

        # Single-use secrets cannot be probed again; the caller needs a fresh token.
        logger.info("Not connected, restarting from the beginning")
        await self._dispose_session()
        self._token = None
        self._peer = None
        self._error = None
        self._message = None
        self.state_machine.transition_to(Stage.IDLE)
        self._publish()

    async def reset(self):
        """Back to the options view; a shown DirectConnect URI stays usable."""
        if self.state_machine.is_terminal:
            return
        token = self._token if self.connection_uri else None
        await self._dispose_session()
        self._session = _Session(token)
        self._token = token
        self._peer = None
        self._error = None
        self._message = None
        if self.stage is not Stage.IDLE:
            self.state_machine.transition_to(Stage.IDLE)
        self._publish()

    async def cancel(self):
        if self.state_machine.is_terminal:
            return
        logger.info("User cancelled")
        session, self._session = self._session, None
        if session is not None:
            self._teardown(session)
        self.supervisor.clear()
        self.state_machine.transition_to(Stage.CANCELLED)
        await self.transport.disconnect()
        if self.on_cancel:
            self.on_cancel()

    # -- session lifecycle ---------------------------------------------------

    async def _open_session(self, token: Optional[SessionToken], publish: bool = True) -> _Session:
        await self._dispose_session()
        if self.state_machine.is_terminal:
            self.state_machine.open_new_session()
        elif self.stage is not Stage.IDLE:
            self.state_machine.transition_to(Stage.IDLE)

        session = _Session(token)
        self._session = session
        self._token = token
        self._peer = None
        self._error = None
        self._message = None
        self._approval_uri = None
        if publish:
            self._publish()
        return session

    async def _dispose_session(self):
        session, self._session = self._session, None
        if session is not None:
            self._teardown(session)
        self.supervisor.clear()
        # The subscription must be gone before anything opens a new one.
        await self.transport.disconnect()

    def _teardown(self, session: _Session):
        session.disposed = True
        if session.poller is not None:
            session.poller.stop()
        if session.waiter is not None:
            session.waiter.release()
        task = session.flow_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _is_live(self, session: _Session) -> bool:
        return session is self._session and not session.disposed

    def _reject_input(self, kind: ErrorKind, message: str):
        """Reports a bad pasted string without touching the attempt, its URI or the transport."""
        logger.warning("Rejected connection string: %s", message)
        if self.stage in _ATTEMPT_STAGES:
            self._publish(input_error=(kind, message))
            return
        if self.state_machine.is_terminal:
            if self._token is not None:
                self._spent_tokens.add(self._token.raw)
            self._session = None
            self._token = None
            self._peer = None
            self.state_machine.open_new_session()
        self._error = (kind, message, None)
        self._message = None
        if self.stage is not Stage.ERROR:
            self.state_machine.transition_to(Stage.ERROR)
        self._publish()

    # -- connect phase -------------------------------------------------------

    def _begin_waiting(self, session: _Session):
        self.state_machine.transition_to(Stage.WAITING)
        self._publish()
        if session.token.scheme is TokenScheme.BUNKER_URL:
            self.supervisor.arm_deadline(self.config.bunker_connect_deadline_seconds)
        else:
            self.supervisor.arm_deadline(self.config.direct_connect_deadline_seconds)
        session.flow_task = asyncio.create_task(self._connect_flow(session))

    async def _connect_flow(self, session: _Session):
        waiter = TransportWaiter(
            self.transport, on_approval_uri=functools.partial(self._on_approval_uri, session)
        )
        session.waiter = waiter
        try:
            result = await waiter.wait_for_peer(session.token)
        except Exception as e:
            logger.exception("Transport wait crashed")
            self._fail(session, ErrorKind.INTERNAL, str(e) or "Connection failed", Stage.WAITING)
            return
        finally:
            session.waiter = None

        if result is None or not self._is_live(session):
            return
        if result.success:
            await self._on_peer(session, result.peer_identity)
        elif result.needs_approval:
            self._await_approval(session, result)
        else:
            self._fail(session, result.error_kind, result.error_message or "Connection failed", Stage.WAITING)

    async def _on_peer(self, session: _Session, peer: PeerIdentity):
        logger.info("Connection successful, pubkey %s", peer.short)
        self._peer = peer
        self._message = None
        self.supervisor.clear_deadline()
        await self._run_sequence(session, Stage.CONNECTED)

    def _on_approval_uri(self, session: _Session, uri: str):
        if not self._is_live(session):
            return
        self._approval_uri = uri
        if self.stage is Stage.AWAITING_APPROVAL:
            self._publish()

    # -- approval phase ------------------------------------------------------

    def _await_approval(self, session: _Session, result: WaitResult):
        logger.info("Signer requires approval, starting auto-poll")
        # The poller bounds this phase; a terminal transport error is the only expiry.
        self.supervisor.clear_deadline()
        if result.approval_uri:
            self._approval_uri = result.approval_uri
        self._message = result.error_message or APPROVAL_HINT

        poller = ApprovalPoller(
            self.transport,
            interval_seconds=self.config.approval_poll_interval_seconds,
            max_attempts=self.config.approval_max_poll_attempts,
            probe_timeout_seconds=self.config.approval_probe_timeout_seconds,
            on_approval_uri=functools.partial(self._on_approval_uri, session),
        )
        session.poller = poller
        self.state_machine.transition_to(Stage.AWAITING_APPROVAL)
        self._publish()
        poller.start(session.token, functools.partial(self._on_poll_result, session))

    def _on_poll_result(self, session: _Session, result: PollResult):
        if not self._is_live(session):
            return
        if result.approval_uri:
            self._approval_uri = result.approval_uri

        if result.outcome is PollOutcome.APPROVED:
            session.poller = None
            self._approval_uri = None
            session.flow_task = asyncio.create_task(self._on_peer(session, result.peer_identity))
        elif result.outcome is PollOutcome.FAILED:
            self._fail(session, result.error_kind, result.error_message, Stage.AWAITING_APPROVAL)
        elif result.outcome is PollOutcome.EXHAUSTED:
            self._message = POLLING_STOPPED
            self._publish()
        else:
            if result.manual:
                self._message = STILL_WAITING
            self._publish()

    # -- authentication phase ------------------------------------------------

    async def _run_sequence(self, session: _Session, resume_at: Stage):
        self.supervisor.arm_deadline(self.config.authenticate_deadline_seconds)
        sequencer = StageSequencer(
            self.authenticate,
            self.config.timings,
            functools.partial(self._on_sequence_stage, session),
            timeout_seconds=self.config.authenticate_deadline_seconds,
        )
        try:
            await sequencer.run(self._peer, resume_at)
        except StageFailure as e:
            self._fail(session, e.kind, e.message, e.stage)

    def _on_sequence_stage(self, session: _Session, stage: Stage):
        if not self._is_live(session):
            return
        if stage is Stage.COMPLETE:
            self._finish(session)
            return

        changed = self.stage is not stage
        if changed:
            self.state_machine.transition_to(stage)
        if stage is Stage.SIGNING:
            self.supervisor.arm_slow_warning(self.config.slow_warning_after_seconds)
        else:
            self.supervisor.clear_slow_warning()
        if changed:
            self._publish()

    def _finish(self, session: _Session):
        self.supervisor.clear()
        if session.token is not None and session.token.is_single_use:
            self._spent_tokens.add(session.token.raw)
        self.state_machine.transition_to(Stage.COMPLETE)
        self._publish()
        # Timers and pollers go; the signer connection is handed to the caller.
        self._teardown(session)
        logger.info("Sign-in complete for %s", self._peer.short)
        if self.on_complete:
            self.on_complete(self._peer)

    # -- failures and timers ---------------------------------------------------

    def _fail(self, session: _Session, kind: ErrorKind, message: str, stage: Optional[Stage]):
        if not self._is_live(session):
            return
        kind = kind or ErrorKind.INTERNAL
        logger.warning("Attempt failed (%s) during %s: %s", kind.name,
                       stage.name if stage else "input", message)
        self.supervisor.clear()
        if session.poller is not None:
            session.poller.stop()
            session.poller = None
        if session.waiter is not None:
            session.waiter.release()
        task = session.flow_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if kind in TERMINAL_TOKEN_KINDS and session.token is not None and session.token.is_single_use:
            self._spent_tokens.add(session.token.raw)

        self._error = (kind, message, stage)
        self._message = None
        self.state_machine.transition_to(Stage.ERROR)
        self._publish()

    def _on_deadline(self):
        session = self._session
        if session is None or session.disposed:
            return
        stage = self.stage
        if stage is Stage.WAITING:
            message = "Timed out waiting for the signer to respond. Please try again."
        else:
            message = "Signing timed out. Make sure your signer app is open and approve the request."
        self._fail(session, ErrorKind.TIMEOUT, message, stage)
        if self._peer is None:
            self._spawn(self.transport.disconnect())

    def _on_slow(self):
        session = self._session
        if session is not None and not session.disposed and self.stage is Stage.SIGNING:
            self._publish()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- publishing ------------------------------------------------------------

    def _publish(self, input_error=None):
        stage = self.stage
        if stage is Stage.CANCELLED:
            return
        approval = None
        session = self._session
        if stage is Stage.AWAITING_APPROVAL and session is not None and session.poller is not None:
            approval = ApprovalRequest(
                approval_uri=self._approval_uri,
                poll_attempt=session.poller.attempts,
                max_poll_attempts=session.poller.max_attempts,
                poll_interval_seconds=session.poller.interval_seconds,
            )
        error_kind = error_message = error_stage = None
        if input_error is not None:
            error_kind, error_message = input_error
        elif stage is Stage.ERROR and self._error is not None:
            error_kind, error_message, error_stage = self._error

        self._snapshot = ProgressSnapshot(
            stage=stage,
            peer_identity=self._peer,
            approval_request=approval,
            error_kind=error_kind,
            error_message=error_message,
            error_stage=error_stage,
            slow_warning=self.supervisor.slow_warning,
            message=self._message,
            connection_uri=self.connection_uri,
        )
        if self.on_progress:
            self.on_progress(self._snapshot)
