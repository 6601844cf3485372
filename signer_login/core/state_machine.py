import logging
from enum import Enum, auto

logger = logging.getLogger(__name__)


class Stage(Enum):
    IDLE = auto()
    WAITING = auto()
    AWAITING_APPROVAL = auto()
    CONNECTED = auto()
    SIGNING = auto()
    SYNCING = auto()
    COMPLETE = auto()
    ERROR = auto()
    CANCELLED = auto()


# Forward path plus the explicit retry/cancel/reset edges.
_RESETTABLE = {Stage.IDLE, Stage.ERROR, Stage.CANCELLED}

ALLOWED_TRANSITIONS = {
    Stage.IDLE: {Stage.WAITING, Stage.ERROR, Stage.CANCELLED},
    Stage.WAITING: {Stage.AWAITING_APPROVAL, Stage.CONNECTED} | _RESETTABLE,
    Stage.AWAITING_APPROVAL: {Stage.CONNECTED} | _RESETTABLE,
    Stage.CONNECTED: {Stage.SIGNING} | _RESETTABLE,
    Stage.SIGNING: {Stage.SYNCING} | _RESETTABLE,
    Stage.SYNCING: {Stage.COMPLETE} | _RESETTABLE,
    Stage.ERROR: {Stage.IDLE, Stage.SIGNING, Stage.CANCELLED},
    Stage.COMPLETE: set(),
    Stage.CANCELLED: set(),
}

TERMINAL_STAGES = frozenset({Stage.COMPLETE, Stage.CANCELLED})


class InvalidTransitionError(RuntimeError):
    def __init__(self, current: Stage, target: Stage):
        self.current = current
        self.target = target
        super().__init__(f"Illegal stage transition {current.name} -> {target.name}")


class StateMachine:
    def __init__(self):
        self.current_state = Stage.IDLE

    @property
    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STAGES

    def can_transition_to(self, new_state: Stage) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.current_state]

    def transition_to(self, new_state: Stage):
        if not self.can_transition_to(new_state):
            raise InvalidTransitionError(self.current_state, new_state)
        logger.info("Stage %s -> %s", self.current_state.name, new_state.name)
        self.current_state = new_state

    def open_new_session(self):
        """Start over after a terminal stage; only the orchestrator does this, with a fresh token."""
        logger.info("Stage %s -> IDLE (new session)", self.current_state.name)
        self.current_state = Stage.IDLE
