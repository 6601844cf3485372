import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class TimeoutSupervisor:
    """
    Owns the attempt's hard deadline and the soft "taking too long" hint.

    The slow warning never changes the stage; it only flips slow_warning and
    tells the owner to republish. Both timers are loop handles, so clearing
    them guarantees their callbacks never run.
    """

    def __init__(self, on_deadline: Callable[[], None], on_slow: Callable[[], None]):
        self.on_deadline = on_deadline
        self.on_slow = on_slow
        self.slow_warning = False
        self._deadline = None
        self._slow = None

    @property
    def deadline_armed(self) -> bool:
        return self._deadline is not None

    def arm_deadline(self, seconds: float):
        self.clear_deadline()
        logger.debug("Deadline armed for %gs", seconds)
        self._deadline = asyncio.get_running_loop().call_later(seconds, self._fire_deadline)

    def clear_deadline(self):
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def arm_slow_warning(self, seconds: float):
        self.clear_slow_warning()
        self._slow = asyncio.get_running_loop().call_later(seconds, self._fire_slow)

    def clear_slow_warning(self):
        self.slow_warning = False
        if self._slow is not None:
            self._slow.cancel()
            self._slow = None

    def clear(self):
        self.clear_deadline()
        self.clear_slow_warning()

    def _fire_deadline(self):
        self._deadline = None
        self.on_deadline()

    def _fire_slow(self):
        self._slow = None
        self.slow_warning = True
        logger.info("Attempt is taking longer than expected")
        self.on_slow()
