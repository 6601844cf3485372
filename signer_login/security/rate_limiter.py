import time


class RateLimiter:
    """Sliding-window limiter for user-triggered actions such as manual approval checks."""

    def __init__(self, max_calls: int, period: float, clock=time.monotonic):
        self.max_calls = max_calls
        self.period = period
        self.clock = clock
        self.calls = []

    def check(self) -> bool:
        now = self.clock()
        # Remove old calls
        self.calls = [t for t in self.calls if now - t < self.period]

        if len(self.calls) >= self.max_calls:
            return False

        self.calls.append(now)
        return True

    def retry_after(self) -> float:
        now = self.clock()
        live = [t for t in self.calls if now - t < self.period]
        if len(live) < self.max_calls:
            return 0.0
        return max(0.0, self.period - (now - live[0]))
