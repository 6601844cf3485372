from signer_login.security.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_blocks_until_the_window_passes():
    clock = FakeClock()
    limiter = RateLimiter(1, 3.0, clock=clock)

    assert limiter.check()
    assert not limiter.check()
    assert limiter.retry_after() == 3.0

    clock.now += 1.0
    assert limiter.retry_after() == 2.0

    clock.now += 2.0
    assert limiter.retry_after() == 0.0
    assert limiter.check()


def test_allows_bursts_up_to_the_limit():
    limiter = RateLimiter(3, 10.0, clock=FakeClock())

    assert [limiter.check() for _ in range(4)] == [True, True, True, False]
