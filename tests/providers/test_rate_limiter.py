import pytest

from devark.core.exceptions import RateLimitExceededError
from devark.providers.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_rejects_once_window_is_full():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, "Demo", clock=clock)

    limiter.throttle()
    clock.now += 10
    limiter.throttle()

    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.throttle()

    assert excinfo.value.retry_after_seconds == 50
    assert "Demo" in str(excinfo.value)
    assert limiter.remaining == 0


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(1, 60, "Demo", clock=clock)

    limiter.throttle()
    clock.now += 60

    limiter.throttle()
    assert limiter.remaining == 0


def test_retry_after_is_at_least_one_second():
    clock = FakeClock()
    limiter = RateLimiter(1, 60, "Demo", clock=clock)
    limiter.throttle()
    clock.now += 59.9

    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.throttle()

    assert excinfo.value.retry_after_seconds == 1
