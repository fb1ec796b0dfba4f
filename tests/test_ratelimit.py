from ratelimit import FixedWindowLimiter


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_cap_within_window_then_reset():
    clock = Clock()
    limiter = FixedWindowLimiter(3, 60, "slow down", clock=clock)
    assert [limiter.hit("1.2.3.4") for _ in range(4)] == [True, True, True, False]

    clock.now = 59
    assert limiter.hit("1.2.3.4") is False
    clock.now = 60
    assert limiter.hit("1.2.3.4") is True


def test_keys_are_independent():
    limiter = FixedWindowLimiter(1, 60, "slow down", clock=Clock())
    assert limiter.hit("1.1.1.1")
    assert limiter.hit("2.2.2.2")
    assert not limiter.hit("1.1.1.1")

    limiter.reset()
    assert limiter.hit("1.1.1.1")


def test_expired_windows_are_dropped():
    clock = Clock()
    limiter = FixedWindowLimiter(5, 1, "slow down", clock=clock)
    for i in range(10000):
        limiter.hit(f"10.0.{i // 256}.{i % 256}")
    assert limiter.tracked_keys() == 10000

    clock.now = 10000
    assert limiter.hit("192.168.0.1")
    assert limiter.tracked_keys() == 1


def test_live_windows_survive_pruning():
    clock = Clock()
    limiter = FixedWindowLimiter(2, 60, "slow down", clock=clock)
    limiter.hit("1.1.1.1")
    clock.now = 30
    limiter.hit("2.2.2.2")
    limiter.hit("2.2.2.2")

    clock.now = 61
    assert limiter.hit("3.3.3.3")
    assert limiter.tracked_keys() == 2
    assert limiter.hit("2.2.2.2") is False
