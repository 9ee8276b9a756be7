from spikewatch.reliability import BreakerState, CircuitBreaker


class _Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_breaker_opens_then_half_opens_after_cooldown():
    clock = _Clock()
    cb = CircuitBreaker(fail_threshold=2, reset_seconds=30, clock=clock)
    assert cb.allow()
    cb.record_failure()
    assert cb.state is BreakerState.CLOSED
    cb.record_failure()
    assert cb.state is BreakerState.OPEN
    assert not cb.allow()

    clock.t += 31
    assert cb.allow()          # single trial
    assert cb.state is BreakerState.HALF_OPEN
    assert not cb.allow()      # second caller blocked while trial in flight


def test_half_open_failure_reopens_and_success_closes():
    clock = _Clock()
    cb = CircuitBreaker(fail_threshold=1, reset_seconds=10, name='test', clock=clock)
    cb.record_failure()
    clock.t += 11
    assert cb.allow()
    cb.record_failure()
    assert cb.state is BreakerState.OPEN
    assert cb.snapshot()['open_until'] == clock.t + 10

    clock.t += 11
    assert cb.allow()
    cb.record_success()
    assert cb.snapshot() == {'name': 'test', 'state': 'CLOSED', 'failures': 0, 'open_until': 0.0,
                             'times_opened': 2}
