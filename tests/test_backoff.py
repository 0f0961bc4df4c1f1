import itertools

import pytest

from chat_relay.transport.backoff import ExponentialBackoff


def test_delays_grow_then_cap():
    backoff = ExponentialBackoff(base=0.5, cap=4.0, jitter=0.0)
    assert [backoff.next_delay() for _ in range(6)] == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0]
    assert backoff.attempts == 6


def test_jittered_delays_never_decrease():
    values = itertools.cycle([0.0, 0.99, 0.5, 0.1, 0.9])
    backoff = ExponentialBackoff(base=1.0, cap=10.0, jitter=0.5, rand=lambda: next(values))
    delays = [backoff.next_delay() for _ in range(20)]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) <= 10.0


def test_reset_restarts_the_ladder():
    backoff = ExponentialBackoff(base=0.5, cap=4.0, jitter=0.0)
    for _ in range(4):
        backoff.next_delay()
    backoff.reset()
    assert backoff.attempts == 0
    assert backoff.next_delay() == 0.5


@pytest.mark.parametrize("kwargs", [
    {"base": 0},
    {"base": 2.0, "cap": 1.0},
    {"multiplier": 0.5},
    {"jitter": 1.0},
])
def test_rejects_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        ExponentialBackoff(**kwargs)
