"""Timeout-bound polling with backoff and cancellation."""

import threading
import time

import pytest
from flaky import flaky

from eth_l2_bridge.polling import BackoffPolicy, PollingCancelled, suspend_until


def test_backoff_delays():
    """Delay grows by the multiplier and stops at the cap."""
    backoff = BackoffPolicy(initial_delay=1.0, max_delay=5.0, multiplier=2.0)
    assert [backoff.get_delay(i) for i in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_suspend_until_satisfied():
    """Condition becomes true on the third poll."""
    values = iter([1, 2, 3, 4])
    result = suspend_until(
        poll=lambda: next(values),
        condition=lambda v: v >= 3,
        timeout=10,
        backoff=BackoffPolicy.create_test_config(),
    )
    assert result.satisfied
    assert result.value == 3
    assert result.attempts == 3


def test_suspend_until_zero_timeout_polls_once():
    """Even with no time left we look once."""
    calls = []
    result = suspend_until(
        poll=lambda: calls.append(1) or len(calls),
        condition=lambda v: False,
        timeout=0,
        backoff=BackoffPolicy.create_test_config(),
    )
    assert not result.satisfied
    assert result.attempts == 1
    assert result.value == 1


def test_suspend_until_fake_clock_timeout():
    """Timing out returns the last value instead of raising."""
    now = [0.0]

    def clock():
        return now[0]

    def poll():
        # Every poll takes five seconds of fake time
        now[0] += 5
        return "pending"

    result = suspend_until(
        poll=poll,
        condition=lambda v: v == "done",
        timeout=12,
        backoff=BackoffPolicy(initial_delay=0.001, max_delay=0.001),
        clock=clock,
    )
    assert not result.satisfied
    assert result.value == "pending"
    assert result.attempts == 3


def test_suspend_until_cancelled_before_start():
    """A set event aborts before the first poll."""
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PollingCancelled):
        suspend_until(poll=lambda: None, condition=lambda v: False, timeout=10, cancel=cancel)


@flaky(max_runs=3, min_passes=1)
def test_suspend_until_cancelled_from_other_thread():
    """Setting the event wakes a long sleep right away."""
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()

    started = time.monotonic()
    with pytest.raises(PollingCancelled):
        suspend_until(
            poll=lambda: None,
            condition=lambda v: False,
            timeout=60,
            backoff=BackoffPolicy(initial_delay=30, max_delay=30),
            cancel=cancel,
        )
    timer.join()
    assert time.monotonic() - started < 10
