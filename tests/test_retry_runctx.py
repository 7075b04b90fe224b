import threading

import pytest

from pureflow.retry import ExponentialBackoff, FixedBackoff, NoRetry, build_retry_policy
from pureflow.runctx import RunCancelledError, RunContext


def test_no_retry_never_delays():
    assert NoRetry().next_delay(1) is None


def test_fixed_backoff_stops_at_budget():
    policy = FixedBackoff(delay_seconds=60, max_attempts=3)
    assert policy.next_delay(1) == 60
    assert policy.next_delay(2) == 60
    assert policy.next_delay(3) is None


def test_exponential_backoff_doubles_and_caps():
    policy = ExponentialBackoff(base_delay_seconds=10, max_delay_seconds=35, max_attempts=5)
    assert [policy.next_delay(n) for n in range(1, 6)] == [10, 20, 35, 35, None]


def test_build_retry_policy():
    assert build_retry_policy("none", max_attempts=3, base_delay_seconds=1, max_delay_seconds=2).name == "none"
    fixed = build_retry_policy("fixed", max_attempts=3, base_delay_seconds=5, max_delay_seconds=9)
    assert fixed.next_delay(1) == 5
    with pytest.raises(ValueError):
        build_retry_policy("linear", max_attempts=3, base_delay_seconds=1, max_delay_seconds=2)


def test_timeout_for_is_bounded_by_deadline():
    now = [0.0]
    ctx = RunContext(deadline_seconds=30, clock=lambda: now[0])
    assert ctx.timeout_for(10) == 10
    now[0] = 25
    assert ctx.timeout_for(10) == 5
    now[0] = 31
    with pytest.raises(RunCancelledError, match="deadline_exceeded"):
        ctx.timeout_for(10)


def test_no_deadline_passes_default_through():
    assert RunContext().timeout_for(12) == 12
    assert RunContext().remaining() is None


def test_cancel_from_another_thread():
    ctx = RunContext()
    thread = threading.Thread(target=ctx.cancel, args=("supervisor",))
    thread.start()
    thread.join()

    assert ctx.cancelled
    with pytest.raises(RunCancelledError, match="supervisor"):
        ctx.check()
