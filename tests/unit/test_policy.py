"""
Unit tests for backoff and RetryPolicy.
"""

import math
import random

import pytest

from clickhouse_sink import RetryDecision, RetryPolicy, RetryState, backoff_bounds, backoff_delay


def test_backoff_bounds_follow_n_log_n_curve():
    """Bounds are d*n*ln(n) .. d*(n+1)*ln(n+1), floored at d."""
    low, high = backoff_bounds(3, 2.0)
    assert low == pytest.approx(2.0 * 3 * math.log(3))
    assert high == pytest.approx(2.0 * 4 * math.log(4))

    # n=1 -> ln(1) == 0, floored to the base delay
    low, high = backoff_bounds(1, 3.0)
    assert low == 3.0
    assert high == pytest.approx(3.0 * 2 * math.log(2))


def test_backoff_never_below_base():
    """Every delay is >= d, including attempt numbers below 1."""
    rng = random.Random(7)
    for attempt in range(0, 15):
        for _ in range(20):
            assert backoff_delay(attempt, 3.0, rng) >= 3.0


def test_backoff_grows_in_expectation():
    """Interval midpoints increase strictly with the attempt number."""
    mids = [sum(backoff_bounds(n, 1.0)) / 2 for n in range(1, 12)]
    assert all(a < b for a, b in zip(mids, mids[1:]))


def test_backoff_is_randomized():
    """Independent sequences with identical parameters differ."""
    a = [backoff_delay(n, 3.0, random.Random(1)) for n in range(1, 6)]
    b = [backoff_delay(n, 3.0, random.Random(2)) for n in range(1, 6)]
    assert a != b


def test_zero_base_means_no_wait():
    assert backoff_delay(5, 0) == 0


def test_non_200_retries_same_host_until_tolerance():
    """request_tolerance=3 -> two retries, then give up."""
    policy = RetryPolicy(request_tolerance=3, backoff_time=0)
    state = RetryState(remaining_hosts=["a"], current_host="a")

    decisions = [policy.on_response(state, 500).decision for _ in range(3)]

    assert decisions == [
        RetryDecision.RETRY_SAME_HOST,
        RetryDecision.RETRY_SAME_HOST,
        RetryDecision.GIVE_UP,
    ]
    assert state.current_host == "a"
    assert state.remaining_hosts == ["a"]


def test_200_is_done():
    policy = RetryPolicy()
    state = RetryState(remaining_hosts=[], current_host="a")
    assert policy.on_response(state, 200).decision is RetryDecision.DONE


def test_transport_failure_with_empty_pool_gives_up():
    policy = RetryPolicy()
    state = RetryState(remaining_hosts=[], current_host="a")
    assert policy.on_transport_failure(state).decision is RetryDecision.GIVE_UP


def test_transport_failure_fails_over_after_automatic_retries():
    """After automatic_retries connection attempts the host is dropped."""
    policy = RetryPolicy(automatic_retries=2, backoff_time=0)
    state = RetryState(remaining_hosts=["a"], current_host="b")

    step = policy.on_transport_failure(state)
    assert step.decision is RetryDecision.RETRY_CONNECTION
    assert state.current_host == "b"
    assert state.connection_attempt == 2

    step = policy.on_transport_failure(state)
    assert step.decision is RetryDecision.RETRY_CONNECTION
    assert state.current_host is None
    assert state.connection_attempt == 1

    assert state.next_host() == "a"
    assert state.remaining_hosts == []


@pytest.mark.parametrize("reset, expected", [(False, 3), (True, 1)])
def test_request_attempts_on_failover(reset, expected):
    """Request-tolerance counter reset across hosts is a setting."""
    policy = RetryPolicy(
        automatic_retries=1, backoff_time=0, reset_request_attempts_on_failover=reset
    )
    state = RetryState(remaining_hosts=["a"], current_host="b", request_attempt=3)

    policy.on_transport_failure(state)

    assert state.current_host is None
    assert state.request_attempt == expected


def test_correlation_id_is_unique_per_state():
    a = RetryState(remaining_hosts=[])
    b = RetryState(remaining_hosts=[])
    assert a.correlation_id != b.correlation_id
    assert len(a.correlation_id) == 32
