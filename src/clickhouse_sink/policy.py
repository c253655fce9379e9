"""
Retry policy for batch delivery.

Two independent counters drive the decision after each attempt:

- ``connection_attempt`` counts transport failures against the current host.
  Once it reaches ``automatic_retries`` the host is dropped and the next one
  is popped from the pool (failover). The batch is given up when a transport
  failure happens with no hosts left in the pool.
- ``request_attempt`` counts non-200 responses. The batch is re-sent to the
  same host until ``request_tolerance`` is reached.

Backoff grows roughly as ``d * n * ln(n)`` and the concrete delay is drawn at
random so independent senders do not retry in lockstep.
"""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

HTTP_OK = 200


def backoff_bounds(attempt: int, base: float) -> tuple[float, float]:
    """Interval ``[d*n*ln n, d*(n+1)*ln(n+1)]`` with both ends floored at ``d``."""
    n = max(attempt, 1)

    def curve(x: int) -> float:
        return max(base * x * math.log(x), base)

    return curve(n), curve(n + 1)


def backoff_delay(attempt: int, base: float, rng: Optional[random.Random] = None) -> float:
    low, high = backoff_bounds(attempt, base)
    return (rng or random).uniform(low, high)


class RetryDecision(str, Enum):
    DONE = "done"
    RETRY_SAME_HOST = "retry_same_host"
    RETRY_CONNECTION = "retry_connection"
    GIVE_UP = "give_up"


@dataclass
class RetryState:
    """Mutable per-batch state threaded through every delivery attempt."""

    remaining_hosts: list[str]
    current_host: Optional[str] = None
    connection_attempt: int = 1
    request_attempt: int = 1
    attempts: int = 0
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def next_host(self) -> Optional[str]:
        """Pop a new host when none is selected; None means the pool is exhausted."""
        if self.current_host is None and self.remaining_hosts:
            self.current_host = self.remaining_hosts.pop()
        return self.current_host


@dataclass(frozen=True)
class Step:
    decision: RetryDecision
    delay: float = 0.0


class RetryPolicy:
    def __init__(
        self,
        *,
        request_tolerance: int = 5,
        automatic_retries: int = 3,
        backoff_time: float = 3,
        reset_request_attempts_on_failover: bool = False,
        rng: Optional[random.Random] = None,
    ):
        self.request_tolerance = request_tolerance
        self.automatic_retries = automatic_retries
        self.backoff_time = backoff_time
        self.reset_request_attempts_on_failover = reset_request_attempts_on_failover
        self._rng = rng

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            request_tolerance=settings.request_tolerance,
            automatic_retries=settings.automatic_retries,
            backoff_time=settings.backoff_time,
            reset_request_attempts_on_failover=settings.reset_request_attempts_on_failover,
        )

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff_time, self._rng)

    def on_transport_failure(self, state: RetryState) -> Step:
        if not state.remaining_hosts:
            return Step(RetryDecision.GIVE_UP)

        if state.connection_attempt >= self.automatic_retries:
            state.current_host = None
            state.connection_attempt = 0
            if self.reset_request_attempts_on_failover:
                state.request_attempt = 1

        delay = self.delay(state.connection_attempt)
        state.connection_attempt += 1
        return Step(RetryDecision.RETRY_CONNECTION, delay)

    def on_response(self, state: RetryState, status: int) -> Step:
        if status == HTTP_OK:
            return Step(RetryDecision.DONE)

        if state.request_attempt >= self.request_tolerance:
            return Step(RetryDecision.GIVE_UP)

        delay = self.delay(state.request_attempt)
        state.request_attempt += 1
        return Step(RetryDecision.RETRY_SAME_HOST, delay)
