"""
Delivery engine.

Sends one serialized batch to one of the resolved hosts, holding a delivery
token for every attempt, and applies the retry policy to each result until
the batch is delivered, the request tolerance runs out, or the host pool is
exhausted. Terminal failures are logged and handed to the failure persister.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from time import monotonic
from typing import Mapping, Optional

from loguru import logger

from .metrics import DELIVERY_ATTEMPTS_TOTAL, DELIVERY_FAILURES_TOTAL, DELIVERY_LATENCY
from .persister import FailurePersister
from .policy import HTTP_OK, RetryDecision, RetryPolicy, RetryState
from .tokens import DeliveryToken, TokenPool
from .transport import ResponseReceived, SendResult, Transport, TransportFailure


@dataclass(frozen=True)
class DeliveryOutcome:
    delivered: bool
    attempts: int
    correlation_id: str
    host: Optional[str] = None
    # no_hosts | connection_exhausted | request_tolerance_exhausted | cancelled
    reason: Optional[str] = None
    persisted: bool = False


class Dispatcher:
    def __init__(
        self,
        *,
        table: str,
        query_path: str,
        headers: Mapping[str, str],
        transport: Transport,
        tokens: TokenPool,
        policy: RetryPolicy,
        persister: Optional[FailurePersister] = None,
        save_on_failure: bool = True,
    ):
        self._table = table
        self._query_path = query_path
        self._headers = dict(headers)
        self._transport = transport
        self._tokens = tokens
        self._policy = policy
        self._persister = persister
        self._save_on_failure = save_on_failure and persister is not None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        transport: Transport,
        persister: Optional[FailurePersister] = None,
        tokens: Optional[TokenPool] = None,
    ) -> "Dispatcher":
        return cls(
            table=settings.table,
            query_path=settings.query_path,
            headers=settings.request_headers(),
            transport=transport,
            tokens=tokens or TokenPool(settings.pool_max, label=settings.table),
            policy=RetryPolicy.from_settings(settings),
            persister=persister or FailurePersister(settings.save_dir, settings.save_file),
            save_on_failure=settings.save_on_failure,
        )

    @property
    def tokens(self) -> TokenPool:
        return self._tokens

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # --------------- public API

    async def submit(self, document: bytes, hosts: list[str]) -> None:
        """Start delivering ``document`` in the background.

        Waits for the first delivery token in the caller's context, so callers
        are held back while ``pool_max`` requests are outstanding.
        """
        state = self._new_state(hosts)
        if state.current_host is None:
            await self._give_up(document, state, "no_hosts")
            return

        token = await self._tokens.acquire()
        task = asyncio.create_task(self._run(document, state, token))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    async def deliver(self, document: bytes, hosts: list[str]) -> DeliveryOutcome:
        """Deliver ``document`` and wait for the final outcome."""
        state = self._new_state(hosts)
        if state.current_host is None:
            return await self._give_up(document, state, "no_hosts")
        return await self._run(document, state, None)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for background deliveries; cancel and dead-letter what remains after ``timeout``."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if not pending:
            return True

        logger.warning(f"Drain timeout: cancelling {len(pending)} in-flight deliveries")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return False

    # --------------- retry driver

    def _new_state(self, hosts: list[str]) -> RetryState:
        state = RetryState(remaining_hosts=list(hosts))
        if state.remaining_hosts:
            state.current_host = random.choice(state.remaining_hosts)
        return state

    async def _run(
        self, document: bytes, state: RetryState, token: Optional[DeliveryToken]
    ) -> DeliveryOutcome:
        last: Optional[SendResult] = None
        try:
            while True:
                host = state.next_host()
                if host is None:
                    return await self._give_up(document, state, "connection_exhausted", last)

                last = await self._attempt(host, document, state, token)
                token = None

                if isinstance(last, TransportFailure):
                    step = self._policy.on_transport_failure(state)
                    if step.decision is RetryDecision.GIVE_UP:
                        return await self._give_up(document, state, "connection_exhausted", last)
                    logger.info(
                        f"Retrying connection: host={host} error={last.message} "
                        f"delay={step.delay:.2f}s uuid={state.correlation_id}"
                    )
                else:
                    step = self._policy.on_response(state, last.status)
                    if step.decision is RetryDecision.DONE:
                        logger.debug(
                            f"Successfully submitted: size={len(document)} "
                            f"response_code={last.status} uuid={state.correlation_id}"
                        )
                        return DeliveryOutcome(True, state.attempts, state.correlation_id, host)
                    if step.decision is RetryDecision.GIVE_UP:
                        return await self._give_up(
                            document, state, "request_tolerance_exhausted", last
                        )
                    logger.info(
                        f"Retrying request: host={host} response_code={last.status} "
                        f"response={last.body[:200]!r} delay={step.delay:.2f}s "
                        f"uuid={state.correlation_id}"
                    )

                await asyncio.sleep(step.delay)
        except asyncio.CancelledError:
            if token is not None:
                token.release()
            await self._give_up(document, state, "cancelled", last)
            raise

    async def _attempt(
        self,
        host: str,
        document: bytes,
        state: RetryState,
        token: Optional[DeliveryToken],
    ) -> SendResult:
        url = host.rstrip("/") + self._query_path
        if token is None:
            token = await self._tokens.acquire()
        logger.debug(f"Got token (available={self._tokens.available})")

        state.attempts += 1
        started = monotonic()
        with token:
            try:
                result = await self._transport.post(url, document, self._headers)
            except Exception as exc:
                logger.warning(f"An error occurred while sending to {url}: {exc}")
                result = TransportFailure(exc)

        DELIVERY_LATENCY.labels(table=self._table).observe(monotonic() - started)
        DELIVERY_ATTEMPTS_TOTAL.labels(table=self._table, outcome=_outcome(result)).inc()
        return result

    async def _give_up(
        self,
        document: bytes,
        state: RetryState,
        reason: str,
        last: Optional[SendResult] = None,
    ) -> DeliveryOutcome:
        if isinstance(last, ResponseReceived):
            detail = f"Encountered non-200 HTTP code {last.status}"
        elif isinstance(last, TransportFailure):
            detail = f"Could not access URL: {last.message}"
        else:
            detail = "No host available"

        logger.error(
            f"[HTTP Output Failure] {detail} (reason={reason} host={state.current_host} "
            f"attempts={state.attempts} size={len(document)} uuid={state.correlation_id})"
        )
        DELIVERY_FAILURES_TOTAL.labels(table=self._table, reason=reason).inc()

        persisted = False
        if self._save_on_failure:
            persisted = await self._persister.persist(self._table, document)
        return DeliveryOutcome(
            False, state.attempts, state.correlation_id, state.current_host, reason, persisted
        )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Delivery task crashed: {type(exc).__name__}: {exc}")


def _outcome(result: SendResult) -> str:
    if isinstance(result, TransportFailure):
        return "transport_error"
    return "success" if result.status == HTTP_OK else "http_error"
