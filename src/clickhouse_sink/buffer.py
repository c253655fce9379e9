from __future__ import annotations

import asyncio
from time import monotonic
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from loguru import logger

from .metrics import BATCHES_FLUSHED_TOTAL

T = TypeVar("T")
OnFlush = Callable[[list[Any], bool], Awaitable[None]]


class BatchBuffer(Generic[T]):
    """
    Size/time batcher in front of the dispatcher.

    A batch is handed to ``on_flush(events, close)`` when ``flush_size`` events
    are pending, or when ``idle_flush_time`` seconds pass without a flush while
    events are pending. ``stop()`` performs the final ``close=True`` flush.

    Usage:

        buf = BatchBuffer(50, 5.0, on_flush)
        buf.start()
        await buf.receive(event)
        ...
        await buf.stop()
    """

    def __init__(
        self,
        flush_size: int,
        idle_flush_time: float,
        on_flush: OnFlush,
        *,
        clock: Callable[[], float] = monotonic,
    ):
        if flush_size <= 0:
            raise ValueError("flush_size must be > 0")
        if idle_flush_time <= 0:
            raise ValueError("idle_flush_time must be > 0")

        self._flush_size = flush_size
        self._idle = idle_flush_time
        self._on_flush = on_flush
        self._clock = clock

        self._items: list[T] = []
        self._last_flush = clock()

        self._task: Optional[asyncio.Task] = None
        self._stop_evt = asyncio.Event()

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # --------------- lifecycle

    def start(self) -> None:
        if self.running:
            return
        self._stop_evt.clear()
        self._last_flush = self._clock()
        self._task = asyncio.create_task(self._idle_loop(), name="batch-buffer-idle")

    async def stop(self) -> None:
        """Stop the idle timer, then flush whatever is pending with close=True."""
        if self._task is not None:
            self._stop_evt.set()
            await self._task
            self._task = None
        await self.flush(close=True, trigger="close")

    # --------------- receive / flush

    async def receive(self, event: T) -> None:
        self._items.append(event)
        if len(self._items) >= self._flush_size:
            await self._flush_full()

    async def receive_many(self, events: Iterable[T]) -> None:
        for event in events:
            await self.receive(event)

    async def flush(self, close: bool = False, *, trigger: str = "manual") -> int:
        """Hand every pending event to ``on_flush`` as one batch. Returns its size."""
        # swap before any await so concurrent receives land in the new list
        batch, self._items = self._items, []
        self._last_flush = self._clock()
        if not batch:
            return 0
        BATCHES_FLUSHED_TOTAL.labels(trigger=trigger).inc()
        await self._on_flush(batch, close)
        return len(batch)

    async def _flush_full(self) -> None:
        batch = self._items[: self._flush_size]
        self._items = self._items[self._flush_size :]
        self._last_flush = self._clock()
        BATCHES_FLUSHED_TOTAL.labels(trigger="size").inc()
        await self._on_flush(batch, False)

    # --------------- idle timer

    async def _idle_loop(self) -> None:
        while not self._stop_evt.is_set():
            remaining = self._idle - (self._clock() - self._last_flush)
            if remaining > 0:
                try:
                    await asyncio.wait_for(self._stop_evt.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
                continue

            if not self._items:
                self._last_flush = self._clock()
                continue

            try:
                n = await self.flush(trigger="idle")
                logger.debug(f"Idle flush of {n} events")
            except Exception as exc:
                # keep the timer alive
                logger.error(f"Idle flush failed: {type(exc).__name__}: {exc}")
