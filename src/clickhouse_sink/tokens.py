"""
Delivery token pool.

Every HTTP attempt holds one token for its whole duration, so at most
``capacity`` requests are outstanding at once. ``acquire`` suspends the
caller while the pool is empty; this is the sink's only backpressure.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from .metrics import TOKENS_IN_USE


class DeliveryToken:
    """A permit returned to its pool exactly once."""

    __slots__ = ("_pool", "_released")

    def __init__(self, pool: "TokenPool"):
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pool._return()

    def __enter__(self) -> "DeliveryToken":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class TokenPool:
    def __init__(self, capacity: int, *, label: Optional[str] = None):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._sem = asyncio.Semaphore(capacity)
        self._in_use = 0
        self._label = label

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._capacity - self._in_use

    async def acquire(self) -> DeliveryToken:
        await self._sem.acquire()
        self._in_use += 1
        self._publish()
        return DeliveryToken(self)

    def _return(self) -> None:
        self._in_use -= 1
        self._sem.release()
        self._publish()

    def _publish(self) -> None:
        if self._label is not None:
            TOKENS_IN_USE.labels(table=self._label).set(self._in_use)
