"""
ClickHouse HTTP sink.

events -> BatchBuffer -> flush (mutate + serialize) -> HostResolver -> Dispatcher

Usage:

    settings = load_settings(http_hosts=["http://ch-1:8123"], table="logs")
    async with ClickHouseSink(settings) as sink:
        await sink.receive({"message": "hello"})
    # pending events flushed and in-flight deliveries drained on exit
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from loguru import logger

from .buffer import BatchBuffer
from .dispatcher import Dispatcher
from .metrics import EVENTS_RECEIVED_TOTAL
from .mutations import Mutations, serialize_batch
from .persister import FailurePersister
from .resolver import HostResolver
from .settings import SinkSettings
from .transport import HttpxTransport, Transport


@dataclass(frozen=True)
class SinkHealth:
    running: bool
    buffered: int
    tokens_in_use: int
    pool_max: int
    in_flight: int


class ClickHouseSink:
    def __init__(
        self,
        settings: SinkSettings,
        *,
        transport: Optional[Transport] = None,
        resolver: Optional[HostResolver] = None,
        persister: Optional[FailurePersister] = None,
    ):
        self.settings = settings
        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(
            max_connections=settings.pool_max, timeout=settings.request_timeout_sec
        )
        self._resolver = resolver or HostResolver(settings.host_resolve_ttl_sec)
        self._persister = persister or FailurePersister(settings.save_dir, settings.save_file)
        self._mutations = Mutations(settings.mutations)
        self._dispatcher = Dispatcher.from_settings(
            settings, transport=self._transport, persister=self._persister
        )
        self._buffer: BatchBuffer[Any] = BatchBuffer(
            settings.flush_size, settings.idle_flush_time, self.flush
        )

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def resolver(self) -> HostResolver:
        return self._resolver

    # --------------- lifecycle

    async def start(self) -> None:
        self._buffer.start()
        s = self.settings
        logger.info(
            f"Initialized clickhouse sink: flush_size={s.flush_size} "
            f"idle_flush_time={s.idle_flush_time} request_tokens={s.pool_max} "
            f"http_hosts={s.http_hosts} http_query={s.query_path} "
            f"headers={s.request_headers()}"
        )

    async def stop(self) -> None:
        """Final flush, then drain in-flight deliveries for up to ``drain_timeout_sec``."""
        await self._buffer.stop()
        drained = await self._dispatcher.drain(timeout=self.settings.drain_timeout_sec)
        if not drained:
            logger.warning("Sink stopped before every delivery finished")
        if self._owns_transport:
            await self._transport.aclose()
        logger.info("Clickhouse sink stopped")

    async def __aenter__(self) -> "ClickHouseSink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # --------------- inbound

    async def receive(self, event: Any) -> None:
        EVENTS_RECEIVED_TOTAL.labels(table=self.settings.table).inc()
        await self._buffer.receive(event)

    async def receive_many(self, events: Iterable[Any]) -> None:
        for event in events:
            await self.receive(event)

    async def flush(self, events: list[Any], close: bool = False) -> None:
        """Serialize ``events`` as one JSONEachRow document and dispatch it."""
        if not events:
            return
        document = serialize_batch(events, self._mutations)
        hosts = await self._resolver.resolve_all(self.settings.http_hosts)
        logger.debug(f"Flushing {len(events)} events ({len(document)} bytes, close={close})")
        await self._dispatcher.submit(document, hosts)

    def health(self) -> SinkHealth:
        tokens = self._dispatcher.tokens
        return SinkHealth(
            running=self._buffer.running,
            buffered=self._buffer.size,
            tokens_in_use=tokens.in_use,
            pool_max=tokens.capacity,
            in_flight=self._dispatcher.in_flight,
        )
