"""
Demo script for ClickHouseSink.

Runs the sink against an in-process mock ClickHouse (httpx.MockTransport) that
answers 503 for a share of requests, so retries, backpressure and the
failure file can be watched in the logs without a real server.
"""

import asyncio
import random
import tempfile

import httpx
from loguru import logger

from clickhouse_sink import ClickHouseSink, HttpxTransport, load_settings

rows_stored = 0


async def mock_clickhouse(request: httpx.Request) -> httpx.Response:
    global rows_stored
    await asyncio.sleep(random.uniform(0.005, 0.03))
    if random.random() < 0.3:
        return httpx.Response(503, text="Code: 202. Too many simultaneous queries")
    rows_stored += request.content.count(b"\n")
    return httpx.Response(200, text="Ok.\n")


async def main():
    save_dir = tempfile.mkdtemp(prefix="ch-sink-")
    settings = load_settings(
        http_hosts=["http://10.0.0.1:8123", "http://10.0.0.2:8123"],
        table="demo_events",
        flush_size=100,
        idle_flush_time=0.5,
        pool_max=4,
        request_tolerance=3,
        backoff_time=0.05,
        save_dir=save_dir,
    )
    transport = HttpxTransport(
        client=httpx.AsyncClient(transport=httpx.MockTransport(mock_clickhouse))
    )

    async with transport:
        async with ClickHouseSink(settings, transport=transport) as sink:
            logger.info("Producing 2,000 events")
            for i in range(2_000):
                await sink.receive({"id": i, "level": "info", "message": f"event {i}"})
                if i % 500 == 0:
                    h = sink.health()
                    logger.info(
                        f"Progress: {i}/2000 | buffered={h.buffered} "
                        f"tokens={h.tokens_in_use}/{h.pool_max} in_flight={h.in_flight}"
                    )

    logger.info(f"Rows accepted by mock server: {rows_stored}")
    logger.info(f"Undelivered batches (if any) saved to {settings.failure_path}")


if __name__ == "__main__":
    asyncio.run(main())
