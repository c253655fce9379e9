from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .errors import ConfigurationError
from .persister import FailurePersister
from .resolver import HostResolver
from .settings import SinkSettings, load_settings
from .sink import ClickHouseSink

app = typer.Typer(help="ClickHouse HTTP batching sink")

# ---------------------------
# Common options
# ---------------------------


def hosts_opt() -> Optional[List[str]]:
    return typer.Option(
        None, "--host", "-H", help="Endpoint URI, repeatable (env: CH_SINK_HTTP_HOSTS)"
    )


def table_opt() -> Optional[str]:
    return typer.Option(None, "--table", "-t", help="Target table (env: CH_SINK_TABLE)")


def save_dir_opt() -> Optional[Path]:
    return typer.Option(None, "--save-dir", help="Directory for failed batches")


def save_file_opt() -> Optional[str]:
    return typer.Option(None, "--save-file", help="Failure file suffix")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", envvar="CH_SINK_LOG_LEVEL"),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Expose Prometheus metrics on this port"
    ),
):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())
    if metrics_port:
        start_http_server(metrics_port)
        logger.info(f"Metrics exposed on :{metrics_port}")


def _settings(**overrides) -> SinkSettings:
    try:
        return load_settings(**overrides)
    except ConfigurationError as exc:
        logger.error(f"Invalid settings: {exc}")
        raise typer.Exit(code=2)


def _iter_ndjson(lines) -> Iterator[dict]:
    for n, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning(f"Skipping invalid JSON on line {n}: {exc}")
            continue
        if not isinstance(event, dict):
            logger.warning(f"Skipping line {n}: expected a JSON object")
            continue
        yield event


async def _ship(settings: SinkSettings, events) -> int:
    n = 0
    async with ClickHouseSink(settings) as sink:
        for event in events:
            await sink.receive(event)
            n += 1
    return n


# ---------------------------
# Commands
# ---------------------------


@app.command("ship")
def ship(
    source: str = typer.Argument("-", help="NDJSON file of events ('-' for stdin)"),
    host: Optional[List[str]] = hosts_opt(),
    table: Optional[str] = table_opt(),
    flush_size: Optional[int] = typer.Option(None, "--flush-size"),
    idle_flush_time: Optional[float] = typer.Option(None, "--idle-flush-time"),
    pool_max: Optional[int] = typer.Option(None, "--pool-max"),
    request_tolerance: Optional[int] = typer.Option(None, "--request-tolerance"),
    automatic_retries: Optional[int] = typer.Option(None, "--automatic-retries"),
    backoff_time: Optional[float] = typer.Option(None, "--backoff-time"),
    save_dir: Optional[Path] = save_dir_opt(),
    save_file: Optional[str] = save_file_opt(),
):
    """Batch NDJSON events and deliver them."""
    settings = _settings(
        http_hosts=host or None,
        table=table,
        flush_size=flush_size,
        idle_flush_time=idle_flush_time,
        pool_max=pool_max,
        request_tolerance=request_tolerance,
        automatic_retries=automatic_retries,
        backoff_time=backoff_time,
        save_dir=save_dir,
        save_file=save_file,
    )
    if source == "-":
        count = asyncio.run(_ship(settings, _iter_ndjson(sys.stdin)))
    else:
        with open(source, "r", encoding="utf-8") as fh:
            count = asyncio.run(_ship(settings, _iter_ndjson(fh)))
    typer.echo(json.dumps({"events": count, "table": settings.table}))


@app.command("resolve")
def resolve(
    host: List[str] = typer.Option(..., "--host", "-H", help="Endpoint URI, repeatable"),
    ttl: float = typer.Option(120, "--ttl", help="Cache TTL in seconds"),
):
    """Print the delivery pool the configured hosts resolve to."""
    pool = asyncio.run(HostResolver(ttl).resolve_all(host))
    for uri in pool:
        typer.echo(uri)
    if not pool:
        raise typer.Exit(code=1)


@app.command("replay")
def replay(
    host: Optional[List[str]] = hosts_opt(),
    table: Optional[str] = table_opt(),
    save_dir: Optional[Path] = save_dir_opt(),
    save_file: Optional[str] = save_file_opt(),
):
    """Re-ship the failed batches saved for a table."""
    settings = _settings(
        http_hosts=host or None, table=table, save_dir=save_dir, save_file=save_file
    )
    persister = FailurePersister(settings.save_dir, settings.save_file)
    path = persister.path_for(settings.table)
    claimed = persister.claim(settings.table)
    if claimed is None:
        typer.echo(json.dumps({"events": 0, "file": str(path)}))
        return

    # persisted rows were already mutated before the failed delivery
    raw = settings.model_copy(update={"mutations": {}})
    count = asyncio.run(_ship(raw, _iter_ndjson(persister.iter_documents(claimed))))
    claimed.unlink()
    logger.success(f"Replayed {count} events from {path}")
    typer.echo(json.dumps({"events": count, "file": str(path)}))


if __name__ == "__main__":
    app()
