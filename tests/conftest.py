"""
Pytest configuration and fixtures for clickhouse-sink.

Provides cross-platform event loop configuration, a scripted transport and
settings factories so no test touches the network or real DNS.
"""

import asyncio
import socket
import sys
from typing import Mapping

import pytest

from clickhouse_sink import ResponseReceived, load_settings

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class ScriptedTransport:
    """Returns queued results in order, repeating the last one forever.

    Exceptions in the script are raised from ``post``. Tracks concurrency.
    """

    def __init__(self, *results, delay: float = 0.0):
        self.results = list(results) or [ResponseReceived(200, "Ok.")]
        self.delay = delay
        self.calls: list[tuple[str, bytes, dict]] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]):
        self.calls.append((url, body, dict(headers)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        self.closed = True

    @property
    def urls(self) -> list[str]:
        return [c[0] for c in self.calls]


def static_lookup(table: dict[str, list[str]]):
    """DNS stand-in: known names resolve from ``table``, others raise gaierror."""
    calls: list[str] = []

    async def _lookup(hostname: str) -> list[str]:
        calls.append(hostname)
        if hostname not in table:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return list(table[hostname])

    _lookup.calls = calls
    return _lookup


@pytest.fixture
def clean_env(monkeypatch):
    """Drop CH_SINK_* variables so only explicit overrides apply."""
    import os

    for key in list(os.environ):
        if key.startswith("CH_SINK_"):
            monkeypatch.delenv(key)


@pytest.fixture
def make_settings(tmp_path, clean_env):
    """Settings factory with fast, test-friendly defaults."""

    def _make(**overrides):
        values = {
            "http_hosts": ["http://10.0.0.1:8123"],
            "table": "events",
            "save_dir": tmp_path,
            "backoff_time": 0,
            "idle_flush_time": 5,
        }
        values.update(overrides)
        return load_settings(**values)

    return _make


@pytest.fixture
def transport_factory():
    return ScriptedTransport


@pytest.fixture
def lookup_factory():
    return static_lookup
