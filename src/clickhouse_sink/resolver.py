"""
Host resolution with a per-hostname TTL cache.

Configured URIs whose host is an IPv4 literal are used as-is; every other
host is expanded into one URI per resolved address. Resolved addresses are
cached for ``ttl`` seconds and refreshed transparently on the next lookup
after expiry.
"""

from __future__ import annotations

import asyncio
import ipaddress
import random
import re
import socket
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, Optional, TypeVar
from urllib.parse import urlsplit

from loguru import logger

from .errors import ResolutionError

K = TypeVar("K")
V = TypeVar("V")

Lookup = Callable[[str], Awaitable[list[str]]]

IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Thread-safe key -> value map where each entry expires after ``ttl`` seconds.

    Concurrent refreshes of the same key are last-writer-wins.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: K) -> Optional[V]:
        """Return the live value for ``key``; expired entries are dropped."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: K, value: V) -> None:
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._entries[key] = CacheEntry(value, expires_at)

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


async def dns_lookup(hostname: str) -> list[str]:
    """Resolve ``hostname`` through the running loop's resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for info in infos:
        addr = info[4][0]
        if addr not in addresses:
            addresses.append(addr)
    return addresses


class HostResolver:
    """Turns configured endpoint URIs into a pool of concrete URIs."""

    def __init__(
        self,
        ttl: float,
        *,
        lookup: Optional[Lookup] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lookup = lookup or dns_lookup
        self._cache: TTLCache[str, list[str]] = TTLCache(ttl, clock=clock)

    @property
    def cache(self) -> TTLCache[str, list[str]]:
        return self._cache

    async def lookup(self, hostname: str) -> list[str]:
        """Cached addresses for ``hostname``; raises ResolutionError if none."""
        cached = self._cache.get(hostname)
        if cached is not None:
            return list(cached)

        try:
            addresses = await self._lookup(hostname)
        except (OSError, ValueError) as exc:  # gaierror, or UnicodeError from IDNA encoding
            raise ResolutionError(hostname, str(exc)) from exc
        if not addresses:
            raise ResolutionError(hostname, "no addresses returned")

        logger.info(f"Resolved hostname '{hostname}' to addresses {addresses}")
        self._cache.set(hostname, list(addresses))
        return list(addresses)

    async def get_address(self, hostname: str) -> str:
        """One randomly chosen address for ``hostname``."""
        return random.choice(await self.lookup(hostname))

    async def resolve_all(self, uris: Iterable[str]) -> list[str]:
        """Expand configured URIs into concrete delivery targets.

        Hosts that fail to resolve are logged and left out of the pool.
        """
        pool: list[str] = []
        for uri in uris:
            parts = urlsplit(uri)
            host = parts.hostname or ""
            if IPV4_RE.match(host):
                pool.append(uri)
                continue

            try:
                addresses = await self.lookup(host)
            except ResolutionError as exc:
                logger.error(f"Error while resolving host: {exc}")
                continue

            port = parts.port or DEFAULT_PORTS.get(parts.scheme, 80)
            for addr in addresses:
                pool.append(f"{parts.scheme}://{_format_address(addr)}:{port}{parts.path}")
        return pool


def _format_address(addr: str) -> str:
    try:
        if ipaddress.ip_address(addr).version == 6:
            return f"[{addr}]"
    except ValueError:
        pass
    return addr
