"""
HTTP transport.

The dispatcher only needs "POST this body, tell me what happened". The answer
is an explicit result value instead of success/failure callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Union

import httpx
from loguru import logger


@dataclass(frozen=True)
class ResponseReceived:
    """The host answered; ``status`` may still be a failure."""

    status: int
    body: str = ""


@dataclass(frozen=True)
class TransportFailure:
    """The request never produced a response."""

    error: BaseException

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


SendResult = Union[ResponseReceived, TransportFailure]


class Transport(Protocol):
    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> SendResult: ...

    async def aclose(self) -> None: ...


class HttpxTransport:
    """Transport backed by a pooled ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        max_connections: int = 50,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
        )

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> SendResult:
        try:
            response = await self._client.post(url, content=body, headers=dict(headers))
        except (httpx.HTTPError, OSError) as exc:
            logger.debug(f"POST {url} failed: {type(exc).__name__}: {exc}")
            return TransportFailure(exc)
        return ResponseReceived(response.status_code, response.text)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
