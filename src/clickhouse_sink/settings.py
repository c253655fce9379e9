"""
Sink settings.

Loaded from ``CH_SINK_*`` environment variables (or a ``.env`` file) and
explicit overrides. Invalid settings are reported as ``ConfigurationError``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Union
from urllib.parse import quote, urlsplit

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

MutationSource = Union[str, list[str]]


class SinkSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CH_SINK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    http_hosts: list[str]
    table: str
    headers: dict[str, str] = Field(default_factory=dict)

    flush_size: int = Field(default=50, gt=0)
    idle_flush_time: float = Field(default=5, gt=0)
    pool_max: int = Field(default=50, gt=0)

    save_on_failure: bool = True
    save_dir: Path = Path("/tmp")
    save_file: str = "failed.json"

    request_tolerance: int = Field(default=5, gt=0)
    backoff_time: float = Field(default=3, ge=0)
    automatic_retries: int = Field(default=3, gt=0)
    reset_request_attempts_on_failover: bool = False

    mutations: dict[str, MutationSource] = Field(default_factory=dict)
    host_resolve_ttl_sec: float = Field(default=120, gt=0)

    request_timeout_sec: float = Field(default=60, gt=0)
    drain_timeout_sec: float = Field(default=30, ge=0)

    @field_validator("http_hosts")
    @classmethod
    def _validate_hosts(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("http_hosts must contain at least one URI")
        for uri in v:
            parts = urlsplit(uri)
            if parts.scheme not in ("http", "https") or not parts.hostname:
                raise ValueError(f"Invalid host URI: {uri!r}")
            try:
                parts.port
            except ValueError:
                raise ValueError(f"Invalid port in host URI: {uri!r}")
        return v

    @field_validator("table")
    @classmethod
    def _validate_table(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("table must not be empty")
        return v

    @field_validator("mutations")
    @classmethod
    def _validate_mutations(cls, v: dict[str, MutationSource]) -> dict[str, MutationSource]:
        for dst, source in v.items():
            if isinstance(source, str):
                continue
            if len(source) != 3:
                raise ValueError(
                    f"Mutation {dst!r} must be a field name or [field, pattern, replacement]"
                )
            try:
                re.compile(source[1])
            except re.error as exc:
                raise ValueError(f"Mutation {dst!r} has an invalid pattern: {exc}") from exc
        return v

    @property
    def query_path(self) -> str:
        return "/?query=" + quote(f"INSERT INTO {self.table} FORMAT JSONEachRow", safe="")

    @property
    def failure_path(self) -> Path:
        return self.save_dir / f"{self.table}_{self.save_file}"

    def request_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        return headers


def load_settings(**overrides: Any) -> SinkSettings:
    """Build settings from the environment plus non-None overrides."""
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return SinkSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
