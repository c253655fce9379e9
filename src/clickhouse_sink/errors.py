"""
Custom exceptions for the ClickHouse HTTP sink.

Delivery failures are handled inside the sink and never surface to callers;
only configuration problems are expected to stop the process.
"""


class SinkError(Exception):
    """Base error for the sink."""

    pass


class ConfigurationError(SinkError):
    """Invalid or missing settings (the only startup-fatal class)."""

    pass


class ResolutionError(SinkError):
    """A hostname could not be resolved to any address."""

    def __init__(self, hostname: str, reason: str | None = None):
        self.hostname = hostname
        self.reason = reason
        msg = f"Bad hostname '{hostname}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
