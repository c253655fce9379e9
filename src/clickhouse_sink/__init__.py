"""ClickHouse HTTP Sink

Batches event records into JSONEachRow documents and POSTs them to one of
several ClickHouse HTTP endpoints with:
- size/idle-time batching (BatchBuffer)
- a bounded delivery token pool (TokenPool)
- connection failover and same-host request retries with randomized backoff
- TTL-cached hostname resolution (HostResolver)
- on-disk persistence of undeliverable batches (FailurePersister)
- Prometheus metrics and loguru logging
"""

from .errors import SinkError, ConfigurationError, ResolutionError
from .settings import SinkSettings, load_settings
from .resolver import HostResolver, TTLCache
from .buffer import BatchBuffer
from .policy import RetryPolicy, RetryState, RetryDecision, backoff_delay, backoff_bounds
from .tokens import TokenPool, DeliveryToken
from .transport import HttpxTransport, ResponseReceived, TransportFailure, SendResult, Transport
from .persister import FailurePersister
from .mutations import Mutations, serialize_batch, coerce_event
from .dispatcher import Dispatcher, DeliveryOutcome
from .sink import ClickHouseSink, SinkHealth

__version__ = "1.0.0"
__all__ = [
    # errors
    "SinkError",
    "ConfigurationError",
    "ResolutionError",
    # settings
    "SinkSettings",
    "load_settings",
    # delivery engine
    "HostResolver",
    "TTLCache",
    "BatchBuffer",
    "RetryPolicy",
    "RetryState",
    "RetryDecision",
    "backoff_delay",
    "backoff_bounds",
    "TokenPool",
    "DeliveryToken",
    "Dispatcher",
    "DeliveryOutcome",
    # io
    "HttpxTransport",
    "ResponseReceived",
    "TransportFailure",
    "SendResult",
    "Transport",
    "FailurePersister",
    "Mutations",
    "serialize_batch",
    "coerce_event",
    # facade
    "ClickHouseSink",
    "SinkHealth",
]
