"""
Prometheus metrics for the sink.

Registered on the global REGISTRY at import time; expose them with
``prometheus_client.start_http_server`` (see ``clickhouse-sink --metrics-port``).
"""

from prometheus_client import Counter, Gauge, Histogram

EVENTS_RECEIVED_TOTAL = Counter(
    "ch_sink_events_received_total",
    "Events accepted into the batch buffer",
    ["table"],
)

BATCHES_FLUSHED_TOTAL = Counter(
    "ch_sink_batches_flushed_total",
    "Batches handed off by the buffer",
    ["trigger"],  # size | idle | close | manual
)

DELIVERY_ATTEMPTS_TOTAL = Counter(
    "ch_sink_delivery_attempts_total",
    "HTTP delivery attempts by outcome",
    ["table", "outcome"],  # success | http_error | transport_error
)

DELIVERY_FAILURES_TOTAL = Counter(
    "ch_sink_delivery_failures_total",
    "Batches that exhausted every retry",
    ["table", "reason"],
)

BATCHES_PERSISTED_TOTAL = Counter(
    "ch_sink_batches_persisted_total",
    "Undeliverable batches written to the failure file",
    ["table", "status"],  # ok | error
)

TOKENS_IN_USE = Gauge(
    "ch_sink_tokens_in_use",
    "Delivery tokens currently checked out",
    ["table"],
)

DELIVERY_LATENCY = Histogram(
    "ch_sink_delivery_latency_seconds",
    "Latency of a single HTTP delivery attempt",
    ["table"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)
