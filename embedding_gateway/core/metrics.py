from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

# HTTP request metrics
REQUEST_COUNT = Counter(
    "embedding_gateway_requests_total", "Total requests", ["method", "path", "status"]
)
REQUEST_LATENCY = Histogram(
    "embedding_gateway_request_duration_seconds",
    "Request latency",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Provider call metrics
PROVIDER_CALLS = Counter(
    "embedding_gateway_provider_calls_total",
    "Outbound embedding provider calls",
    ["provider", "outcome"],  # outcome: success/error/timeout/cache_hit
)

PROVIDER_LATENCY = Histogram(
    "embedding_gateway_provider_duration_seconds",
    "Embedding provider latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

# Gateway operations, shared by both transports
GATEWAY_OPERATIONS = Counter(
    "embedding_gateway_operations_total",
    "Gateway operations",
    ["op", "transport", "outcome"],  # transport: http/channel, outcome: success/error
)

CHANNEL_CONNECTIONS = Gauge(
    "embedding_gateway_channel_connections",
    "Open WebSocket channel connections",
)

CHANNEL_IN_FLIGHT = Gauge(
    "embedding_gateway_channel_in_flight_requests",
    "Channel requests currently being processed",
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    "embedding_gateway_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["circuit_name"],
)

CIRCUIT_BREAKER_FAILURES = Counter(
    "embedding_gateway_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["circuit_name"],
)


def get_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
