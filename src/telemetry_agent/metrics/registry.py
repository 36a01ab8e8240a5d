"""
Prometheus metrics for the telemetry pipeline and ingestion service.
Import this module at app startup to register them with the global REGISTRY.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Client pipeline ---

EVENTS_TRACKED_TOTAL = Counter(
    "telemetry_events_tracked_total",
    "Events accepted into the durable queue",
    ["pipeline"],
)

EVENTS_DROPPED_TOTAL = Counter(
    "telemetry_events_dropped_total",
    "Events lost before delivery",
    ["pipeline", "reason"],  # invalid | queue_eviction | dead_letter_eviction | rejected
)

BATCHES_TOTAL = Counter(
    "telemetry_batches_total",
    "Batch send results",
    ["pipeline", "outcome"],
)

SEND_LATENCY_MS = Histogram(
    "telemetry_send_latency_ms",
    "Batch send latency in milliseconds",
    ["pipeline"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
)

QUEUE_DEPTH = Gauge(
    "telemetry_queue_depth",
    "Events currently stored in the durable queue",
    ["pipeline"],
)

DEAD_LETTER_DEPTH = Gauge(
    "telemetry_dead_letter_depth",
    "Batches currently held in the dead letter store",
    ["pipeline"],
)

CIRCUIT_STATE = Gauge(
    "telemetry_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["pipeline"],
)

# --- Ingestion service ---

INGEST_EVENTS_TOTAL = Counter(
    "telemetry_ingest_events_total",
    "Events received by the ingestion endpoint",
    ["result"],  # inserted | duplicate
)

INGEST_REQUESTS_TOTAL = Counter(
    "telemetry_ingest_requests_total",
    "Ingestion requests by response status",
    ["status"],
)

INGEST_DELETIONS_TOTAL = Counter(
    "telemetry_ingest_deletions_total",
    "Persisted events removed by user deletion requests",
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsRegistry:
    """Structured access to all telemetry metrics."""

    events_tracked_total = EVENTS_TRACKED_TOTAL
    events_dropped_total = EVENTS_DROPPED_TOTAL
    batches_total = BATCHES_TOTAL
    send_latency_ms = SEND_LATENCY_MS
    queue_depth = QUEUE_DEPTH
    dead_letter_depth = DEAD_LETTER_DEPTH
    circuit_state = CIRCUIT_STATE
    ingest_events_total = INGEST_EVENTS_TOTAL
    ingest_requests_total = INGEST_REQUESTS_TOTAL
    ingest_deletions_total = INGEST_DELETIONS_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
