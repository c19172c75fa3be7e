from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
WEBHOOKS_RECEIVED_TOTAL = Counter(
    "webhooks_received_total",
    "Inbound provider webhooks accepted by the ingestion endpoint",
    labelnames=("provider", "status"),
)
INBOUND_EVENTS_PROCESSED_TOTAL = Counter(
    "inbound_events_processed_total",
    "Inbound events that reached a state machine outcome in workers",
    labelnames=("status",),
)
OUTBOUND_DELIVERY_ATTEMPTS_TOTAL = Counter(
    "outbound_delivery_attempts_total",
    "Outbound webhook HTTP attempts executed by workers",
)
OUTBOUND_DELIVERY_FAILURES_TOTAL = Counter(
    "outbound_delivery_failures_total",
    "Outbound webhook HTTP attempts that did not succeed",
)
DEAD_LETTERS_TOTAL = Counter(
    "dead_letters_total",
    "Dead-letter entries recorded",
    labelnames=("kind",),
)
OUTBOUND_DELIVERY_LATENCY_SECONDS = Histogram(
    "outbound_delivery_latency_seconds",
    "Outbound webhook request latency in seconds",
)

# Worker processes do not serve /metrics; their increments are mirrored through
# Redis and folded into the API process collectors on scrape.
BACKGROUND_COUNTERS = {
    "inbound_processed_total": ("metrics:inbound_processed_total", INBOUND_EVENTS_PROCESSED_TOTAL, {"status": "processed"}),
    "inbound_discarded_total": ("metrics:inbound_discarded_total", INBOUND_EVENTS_PROCESSED_TOTAL, {"status": "discarded"}),
    "inbound_failed_total": ("metrics:inbound_failed_total", INBOUND_EVENTS_PROCESSED_TOTAL, {"status": "failed"}),
    "outbound_delivery_attempts_total": ("metrics:outbound_delivery_attempts_total", OUTBOUND_DELIVERY_ATTEMPTS_TOTAL, None),
    "outbound_delivery_failures_total": ("metrics:outbound_delivery_failures_total", OUTBOUND_DELIVERY_FAILURES_TOTAL, None),
    "dead_letters_delivery_total": ("metrics:dead_letters_delivery_total", DEAD_LETTERS_TOTAL, {"kind": "delivery"}),
    "dead_letters_domain_event_total": ("metrics:dead_letters_domain_event_total", DEAD_LETTERS_TOTAL, {"kind": "domain_event"}),
}
_last_background_counter_values: dict[str, float] = {
    metric_name: 0.0 for metric_name in BACKGROUND_COUNTERS
}


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_webhook_received(provider: str, status: str) -> None:
    WEBHOOKS_RECEIVED_TOTAL.labels(provider=provider, status=status).inc()


def _count_background(metric_name: str, amount: int = 1) -> None:
    # Counted once: through Redis when reachable, else straight into this process.
    entry = BACKGROUND_COUNTERS.get(metric_name)
    if entry is None or increment_background_counter(metric_name, amount):
        return
    _, collector, labels = entry
    (collector.labels(**labels) if labels else collector).inc(amount)


def record_inbound_outcome(status: str) -> None:
    _count_background(f"inbound_{status}_total")


def record_delivery_attempt(*, success: bool, duration_seconds: float) -> None:
    OUTBOUND_DELIVERY_LATENCY_SECONDS.observe(duration_seconds)
    _count_background("outbound_delivery_attempts_total")
    if not success:
        _count_background("outbound_delivery_failures_total")


def record_dead_letter(kind: str) -> None:
    _count_background(f"dead_letters_{kind}_total")


def increment_background_counter(metric_name: str, amount: int = 1) -> bool:
    entry = BACKGROUND_COUNTERS.get(metric_name)
    if entry is None:
        return False
    redis_key = entry[0]
    try:
        from app.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_incr"):
            redis_client.incrby(redis_key, amount)
    except Exception:
        # Metric mirroring must never break event processing.
        return False
    return True


def _sync_background_counters_from_redis() -> None:
    try:
        from app.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_sync"):
            raw_values = redis_client.mget([entry[0] for entry in BACKGROUND_COUNTERS.values()])
    except Exception:
        return

    for idx, (metric_name, (_, collector, labels)) in enumerate(BACKGROUND_COUNTERS.items()):
        raw_value = raw_values[idx] if raw_values else None
        current_value = float(raw_value or 0.0)
        last_value = _last_background_counter_values.get(metric_name, 0.0)
        delta = current_value - last_value
        if delta > 0:
            target = collector.labels(**labels) if labels else collector
            target.inc(delta)
        _last_background_counter_values[metric_name] = current_value


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    _sync_background_counters_from_redis()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
