"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- HTTP request counts and latencies
- Per-provider push delivery attempts and verdicts
- Retry and rate-limit activity
- Credential refreshes
- Dispatch fan-out and in-flight dispatches
"""
import re
import time
import logging
from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Private registry so tests can import the module repeatedly
REGISTRY = CollectorRegistry()

_start_time: float = time.time()

# ============================================================================
# Application Info
# ============================================================================

app_info = Info(
    'pushgate',
    'Application information',
    registry=REGISTRY
)

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status_code'],
    registry=REGISTRY
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY
)

# ============================================================================
# Push Delivery Metrics
# ============================================================================

push_attempts_total = Counter(
    'push_attempts_total',
    'Provider send attempts by classified verdict',
    ['provider', 'verdict'],
    registry=REGISTRY
)

push_send_duration_seconds = Histogram(
    'push_send_duration_seconds',
    'Latency of a single provider request',
    ['provider'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY
)

push_retries_total = Counter(
    'push_retries_total',
    'Retries scheduled by the retry controller',
    ['provider', 'reason'],
    registry=REGISTRY
)

push_rate_limited_total = Counter(
    'push_rate_limited_total',
    'Rate-limit responses received from providers',
    ['provider'],
    registry=REGISTRY
)

push_tokens_invalidated_total = Counter(
    'push_tokens_invalidated_total',
    'Device tokens removed after a provider rejected them',
    ['provider'],
    registry=REGISTRY
)

push_credential_refresh_total = Counter(
    'push_credential_refresh_total',
    'Provider credential refreshes',
    ['provider', 'status'],
    registry=REGISTRY
)

push_dispatches_total = Counter(
    'push_dispatches_total',
    'Dispatch calls by aggregate result',
    ['result'],
    registry=REGISTRY
)

push_dispatch_duration_seconds = Histogram(
    'push_dispatch_duration_seconds',
    'End-to-end dispatch duration',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY
)

push_dispatches_in_progress = Gauge(
    'push_dispatches_in_progress',
    'Dispatches currently holding a concurrency slot',
    registry=REGISTRY
)

push_uptime_seconds = Gauge(
    'push_uptime_seconds',
    'Seconds since metrics were initialised',
    registry=REGISTRY
)


def init_metrics(version: str = "1.0.0"):
    """
    Initialize metrics with application info.

    Args:
        version: Application version string
    """
    global _start_time
    _start_time = time.time()

    app_info.info({
        'version': version,
        'name': 'pushgate'
    })

    logger.info("Prometheus metrics initialized", extra={"version": version})


def record_request_metrics(
    method: str,
    path: str,
    status_code: int,
    response_time_seconds: float
):
    """Record HTTP request count and latency with a cardinality-safe path label."""
    normalized_path = _normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status_code=str(status_code)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(response_time_seconds)


def record_push_attempt(provider: str, verdict: str):
    """
    Record one classified provider attempt.

    Args:
        provider: apns, fcm or expo
        verdict: success, or the classifier verdict (transient, rate_limited, ...)
    """
    push_attempts_total.labels(provider=provider, verdict=verdict).inc()


def record_send_duration(provider: str, duration_seconds: float):
    push_send_duration_seconds.labels(provider=provider).observe(duration_seconds)


def record_push_retry(provider: str, reason: str):
    push_retries_total.labels(provider=provider, reason=reason).inc()
    if reason == "rate_limited":
        push_rate_limited_total.labels(provider=provider).inc()


def record_token_invalidated(provider: str, count: int = 1):
    push_tokens_invalidated_total.labels(provider=provider).inc(count)


def record_credential_refresh(provider: str, status: str):
    push_credential_refresh_total.labels(provider=provider, status=status).inc()


def record_dispatch(result: str, duration_seconds: float):
    """
    Record a finished dispatch.

    Args:
        result: delivered, partial, failed, no_devices, disabled
        duration_seconds: Wall time of the dispatch call
    """
    push_dispatches_total.labels(result=result).inc()
    push_dispatch_duration_seconds.observe(duration_seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format metrics
    """
    push_uptime_seconds.set(time.time() - _start_time)
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def _normalize_path(path: str) -> str:
    """
    Normalize request path to avoid high cardinality.

    Replaces UUIDs and numeric IDs with placeholders.
    """
    path = re.sub(
        r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
        '{id}',
        path,
        flags=re.IGNORECASE
    )
    path = re.sub(r'/\d+', '/{id}', path)
    return path
