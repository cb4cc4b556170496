"""
Prometheus metrics for walletlens.

Exposes provider, verification, pricing, cache and write-queue metrics.
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "walletlens",
    "walletlens application info",
    registry=REGISTRY,
)
APP_INFO.info({
    "version": "0.1.0",
    "name": "walletlens",
})

# Upstream provider metrics
PROVIDER_REQUESTS_TOTAL = Counter(
    "walletlens_provider_requests_total",
    "Total number of upstream provider requests",
    ["provider", "operation", "status"],
    registry=REGISTRY,
)

PROVIDER_REQUEST_DURATION_SECONDS = Histogram(
    "walletlens_provider_request_duration_seconds",
    "Upstream provider request duration in seconds",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

PROVIDER_ERRORS_TOTAL = Counter(
    "walletlens_provider_errors_total",
    "Total number of upstream provider errors",
    ["provider", "error_type"],
    registry=REGISTRY,
)

POSITIONS_DROPPED_TOTAL = Counter(
    "walletlens_positions_dropped_total",
    "Provider groups dropped during aggregation",
    ["provider", "reason"],
    registry=REGISTRY,
)

# Verification metrics
TOKEN_CLASSIFICATIONS_TOTAL = Counter(
    "walletlens_token_classifications_total",
    "Tokens classified, by outcome",
    ["network", "outcome"],
    registry=REGISTRY,
)

AUTHORITY_LOOKUPS_TOTAL = Counter(
    "walletlens_authority_lookups_total",
    "Batched external authority lookups",
    ["status"],
    registry=REGISTRY,
)

REGISTRY_LOADS_TOTAL = Counter(
    "walletlens_registry_loads_total",
    "Registry snapshot loads from the source-of-truth store",
    ["registry", "network"],
    registry=REGISTRY,
)

# Cache metrics
CACHE_ERRORS_TOTAL = Counter(
    "walletlens_cache_errors_total",
    "Cache I/O errors bypassed as misses",
    ["layer", "operation"],
    registry=REGISTRY,
)

# Pricing metrics
PRICE_REQUESTS_TOTAL = Counter(
    "walletlens_price_requests_total",
    "Tokens priced, by result",
    ["network", "result"],
    registry=REGISTRY,
)

PRICE_FAILURES_TOTAL = Counter(
    "walletlens_price_failures_total",
    "Tokens that could not be priced",
    ["network"],
    registry=REGISTRY,
)

ENRICHMENT_DURATION_SECONDS = Histogram(
    "walletlens_enrichment_duration_seconds",
    "Duration of price enrichment passes in seconds",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

ENRICHMENT_PASSES_TOTAL = Counter(
    "walletlens_enrichment_passes_total",
    "Total number of enrichment passes",
    ["status"],
    registry=REGISTRY,
)

# Metadata fan-out
METADATA_FETCH_TIMEOUTS_TOTAL = Counter(
    "walletlens_metadata_fetch_timeouts_total",
    "Metadata fan-outs cut short by the hard timeout",
    ["network"],
    registry=REGISTRY,
)

# Background write queue
WRITE_QUEUE_DEPTH = Gauge(
    "walletlens_write_queue_depth",
    "Pending metadata write events",
    registry=REGISTRY,
)

WRITE_QUEUE_DROPPED_TOTAL = Counter(
    "walletlens_write_queue_dropped_total",
    "Metadata write events evicted because the queue was full",
    registry=REGISTRY,
)

WRITE_QUEUE_LATENCY_SECONDS = Histogram(
    "walletlens_write_queue_latency_seconds",
    "Time an event waited in the queue before a worker took it",
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0],
    registry=REGISTRY,
)

WRITE_QUEUE_FAILURES_TOTAL = Counter(
    "walletlens_write_queue_failures_total",
    "Metadata writes abandoned after exhausting retries",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def track_provider_request(provider: str, operation: str):
    """Decorator to track upstream request metrics."""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            status = "success"
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                status = "error"
                PROVIDER_ERRORS_TOTAL.labels(provider=provider, error_type=type(e).__name__).inc()
                raise
            finally:
                duration = time.time() - start_time
                PROVIDER_REQUESTS_TOTAL.labels(
                    provider=provider, operation=operation, status=status
                ).inc()
                PROVIDER_REQUEST_DURATION_SECONDS.labels(
                    provider=provider, operation=operation
                ).observe(duration)
        return wrapper
    return decorator


def record_group_dropped(provider: str, reason: str):
    POSITIONS_DROPPED_TOTAL.labels(provider=provider, reason=reason).inc()


def record_classification(network: str, outcome: str, count: int = 1):
    """Record classified tokens ("verified", "unlisted", "invalid_symbol", "cached")."""
    if count:
        TOKEN_CLASSIFICATIONS_TOTAL.labels(network=network, outcome=outcome).inc(count)


def record_authority_lookup(status: str):
    AUTHORITY_LOOKUPS_TOTAL.labels(status=status).inc()


def record_registry_load(registry: str, network: str):
    REGISTRY_LOADS_TOTAL.labels(registry=registry, network=network).inc()


def record_cache_error(layer: str, operation: str):
    CACHE_ERRORS_TOTAL.labels(layer=layer, operation=operation).inc()


def record_prices(network: str, priced: int, failed: int):
    if priced:
        PRICE_REQUESTS_TOTAL.labels(network=network, result="priced").inc(priced)
    if failed:
        PRICE_REQUESTS_TOTAL.labels(network=network, result="failed").inc(failed)
        PRICE_FAILURES_TOTAL.labels(network=network).inc(failed)


def record_metadata_timeout(network: str):
    METADATA_FETCH_TIMEOUTS_TOTAL.labels(network=network).inc()


def update_write_queue_depth(depth: int):
    WRITE_QUEUE_DEPTH.set(depth)


def record_write_queue_drop():
    WRITE_QUEUE_DROPPED_TOTAL.inc()


def record_write_queue_latency(seconds: float):
    WRITE_QUEUE_LATENCY_SECONDS.observe(seconds)


def record_write_failure():
    WRITE_QUEUE_FAILURES_TOTAL.inc()


class EnrichmentTimer:
    """Context manager for timing enrichment passes."""

    def __init__(self):
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self._start_time
        ENRICHMENT_DURATION_SECONDS.observe(duration)

        status = "success" if exc_type is None else "error"
        ENRICHMENT_PASSES_TOTAL.labels(status=status).inc()

        return False  # Don't suppress exceptions
