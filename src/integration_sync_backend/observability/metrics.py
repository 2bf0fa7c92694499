"""Prometheus metric definitions for sync operations.

All metrics carry a ``provider`` label. Connection and tenant ids are kept
out of labels to bound cardinality; they go to the logs instead.
"""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    CollectorRegistry,
    REGISTRY,
)
import structlog

logger = structlog.get_logger(__name__)

# Default registry (can be overridden for testing)
_registry: CollectorRegistry = REGISTRY


def get_metrics_registry() -> CollectorRegistry:
    """Get the current metrics registry."""
    return _registry


# =============================================================================
# Counter Metrics
# =============================================================================

SYNC_JOBS_TOTAL = Counter(
    "integration_sync_jobs_total",
    "Total number of sync jobs handled",
    labelnames=["provider", "kind", "outcome"],
    registry=_registry,
)
"""Counter for sync jobs.

Labels:
    provider: SLACK|GITHUB|LINEAR|NOTION
    kind: discover|process_item
    outcome: completed|failed|retried|skipped|deferred
"""

SYNC_ITEMS_TOTAL = Counter(
    "integration_sync_items_total",
    "Total number of items materialized or deleted",
    labelnames=["provider", "result"],
    registry=_registry,
)
"""Counter for synced items.

Labels:
    provider: Provider identifier
    result: upserted|deleted|failed
"""

WEBHOOKS_RECEIVED_TOTAL = Counter(
    "integration_webhooks_received_total",
    "Total number of inbound provider webhooks",
    labelnames=["provider", "result"],
    registry=_registry,
)
"""Counter for inbound webhooks.

Labels:
    provider: Provider identifier, or ``unknown``
    result: enqueued|ignored|duplicate|disconnected
"""

TOKEN_REFRESHES_TOTAL = Counter(
    "integration_token_refreshes_total",
    "Total number of provider token refresh attempts",
    labelnames=["provider", "result"],
    registry=_registry,
)

# =============================================================================
# Histogram Metrics
# =============================================================================

# Job duration buckets in seconds: 100ms .. 15min
JOB_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 180.0, 600.0, 900.0)

SYNC_JOB_DURATION_SECONDS = Histogram(
    "integration_sync_job_duration_seconds",
    "Sync job duration in seconds",
    labelnames=["provider", "kind"],
    buckets=JOB_DURATION_BUCKETS,
    registry=_registry,
)


def record_job(provider: str, kind: str, outcome: str, duration_seconds: float | None = None) -> None:
    """Record a finished sync job."""
    SYNC_JOBS_TOTAL.labels(provider=provider, kind=kind, outcome=outcome).inc()
    if duration_seconds is not None:
        SYNC_JOB_DURATION_SECONDS.labels(provider=provider, kind=kind).observe(duration_seconds)


def record_items(provider: str, result: str, count: int = 1) -> None:
    if count > 0:
        SYNC_ITEMS_TOTAL.labels(provider=provider, result=result).inc(count)


def record_webhook(provider: str, result: str) -> None:
    WEBHOOKS_RECEIVED_TOTAL.labels(provider=provider, result=result).inc()


def record_token_refresh(provider: str, result: str) -> None:
    TOKEN_REFRESHES_TOTAL.labels(provider=provider, result=result).inc()
