"""Observability package for Prometheus metrics."""

from .metrics import (
    SYNC_ITEMS_TOTAL,
    SYNC_JOB_DURATION_SECONDS,
    SYNC_JOBS_TOTAL,
    TOKEN_REFRESHES_TOTAL,
    WEBHOOKS_RECEIVED_TOTAL,
    get_metrics_registry,
    record_items,
    record_job,
    record_token_refresh,
    record_webhook,
)

__all__ = [
    "SYNC_ITEMS_TOTAL",
    "SYNC_JOB_DURATION_SECONDS",
    "SYNC_JOBS_TOTAL",
    "TOKEN_REFRESHES_TOTAL",
    "WEBHOOKS_RECEIVED_TOTAL",
    "get_metrics_registry",
    "record_items",
    "record_job",
    "record_token_refresh",
    "record_webhook",
]
