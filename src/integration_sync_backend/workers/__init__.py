"""Async workers for integration sync jobs."""

from .sync_worker import process_sync_job, run_sync_worker

__all__ = ["process_sync_job", "run_sync_worker"]
