"""Periodic sync scheduling on top of APScheduler.

Each connection whose provider declares a sync schedule gets one interval
job with the stable id ``scheduled-{connection_id}``. Firing a job only
enqueues a SCHEDULED discover job; the worker does the actual sync.
"""

from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..db.postgres import PostgresClient
from .jobs import SyncJob, SyncJobQueue
from .models import ConnectionStatus, SyncTrigger
from .registry import ConnectorRegistry
from .store import ConnectionStore

logger = structlog.get_logger(__name__)


def schedule_job_id(connection_id: UUID) -> str:
    return f"scheduled-{connection_id}"


class SyncScheduler:
    """Registers, removes and restores per-connection sync schedules."""

    def __init__(
        self,
        postgres: PostgresClient,
        queue: SyncJobQueue,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._postgres = postgres
        self._queue = queue
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("sync_scheduler_started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("sync_scheduler_stopped")

    def register(self, connection_id: UUID, interval: timedelta) -> None:
        """Schedule periodic discovery. Registering again replaces the old job."""
        self._scheduler.add_job(
            self._fire,
            "interval",
            seconds=int(interval.total_seconds()),
            args=[connection_id],
            id=schedule_job_id(connection_id),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(
            "sync_schedule_registered",
            connection_id=str(connection_id),
            interval_seconds=int(interval.total_seconds()),
        )

    def remove(self, connection_id: UUID) -> bool:
        """Drop a connection's schedule. Missing schedules are not an error."""
        try:
            self._scheduler.remove_job(schedule_job_id(connection_id))
        except JobLookupError:
            return False
        logger.info("sync_schedule_removed", connection_id=str(connection_id))
        return True

    def is_registered(self, connection_id: UUID) -> bool:
        return self._scheduler.get_job(schedule_job_id(connection_id)) is not None

    async def restore(self, store: ConnectionStore, registry: ConnectorRegistry) -> int:
        """Re-register schedules for every ACTIVE, sync-enabled connection."""
        count = 0
        for connection_id, provider in await store.list_schedulable():
            if not registry.has_connector(provider):
                continue
            interval = registry.get_connector(provider).sync_schedule
            if interval is None:
                continue
            self.register(connection_id, interval)
            count += 1
        logger.info("sync_schedules_restored", count=count)
        return count

    async def _fire(self, connection_id: UUID) -> None:
        row = await self._postgres.get_connection_by_id(connection_id)
        if (
            row is None
            or row["status"] != ConnectionStatus.ACTIVE.value
            or not row.get("sync_enabled", True)
        ):
            # Disconnected by a worker in another process
            self.remove(connection_id)
            return
        await self._queue.enqueue(
            SyncJob.discover(
                connection_id=connection_id,
                tenant_id=row["tenant_id"],
                trigger=SyncTrigger.SCHEDULED,
            )
        )
