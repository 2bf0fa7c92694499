"""Sync orchestrator: runs discover and item jobs for one connection at a time.

Discovery for a connection is serialized with a Redis lock. Provider data is
checkpointed after every page so a failed or timed-out job resumes where the
last successful page left off.
"""

import asyncio
import dataclasses
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog

from ..config import Settings
from ..core.errors import (
    ProviderAuthError,
    ProviderDataError,
    ProviderTransientError,
    TokenDecryptError,
)
from ..db.redis import RedisClient
from ..observability import record_items, record_job, record_token_refresh
from .base import BaseConnector
from .jobs import JobKind, SyncJob, SyncJobQueue
from .materializer import Materializer
from .models import Connection, ConnectionStatus, SyncStatus, SyncTrigger
from .registry import ConnectorRegistry
from .scheduler import SyncScheduler
from .store import ConnectionStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SYNC_LOCK_PREFIX = "integration:sync-lock:"
REFRESH_LOCK_PREFIX = "integration:refresh-lock:"
REFRESH_LOCK_TTL_MS = 30_000
REFRESH_WAIT_SECONDS = 10.0
LOCK_BUSY_RETRY_SECONDS = 30.0
MAX_RETRY_DELAY_SECONDS = 900.0
MAX_TITLES_IN_DETAILS = 20
UNKNOWN_PROVIDER = "unknown"


def retry_delay(attempt: int, retry_after: Optional[float] = None) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    if retry_after is not None and retry_after > 0:
        return min(retry_after, MAX_RETRY_DELAY_SECONDS)
    return min(30.0 * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)


class SyncOrchestrator:
    """Executes sync jobs against connectors, the store and the materializer."""

    def __init__(
        self,
        store: ConnectionStore,
        registry: ConnectorRegistry,
        materializer: Materializer,
        queue: SyncJobQueue,
        redis_client: RedisClient,
        settings: Settings,
        scheduler: Optional[SyncScheduler] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._materializer = materializer
        self._queue = queue
        self._redis = redis_client
        self._settings = settings
        self._scheduler = scheduler
        self._refresh_buffer = timedelta(seconds=settings.token_refresh_buffer_seconds)

    async def handle(self, job: SyncJob) -> None:
        """Run a job from the queue."""
        if job.kind == JobKind.PROCESS_ITEM and job.event is not None:
            await self.process_item(job)
        else:
            await self.discover(job)

    async def retry_later(self, job: SyncJob, reason: str) -> bool:
        """Re-queue a job after a failure. Returns False once attempts run out."""
        if job.attempt + 1 >= self._settings.sync_max_attempts:
            return False
        await self._queue.enqueue_delayed(job.next_attempt(), retry_delay(job.attempt))
        logger.info(
            "sync_job_retry_scheduled",
            job_id=str(job.job_id),
            connection_id=str(job.connection_id),
            attempt=job.attempt + 1,
            reason=reason,
        )
        return True

    # ---- Discovery -----------------------------------------------------------

    async def discover(self, job: SyncJob) -> None:
        log = logger.bind(connection_id=str(job.connection_id), job_id=str(job.job_id))
        try:
            connection = await self._store.get(job.connection_id)
        except (ProviderDataError, TokenDecryptError) as e:
            # Stored state is unusable until the tenant reconnects
            await self._fail(job.connection_id, UNKNOWN_PROVIDER, job.sync_log_id, e, log)
            record_job(UNKNOWN_PROVIDER, JobKind.DISCOVER.value, "failed")
            return
        if connection is None or not connection.is_active:
            log.info("sync_job_skipped", reason="connection_inactive")
            self._remove_schedule(job.connection_id)
            return
        if job.trigger == SyncTrigger.SCHEDULED and not connection.sync_enabled:
            log.info("sync_job_skipped", reason="sync_disabled")
            self._remove_schedule(job.connection_id)
            return

        connector = self._registry.get_connector(connection.provider)
        provider = connection.provider.value
        lock_key = f"{SYNC_LOCK_PREFIX}{connection.id}"
        lock_token: Optional[str] = None
        if connector.lock_on_discovery:
            ttl_ms = (self._settings.sync_job_timeout_seconds + 60) * 1000
            lock_token = await self._redis.acquire_lock(lock_key, ttl_ms)
            if lock_token is None:
                # A fresh scheduled tick is redundant; a run already in progress is not
                if job.trigger == SyncTrigger.SCHEDULED and job.sync_log_id is None:
                    log.info("sync_job_dropped", reason="discovery_in_progress")
                    record_job(provider, JobKind.DISCOVER.value, "skipped")
                else:
                    await self._queue.enqueue_delayed(job, LOCK_BUSY_RETRY_SECONDS)
                    record_job(provider, JobKind.DISCOVER.value, "deferred")
                return

        started = time.monotonic()
        log_id = job.sync_log_id
        continuation: Optional[SyncJob] = None
        try:
            if log_id is None:
                log_id = await self._store.create_sync_log(connection.id, job.trigger)
            await self._store.update_sync_log(log_id, status=SyncStatus.RUNNING)
            log.info("sync_started", provider=provider, trigger=job.trigger.value, attempt=job.attempt)

            outcome, continuation = await asyncio.wait_for(
                self._run_discovery(job, connection, connector, log_id, log),
                timeout=self._settings.sync_job_timeout_seconds,
            )
            record_job(provider, JobKind.DISCOVER.value, outcome, time.monotonic() - started)
        except asyncio.TimeoutError:
            timeout = self._settings.sync_job_timeout_seconds
            error = ProviderTransientError(provider, "sync", f"timed out after {timeout}s")
            await self._handle_transient(job, connection, log_id, error, log)
        except ProviderTransientError as e:
            await self._handle_transient(job, connection, log_id, e, log)
        except Exception as e:
            await self._fail(connection.id, provider, log_id, e, log)
            record_job(provider, JobKind.DISCOVER.value, "failed", time.monotonic() - started)
            raise
        finally:
            if lock_token is not None:
                await self._redis.release_lock(lock_key, lock_token)

        if continuation is not None:
            await self._queue.enqueue(continuation)
            log.info("sync_continued", items_synced=continuation.items_synced)

    async def _run_discovery(
        self,
        job: SyncJob,
        connection: Connection,
        connector: BaseConnector,
        log_id: UUID,
        log: Any,
    ) -> tuple[str, Optional[SyncJob]]:
        """Run pages until done or out of budget. Returns the outcome and any continuation."""
        provider = connection.provider.value
        connection = await self.ensure_fresh_token(connection, connector)
        synced = job.items_synced
        failed = job.items_failed
        deleted = 0
        titles: list[str] = []
        pages = 0

        while True:
            result, connection = await self._with_auth_retry(
                connection,
                connector,
                lambda token, conn: connector.sync(token, conn.provider_data),
            )

            page_failed = 0
            for item in result.items:
                try:
                    await self._materializer.upsert_document(connection, item)
                    synced += 1
                    if len(titles) < MAX_TITLES_IN_DETAILS:
                        titles.append(item.title)
                except Exception as e:
                    page_failed += 1
                    log.error("sync_item_failed", external_id=item.external_id, error=str(e))
            failed += page_failed
            record_items(provider, "upserted", len(result.items) - page_failed)
            record_items(provider, "failed", page_failed)

            page_deleted = 0
            for external_id in result.deleted_external_ids:
                if await self._materializer.delete_document(connection, external_id):
                    page_deleted += 1
            deleted += page_deleted
            record_items(provider, "deleted", page_deleted)

            for event in result.webhook_events:
                await self._queue.enqueue(
                    SyncJob.process_item(
                        connection.id, connection.tenant_id, event, trigger=job.trigger
                    )
                )

            # Checkpoint before anything else can fail
            await self._store.save_provider_data(
                connection.id, connection.provider, result.updated_provider_data
            )
            connection = dataclasses.replace(connection, provider_data=result.updated_provider_data)
            pages += 1

            if not result.has_more:
                break
            await self._store.update_sync_log(
                log_id,
                items_synced=synced,
                items_failed=failed,
                progress=round(pages / (pages + 1), 3),
            )
            if pages >= self._settings.sync_max_pages_per_job:
                # Enqueued by the caller once the lock is released
                return "continued", job.continuation(log_id, synced, failed)

        await self._store.mark_synced(connection.id)
        await self._store.update_sync_log(
            log_id,
            status=SyncStatus.COMPLETED,
            items_synced=synced,
            items_failed=failed,
            progress=1.0,
            details={"titles": titles, "deleted": deleted, "pages": pages},
        )
        log.info(
            "sync_completed",
            provider=provider,
            items_synced=synced,
            items_failed=failed,
            deleted=deleted,
        )
        return "completed", None

    async def _handle_transient(
        self,
        job: SyncJob,
        connection: Connection,
        log_id: Optional[UUID],
        error: ProviderTransientError,
        log: Any,
    ) -> None:
        provider = connection.provider.value
        if job.attempt + 1 < self._settings.sync_max_attempts:
            retry = job.next_attempt().model_copy(update={"sync_log_id": log_id})
            await self._queue.enqueue_delayed(retry, retry_delay(job.attempt, error.retry_after))
            if log_id is not None:
                await self._store.update_sync_log(
                    log_id, error_message=f"retrying: {error.message}"
                )
            log.warning("sync_transient_failure", error=error.message, attempt=job.attempt)
            record_job(provider, JobKind.DISCOVER.value, "retried")
            return
        await self._fail(connection.id, provider, log_id, error, log)
        record_job(provider, JobKind.DISCOVER.value, "failed")

    async def _fail(
        self,
        connection_id: UUID,
        provider: str,
        log_id: Optional[UUID],
        error: Exception,
        log: Any,
    ) -> None:
        """Mark the run FAILED and disconnect the connection."""
        message = getattr(error, "message", None) or str(error)
        if log_id is not None:
            await self._store.update_sync_log(
                log_id, status=SyncStatus.FAILED, error_message=message
            )
        await self._store.set_status(connection_id, ConnectionStatus.DISCONNECTED, sync_enabled=False)
        self._remove_schedule(connection_id)
        log.error("sync_failed", provider=provider, error=message)

    def _remove_schedule(self, connection_id: UUID) -> None:
        if self._scheduler is not None:
            self._scheduler.remove(connection_id)

    # ---- Item jobs -----------------------------------------------------------

    async def process_item(self, job: SyncJob) -> None:
        event = job.webhook_event
        if event is None:
            raise ValueError("process_item job without an event")
        log = logger.bind(
            connection_id=str(job.connection_id),
            job_id=str(job.job_id),
            external_id=event.external_id,
        )
        connection = await self._store.get(job.connection_id)
        if connection is None or not connection.is_active:
            log.info("sync_job_skipped", reason="connection_inactive")
            return

        connector = self._registry.get_connector(connection.provider)
        provider = connection.provider.value
        started = time.monotonic()
        try:
            connection = await self.ensure_fresh_token(connection, connector)
            result, connection = await self._with_auth_retry(
                connection,
                connector,
                lambda token, conn: connector.process_webhook_item(
                    token, conn.provider_data, event
                ),
            )
            if result.item is not None:
                await self._materializer.upsert_document(connection, result.item)
                record_items(provider, "upserted")
            elif result.deleted_external_id is not None:
                if await self._materializer.delete_document(connection, result.deleted_external_id):
                    record_items(provider, "deleted")
            record_job(provider, JobKind.PROCESS_ITEM.value, "completed", time.monotonic() - started)
            log.info("sync_item_processed", action=event.action.value)
        except ProviderTransientError as e:
            if await self.retry_later(job, e.message):
                record_job(provider, JobKind.PROCESS_ITEM.value, "retried")
            else:
                record_items(provider, "failed")
                record_job(provider, JobKind.PROCESS_ITEM.value, "failed")
                log.error("sync_item_failed", error=e.message, attempts=job.attempt + 1)
        except Exception as e:
            record_items(provider, "failed")
            record_job(provider, JobKind.PROCESS_ITEM.value, "failed", time.monotonic() - started)
            log.error("sync_item_failed", error=getattr(e, "message", None) or str(e))

    # ---- Tokens --------------------------------------------------------------

    async def _with_auth_retry(
        self,
        connection: Connection,
        connector: BaseConnector,
        call: Callable[[str, Connection], Awaitable[T]],
    ) -> tuple[T, Connection]:
        """Run ``call``; on an auth failure refresh once and run it again."""
        try:
            return await call(connection.access_token, connection), connection
        except ProviderAuthError:
            if not connection.refresh_token:
                raise
            logger.info("provider_auth_rejected_refreshing", connection_id=str(connection.id))
            connection = await self.ensure_fresh_token(connection, connector, force=True)
            return await call(connection.access_token, connection), connection

    async def ensure_fresh_token(
        self,
        connection: Connection,
        connector: BaseConnector,
        force: bool = False,
    ) -> Connection:
        """
        Refresh the access token if it is about to expire (or ``force`` is set).

        Only one worker refreshes a connection at a time. Others wait for the
        lock and then use whatever tokens it persisted.

        Raises:
            ProviderAuthError: If the provider rejects the refresh token
        """
        if not force and not connection.needs_refresh(self._refresh_buffer):
            return connection
        if not connection.refresh_token:
            if force:
                raise ProviderAuthError(
                    connection.provider.value, "refresh_tokens", "no refresh token stored"
                )
            return connection

        lock_key = f"{REFRESH_LOCK_PREFIX}{connection.id}"
        token = await self._acquire_refresh_lock(lock_key)
        if token is None:
            # Another worker held the lock for the whole wait; use what it stored
            return await self._reload(connection)
        try:
            current = await self._reload(connection)
            if force and current.access_token != connection.access_token:
                return current
            if not force and not current.needs_refresh(self._refresh_buffer):
                return current
            if not current.refresh_token:
                raise ProviderAuthError(
                    connection.provider.value, "refresh_tokens", "no refresh token stored"
                )
            try:
                tokens = await connector.refresh_tokens(current.refresh_token)
            except ProviderAuthError:
                record_token_refresh(connection.provider.value, "failed")
                raise
            await self._store.save_tokens(connection.id, tokens)
            record_token_refresh(connection.provider.value, "refreshed")
            logger.info("token_refreshed", connection_id=str(connection.id))
            return dataclasses.replace(
                current,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or current.refresh_token,
                token_expires_at=tokens.expires_at,
            )
        finally:
            if token is not None:
                await self._redis.release_lock(lock_key, token)

    async def _acquire_refresh_lock(self, key: str) -> Optional[str]:
        deadline = time.monotonic() + REFRESH_WAIT_SECONDS
        while True:
            token = await self._redis.acquire_lock(key, REFRESH_LOCK_TTL_MS)
            if token is not None or time.monotonic() >= deadline:
                return token
            await asyncio.sleep(0.25)

    async def _reload(self, connection: Connection) -> Connection:
        current = await self._store.get(connection.id)
        return current if current is not None else connection
