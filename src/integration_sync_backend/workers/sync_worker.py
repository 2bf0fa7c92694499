"""Async sync worker.

This worker consumes jobs from the Redis Streams 'integration.sync.jobs'
queue and runs them through the SyncOrchestrator. Jobs are acknowledged after
handling; jobs left pending by a dead worker are reclaimed once they have
been idle longer than the job timeout.
"""

import asyncio
import signal
import socket
import sys
from typing import Any, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from integration_sync_backend.config import Settings, load_settings
from integration_sync_backend.db.postgres import close_postgres_client, get_postgres_client
from integration_sync_backend.db.redis import (
    INTEGRATION_SYNC_CONSUMER_GROUP,
    INTEGRATION_SYNC_STREAM,
    RedisClient,
    close_redis_client,
    get_redis_client,
)
from integration_sync_backend.sync.jobs import SyncJob, SyncJobQueue
from integration_sync_backend.sync.materializer import Materializer
from integration_sync_backend.sync.orchestrator import SyncOrchestrator
from integration_sync_backend.sync.registry import build_connector_registry
from integration_sync_backend.sync.store import ConnectionStore
from integration_sync_backend.token_vault import create_token_vault

logger = structlog.get_logger(__name__)

CLAIM_INTERVAL_SECONDS = 60.0
# Discovery enforces the job timeout itself; this only bounds stuck jobs
JOB_TIMEOUT_GRACE_SECONDS = 30


async def process_sync_job(
    job_data: dict[str, Any],
    orchestrator: SyncOrchestrator,
    timeout_seconds: float,
) -> None:
    """
    Process a single sync job.

    Args:
        job_data: Message payload from the stream
        orchestrator: Orchestrator that runs the job
        timeout_seconds: Upper bound on the job's run time
    """
    try:
        job = SyncJob.from_message(job_data)
    except (PydanticValidationError, ValueError) as e:
        logger.error("sync_job_invalid", error=str(e))
        return

    logger.info(
        "sync_job_started",
        job_id=str(job.job_id),
        kind=job.kind.value,
        connection_id=str(job.connection_id),
        trigger=job.trigger.value,
        attempt=job.attempt,
    )
    try:
        await asyncio.wait_for(orchestrator.handle(job), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        retried = await orchestrator.retry_later(job, "timeout")
        logger.error(
            "sync_job_timeout",
            job_id=str(job.job_id),
            connection_id=str(job.connection_id),
            timeout_seconds=timeout_seconds,
            retried=retried,
        )
        return
    logger.info("sync_job_completed", job_id=str(job.job_id), kind=job.kind.value)


async def _handle_message(
    redis: RedisClient,
    message_id: str,
    job_data: dict[str, Any],
    orchestrator: SyncOrchestrator,
    settings: Settings,
    semaphore: asyncio.Semaphore,
) -> None:
    try:
        await process_sync_job(
            job_data,
            orchestrator,
            settings.sync_job_timeout_seconds + JOB_TIMEOUT_GRACE_SECONDS,
        )
    except Exception as e:
        # Log but don't crash the worker
        logger.error("sync_worker_job_error", message_id=message_id, error=str(e))
    finally:
        semaphore.release()
        try:
            await redis.ack_job(INTEGRATION_SYNC_STREAM, INTEGRATION_SYNC_CONSUMER_GROUP, message_id)
        except Exception as e:
            logger.error("sync_worker_ack_failed", message_id=message_id, error=str(e))


async def run_sync_worker(
    consumer_name: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the sync worker as a long-running async task.

    This function:
    1. Connects to Redis and PostgreSQL and builds the connector registry
    2. Promotes due delayed retries onto the stream
    3. Reclaims stale pending jobs from dead consumers
    4. Runs up to SYNC_WORKER_CONCURRENCY jobs at a time

    Args:
        consumer_name: Unique identifier for this worker instance
        stop_event: Set to stop consuming; in-flight jobs are awaited
    """
    settings = load_settings()
    consumer_name = consumer_name or f"sync-worker-{socket.gethostname()}"
    stop_event = stop_event or asyncio.Event()

    logger.info(
        "sync_worker_starting",
        consumer_name=consumer_name,
        stream=INTEGRATION_SYNC_STREAM,
        group=INTEGRATION_SYNC_CONSUMER_GROUP,
        concurrency=settings.sync_worker_concurrency,
    )

    redis = await get_redis_client(settings.redis_url)
    postgres = await get_postgres_client(settings.database_url)
    registry = build_connector_registry(settings)
    store = ConnectionStore(postgres, create_token_vault(settings))
    orchestrator = SyncOrchestrator(
        store=store,
        registry=registry,
        materializer=Materializer(postgres, redis),
        queue=SyncJobQueue(redis),
        redis_client=redis,
        settings=settings,
    )
    await redis.ensure_consumer_group(INTEGRATION_SYNC_STREAM, INTEGRATION_SYNC_CONSUMER_GROUP)

    logger.info(
        "sync_worker_initialized",
        consumer_name=consumer_name,
        providers=[p.value for p in registry.providers],
    )

    semaphore = asyncio.Semaphore(settings.sync_worker_concurrency)
    tasks: set[asyncio.Task] = set()
    min_idle_ms = (settings.sync_job_timeout_seconds + 60) * 1000
    loop = asyncio.get_running_loop()
    last_claim = 0.0

    try:
        while not stop_event.is_set():
            await redis.promote_due_jobs(INTEGRATION_SYNC_STREAM)

            messages: list[tuple[str, dict[str, Any]]] = []
            if loop.time() - last_claim >= CLAIM_INTERVAL_SECONDS:
                last_claim = loop.time()
                messages = await redis.claim_stale_jobs(
                    INTEGRATION_SYNC_STREAM,
                    INTEGRATION_SYNC_CONSUMER_GROUP,
                    consumer_name,
                    min_idle_ms=min_idle_ms,
                )
            if not messages:
                await semaphore.acquire()
                semaphore.release()
                messages = await redis.read_jobs(
                    INTEGRATION_SYNC_STREAM,
                    INTEGRATION_SYNC_CONSUMER_GROUP,
                    consumer_name,
                    count=settings.sync_worker_concurrency,
                    block_ms=1000,
                )

            for message_id, job_data in messages:
                await semaphore.acquire()
                task = asyncio.create_task(
                    _handle_message(redis, message_id, job_data, orchestrator, settings, semaphore)
                )
                tasks.add(task)
                task.add_done_callback(tasks.discard)
    finally:
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await registry.close()
        await close_postgres_client()
        await close_redis_client()
        logger.info("sync_worker_stopped", consumer_name=consumer_name)


async def main() -> None:
    """Entry point for running the sync worker as a standalone process."""
    stop_event = asyncio.Event()

    # Handle graceful shutdown
    def signal_handler() -> None:
        logger.info("sync_worker_shutdown_requested")
        stop_event.set()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, signal_handler)
    loop.add_signal_handler(signal.SIGTERM, signal_handler)

    try:
        await run_sync_worker(stop_event=stop_event)
    except Exception as e:
        logger.error("sync_worker_crashed", error=str(e))
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
