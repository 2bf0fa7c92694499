"""Sync job contract and queue helpers."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from ..db.redis import INTEGRATION_SYNC_STREAM, RedisClient
from .models import SyncTrigger, WebhookAction, WebhookEvent

logger = structlog.get_logger(__name__)


class JobKind(str, Enum):
    """What a sync job does."""

    DISCOVER = "discover"
    PROCESS_ITEM = "process_item"


class JobEvent(BaseModel):
    """Webhook event carried by an item job."""

    action: WebhookAction
    external_id: str

    def to_event(self) -> WebhookEvent:
        return WebhookEvent(action=self.action, external_id=self.external_id)


class SyncJob(BaseModel):
    """A unit of work on the ``integration.sync.jobs`` stream.

    ``items_synced`` and ``items_failed`` carry running totals across
    continuations and retries of the same sync run.
    """

    job_id: UUID = Field(default_factory=uuid4)
    kind: JobKind
    connection_id: UUID
    tenant_id: UUID
    trigger: SyncTrigger
    event: Optional[JobEvent] = None
    sync_log_id: Optional[UUID] = None
    attempt: int = 0
    items_synced: int = 0
    items_failed: int = 0
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def discover(
        cls,
        connection_id: UUID,
        tenant_id: UUID,
        trigger: SyncTrigger,
        sync_log_id: Optional[UUID] = None,
    ) -> "SyncJob":
        return cls(
            kind=JobKind.DISCOVER,
            connection_id=connection_id,
            tenant_id=tenant_id,
            trigger=trigger,
            sync_log_id=sync_log_id,
        )

    @classmethod
    def process_item(
        cls,
        connection_id: UUID,
        tenant_id: UUID,
        event: WebhookEvent,
        trigger: SyncTrigger = SyncTrigger.WEBHOOK,
    ) -> "SyncJob":
        return cls(
            kind=JobKind.PROCESS_ITEM,
            connection_id=connection_id,
            tenant_id=tenant_id,
            trigger=trigger,
            event=JobEvent(action=event.action, external_id=event.external_id),
        )

    @property
    def webhook_event(self) -> Optional[WebhookEvent]:
        return self.event.to_event() if self.event else None

    def next_attempt(self) -> "SyncJob":
        """Copy of this job for a retry, with a fresh job id."""
        return self.model_copy(
            update={
                "job_id": uuid4(),
                "attempt": self.attempt + 1,
                "enqueued_at": datetime.now(timezone.utc),
            }
        )

    def continuation(
        self, sync_log_id: UUID, items_synced: int, items_failed: int
    ) -> "SyncJob":
        """Follow-up discover job that resumes from the persisted checkpoint."""
        return self.model_copy(
            update={
                "job_id": uuid4(),
                "sync_log_id": sync_log_id,
                "attempt": 0,
                "items_synced": items_synced,
                "items_failed": items_failed,
                "enqueued_at": datetime.now(timezone.utc),
            }
        )

    def to_message(self) -> dict[str, Any]:
        return {"job": self.model_dump(mode="json")}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_message(cls, data: dict[str, Any]) -> "SyncJob":
        """Parse a stream message produced by ``to_message``.

        Raises:
            pydantic.ValidationError: If the payload is not a valid job
        """
        payload = data.get("job", data)
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls.model_validate(payload)


class SyncJobQueue:
    """Publishes sync jobs to the Redis stream."""

    def __init__(self, redis_client: RedisClient, stream: str = INTEGRATION_SYNC_STREAM) -> None:
        self._redis = redis_client
        self.stream = stream

    async def enqueue(self, job: SyncJob) -> str:
        message_id = await self._redis.publish_job(self.stream, job.to_message())
        logger.info(
            "sync_job_enqueued",
            job_id=str(job.job_id),
            kind=job.kind.value,
            connection_id=str(job.connection_id),
            trigger=job.trigger.value,
            attempt=job.attempt,
        )
        return message_id

    async def enqueue_delayed(self, job: SyncJob, delay_seconds: float) -> None:
        """Park a job in the delayed set; workers promote it when due."""
        await self._redis.schedule_delayed_job(job.to_json(), delay_seconds)
        logger.info(
            "sync_job_delayed",
            job_id=str(job.job_id),
            kind=job.kind.value,
            connection_id=str(job.connection_id),
            delay_seconds=round(delay_seconds, 1),
            attempt=job.attempt,
        )
