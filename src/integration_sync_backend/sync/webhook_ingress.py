"""Webhook ingress: verify inbound provider events and enqueue sync jobs.

Requests that cannot be attributed or verified are acknowledged with
``{"ok": true}`` and dropped, so providers never see which check failed.
"""

import json
from typing import Any, Mapping, Optional

import structlog

from ..core.errors import PayloadError, RedisError
from ..db.redis import RedisClient
from ..observability import record_webhook
from .jobs import SyncJob, SyncJobQueue
from .models import ConnectionStatus, IntegrationProvider, SyncTrigger
from .registry import ConnectorRegistry
from .scheduler import SyncScheduler
from .store import ConnectionStore

logger = structlog.get_logger(__name__)

ACK: dict[str, Any] = {"ok": True}
DELIVERY_KEY_PREFIX = "integration:webhook-delivery:"
DELIVERY_TTL_SECONDS = 24 * 60 * 60


def _parse_body(raw_body: bytes) -> Optional[Any]:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None


class WebhookIngress:
    """Turns verified webhook deliveries into queued sync jobs."""

    def __init__(
        self,
        store: ConnectionStore,
        registry: ConnectorRegistry,
        queue: SyncJobQueue,
        redis_client: RedisClient,
        scheduler: Optional[SyncScheduler] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._redis = redis_client
        self._scheduler = scheduler

    async def handle(
        self,
        provider_name: str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> dict[str, Any]:
        """
        Handle one delivery and return the JSON body to reply with.

        Raises:
            RedisError: If jobs cannot be enqueued, so the provider redelivers
            DatabaseError: If connections cannot be loaded
        """
        provider = IntegrationProvider.parse(provider_name)
        if provider is None or not self._registry.has_connector(provider):
            record_webhook("unknown", "ignored")
            logger.info("webhook_ignored", provider=provider_name, reason="unknown_provider")
            return ACK

        body = _parse_body(raw_body)
        if body is None:
            record_webhook(provider.value, "ignored")
            logger.info("webhook_ignored", provider=provider.value, reason="malformed_body")
            return ACK

        connector = self._registry.get_connector(provider)
        connections = await self._store.list_active_refs(provider)
        try:
            result = connector.handle_webhook_request(headers, body, connections, raw_body)
        except PayloadError as e:
            record_webhook(provider.value, "ignored")
            logger.warning("webhook_ignored", provider=provider.value, reason=e.message)
            return ACK

        for ref in result.disconnect_connections:
            await self._store.set_status(ref.id, ConnectionStatus.DISCONNECTED, sync_enabled=False)
            if self._scheduler is not None:
                self._scheduler.remove(ref.id)
            record_webhook(provider.value, "disconnected")

        if not result.sync_connections:
            if not result.disconnect_connections:
                record_webhook(provider.value, "ignored")
            return result.response

        delivery_id = connector.delivery_id(headers, body)
        delivery_key: Optional[str] = None
        if delivery_id:
            delivery_key = f"{DELIVERY_KEY_PREFIX}{provider.value}:{delivery_id}"
            first = await self._redis.mark_once(delivery_key, DELIVERY_TTL_SECONDS)
            if not first:
                record_webhook(provider.value, "duplicate")
                logger.info("webhook_duplicate", provider=provider.value, delivery_id=delivery_id)
                return result.response

        try:
            for ref, event in result.sync_connections:
                if event is not None:
                    job = SyncJob.process_item(ref.id, ref.tenant_id, event)
                else:
                    job = SyncJob.discover(ref.id, ref.tenant_id, SyncTrigger.WEBHOOK)
                await self._queue.enqueue(job)
        except RedisError:
            # Let the provider's redelivery through
            if delivery_key is not None:
                await self._redis.unmark(delivery_key)
            raise
        record_webhook(provider.value, "enqueued")
        logger.info(
            "webhook_enqueued",
            provider=provider.value,
            connections=len(result.sync_connections),
            delivery_id=delivery_id,
        )
        return result.response
