"""Connection management operations behind the integrations API."""

import secrets
from typing import Any, Optional
from uuid import UUID

import structlog

from ..config import Settings
from ..core.errors import ConnectionNotFoundError, OAuthStateError, ValidationError
from ..db.redis import RedisClient
from .jobs import SyncJob, SyncJobQueue
from .materializer import Materializer
from .models import Connection, ConnectionStatus, IntegrationProvider, SyncStatus, SyncTrigger
from .provider_data import merge_provider_config
from .registry import ConnectorRegistry
from .scheduler import SyncScheduler
from .store import ConnectionStore

logger = structlog.get_logger(__name__)


class IntegrationsService:
    """Connect, configure, trigger and remove provider connections for a tenant."""

    def __init__(
        self,
        store: ConnectionStore,
        registry: ConnectorRegistry,
        queue: SyncJobQueue,
        materializer: Materializer,
        redis_client: RedisClient,
        settings: Settings,
        scheduler: Optional[SyncScheduler] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._materializer = materializer
        self._redis = redis_client
        self._settings = settings
        self._scheduler = scheduler

    async def list_connections(self, tenant_id: UUID) -> list[dict[str, Any]]:
        return await self._store.list_summaries(tenant_id)

    async def start_connect(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
        user_id: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Issue a one-time OAuth state and return the provider authorization URL.

        Raises:
            ConnectorNotRegisteredError: If the provider is not enabled
        """
        connector = self._registry.get_connector(provider)
        state = secrets.token_hex(32)
        await self._redis.set_oauth_state(
            state,
            {"tenant_id": str(tenant_id), "user_id": user_id, "provider": provider.value},
            self._settings.oauth_state_ttl_seconds,
        )
        logger.info("oauth_started", tenant_id=str(tenant_id), provider=provider.value)
        return {
            "auth_url": connector.get_auth_url(tenant_id, state, self._settings.oauth_redirect_uri),
            "state": state,
        }

    async def complete_oauth(self, state: str, code: Optional[str]) -> Connection:
        """
        Finish an OAuth flow: exchange the code, store the connection, schedule
        it and enqueue the initial sync.

        The state is consumed even when the code is missing.

        Raises:
            OAuthStateError: If the state is unknown, expired or already used
            ValidationError: If no authorization code was returned
        """
        data = await self._redis.pop_oauth_state(state)
        if data is None:
            raise OAuthStateError()
        if not code:
            raise ValidationError("Missing authorization code")
        provider = IntegrationProvider.parse(str(data.get("provider", "")))
        if provider is None:
            raise OAuthStateError()
        try:
            tenant_id = UUID(str(data["tenant_id"]))
        except (KeyError, ValueError) as e:
            raise OAuthStateError() from e

        connector = self._registry.get_connector(provider)
        tokens = await connector.exchange_code(code, self._settings.oauth_redirect_uri)
        account = await connector.get_account_info(tokens.access_token)
        provider_data = connector.build_initial_provider_data(tokens.metadata, account.metadata)
        previous = await self._store.get_summary(tenant_id, provider)
        if previous is not None and previous.get("external_account_id") != account.id:
            # The old account's row is replaced and its documents go with it
            await self._materializer.purge_connection(previous["id"], tenant_id)
        connection = await self._store.create(tenant_id, provider, tokens, account, provider_data)

        if connector.sync_schedule is not None and self._scheduler is not None:
            self._scheduler.register(connection.id, connector.sync_schedule)
        await self._enqueue_discovery(connection, SyncTrigger.INITIAL)
        logger.info(
            "connection_established",
            connection_id=str(connection.id),
            tenant_id=str(tenant_id),
            provider=provider.value,
            account=account.name,
        )
        return connection

    async def disconnect(self, tenant_id: UUID, provider: IntegrationProvider) -> dict[str, Any]:
        """Stop syncing but keep the connection and its documents."""
        connection = await self._require(tenant_id, provider)
        await self._store.set_status(connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False)
        self._remove_schedule(connection.id)
        summary = await self._store.get_summary(tenant_id, provider)
        return summary or {}

    async def delete(self, tenant_id: UUID, provider: IntegrationProvider) -> None:
        """Remove the connection together with its documents and sync logs."""
        connection = await self._require(tenant_id, provider)
        self._remove_schedule(connection.id)
        await self._materializer.purge_connection(connection.id, tenant_id)
        await self._store.delete(connection.id)
        logger.info(
            "connection_deleted",
            connection_id=str(connection.id),
            tenant_id=str(tenant_id),
            provider=provider.value,
        )

    async def update_config(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Merge tenant-editable settings into provider data and resync.

        Raises:
            ValidationError: If ``updates`` is empty or touches locked fields
            ProviderDataError: If the merged provider data is invalid
        """
        if not updates:
            raise ValidationError("No configuration fields provided")
        connection = await self._require(tenant_id, provider)
        merged = merge_provider_config(connection.provider_data, updates)
        await self._store.save_provider_data(connection.id, provider, merged)
        if connection.is_active:
            await self._enqueue_discovery(connection, SyncTrigger.MANUAL)
        summary = await self._store.get_summary(tenant_id, provider)
        return summary or {}

    async def trigger_sync(self, tenant_id: UUID, provider: IntegrationProvider) -> dict[str, Any]:
        """
        Queue a manual discovery.

        Raises:
            ValidationError: If the connection is not ACTIVE
        """
        connection = await self._require(tenant_id, provider)
        if not connection.is_active:
            raise ValidationError(
                "Connection is disconnected; reconnect before syncing",
                details={"status": connection.status.value},
            )
        log_id = await self._enqueue_discovery(connection, SyncTrigger.MANUAL)
        return {"sync_log_id": str(log_id), "status": SyncStatus.PENDING.value}

    async def list_sync_logs(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        summary = await self._store.get_summary(tenant_id, provider)
        if summary is None:
            raise ConnectionNotFoundError(f"{tenant_id}/{provider.value}")
        return await self._store.list_sync_logs(summary["id"], limit=limit)

    async def _require(self, tenant_id: UUID, provider: IntegrationProvider) -> Connection:
        connection = await self._store.get_for_tenant(tenant_id, provider)
        if connection is None:
            raise ConnectionNotFoundError(f"{tenant_id}/{provider.value}")
        return connection

    async def _enqueue_discovery(self, connection: Connection, trigger: SyncTrigger) -> UUID:
        log_id = await self._store.create_sync_log(connection.id, trigger)
        await self._queue.enqueue(
            SyncJob.discover(connection.id, connection.tenant_id, trigger, sync_log_id=log_id)
        )
        return log_id

    def _remove_schedule(self, connection_id: UUID) -> None:
        if self._scheduler is not None:
            self._scheduler.remove(connection_id)
