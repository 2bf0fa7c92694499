"""Connection store: typed access to connection rows.

Encrypts tokens on the way in, decrypts them on the way out and validates
provider data on every read and write.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from ..core.errors import ProviderDataError
from ..db.postgres import PostgresClient
from ..token_vault import TokenVault
from .models import (
    AccountInfo,
    Connection,
    ConnectionRef,
    ConnectionStatus,
    IntegrationProvider,
    OAuthTokens,
    SyncStatus,
    SyncTrigger,
)
from .provider_data import (
    ProviderData,
    dump_provider_data,
    parse_provider_data,
    public_provider_data,
)

logger = structlog.get_logger(__name__)


class ConnectionStore:
    """Persistence for connections with decrypted tokens and typed provider data."""

    def __init__(self, postgres: PostgresClient, vault: TokenVault) -> None:
        self._postgres = postgres
        self._vault = vault

    async def _from_row(self, row: dict[str, Any]) -> Connection:
        provider = IntegrationProvider(row["provider"])
        return Connection(
            id=row["id"],
            tenant_id=row["tenant_id"],
            provider=provider,
            status=ConnectionStatus(row["status"]),
            access_token=await self._vault.decrypt(row["access_token"]),
            refresh_token=await self._vault.decrypt_optional(row.get("refresh_token")),
            token_expires_at=row.get("token_expires_at"),
            scopes=list(row.get("scopes") or []),
            external_account_id=row.get("external_account_id"),
            external_account_name=row.get("external_account_name"),
            provider_data=parse_provider_data(row["provider_data"], provider),
            sync_enabled=row.get("sync_enabled", True),
            last_synced_at=row.get("last_synced_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    async def create(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
        tokens: OAuthTokens,
        account: AccountInfo,
        provider_data: ProviderData,
    ) -> Connection:
        """Create (or replace) the tenant's connection for ``provider``."""
        # Re-validate so a connector bug cannot persist malformed state
        validated = parse_provider_data(dump_provider_data(provider_data), provider)
        row = await self._postgres.replace_connection(
            tenant_id=tenant_id,
            provider=provider.value,
            access_token=await self._vault.encrypt(tokens.access_token),
            refresh_token=await self._vault.encrypt_optional(tokens.refresh_token),
            token_expires_at=tokens.expires_at,
            scopes=list(tokens.scopes),
            external_account_id=account.id,
            external_account_name=account.name,
            provider_data=dump_provider_data(validated),
        )
        return await self._from_row(row)

    async def get(self, connection_id: UUID) -> Optional[Connection]:
        row = await self._postgres.get_connection_by_id(connection_id)
        return await self._from_row(row) if row else None

    async def get_for_tenant(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
    ) -> Optional[Connection]:
        row = await self._postgres.get_connection(tenant_id, provider.value)
        return await self._from_row(row) if row else None

    async def get_summary(
        self,
        tenant_id: UUID,
        provider: IntegrationProvider,
    ) -> Optional[dict[str, Any]]:
        """Connection metadata without tokens; nothing is decrypted."""
        row = await self._postgres.get_connection(tenant_id, provider.value)
        return self._summary(row) if row else None

    async def list_summaries(self, tenant_id: UUID) -> list[dict[str, Any]]:
        return [self._summary(row) for row in await self._postgres.list_connections(tenant_id)]

    @staticmethod
    def _summary(row: dict[str, Any]) -> dict[str, Any]:
        provider = IntegrationProvider(row["provider"])
        try:
            provider_data = public_provider_data(parse_provider_data(row["provider_data"], provider))
        except ProviderDataError:
            logger.warning("provider_data_invalid", connection_id=str(row["id"]))
            provider_data = None
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "provider": provider.value,
            "status": row["status"],
            "external_account_id": row.get("external_account_id"),
            "external_account_name": row.get("external_account_name"),
            "scopes": list(row.get("scopes") or []),
            "sync_enabled": row.get("sync_enabled", True),
            "last_synced_at": row.get("last_synced_at"),
            "provider_data": provider_data,
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }

    async def list_active_refs(self, provider: IntegrationProvider) -> list[ConnectionRef]:
        """
        Routing views of every ACTIVE connection for a provider.

        Rows with invalid provider data are skipped rather than failing the
        whole webhook.
        """
        refs = []
        for row in await self._postgres.list_active_connections(provider.value):
            try:
                data = parse_provider_data(row["provider_data"], provider)
            except ProviderDataError as e:
                logger.warning(
                    "provider_data_invalid",
                    connection_id=str(row["id"]),
                    error=e.message,
                )
                continue
            refs.append(ConnectionRef(id=row["id"], tenant_id=row["tenant_id"], provider_data=data))
        return refs

    async def list_schedulable(self) -> list[tuple[UUID, IntegrationProvider]]:
        """ACTIVE, sync-enabled connections as ``(id, provider)`` pairs."""
        pairs = []
        for row in await self._postgres.list_active_connections():
            provider = IntegrationProvider.parse(row["provider"])
            if provider is not None and row.get("sync_enabled", True):
                pairs.append((row["id"], provider))
        return pairs

    async def save_tokens(self, connection_id: UUID, tokens: OAuthTokens) -> None:
        """Persist refreshed tokens. Keeps the stored refresh token if none was returned."""
        fields: dict[str, Any] = {
            "access_token": await self._vault.encrypt(tokens.access_token),
            "token_expires_at": tokens.expires_at,
        }
        if tokens.refresh_token is not None:
            fields["refresh_token"] = await self._vault.encrypt(tokens.refresh_token)
        if tokens.scopes:
            fields["scopes"] = list(tokens.scopes)
        await self._postgres.update_connection(connection_id, **fields)

    async def save_provider_data(
        self,
        connection_id: UUID,
        provider: IntegrationProvider,
        provider_data: ProviderData,
    ) -> None:
        validated = parse_provider_data(dump_provider_data(provider_data), provider)
        await self._postgres.update_connection(
            connection_id, provider_data=dump_provider_data(validated)
        )

    async def mark_synced(self, connection_id: UUID, at: Optional[datetime] = None) -> None:
        await self._postgres.update_connection(
            connection_id, last_synced_at=at or datetime.now(timezone.utc)
        )

    async def set_status(
        self,
        connection_id: UUID,
        status: ConnectionStatus,
        sync_enabled: Optional[bool] = None,
    ) -> bool:
        fields: dict[str, Any] = {"status": status.value}
        if sync_enabled is not None:
            fields["sync_enabled"] = sync_enabled
        updated = await self._postgres.update_connection(connection_id, **fields)
        if updated:
            logger.info(
                "connection_status_changed",
                connection_id=str(connection_id),
                status=status.value,
            )
        return updated

    async def delete(self, connection_id: UUID) -> bool:
        return await self._postgres.delete_connection(connection_id)

    # ---- Sync logs -----------------------------------------------------------

    async def create_sync_log(self, connection_id: UUID, trigger: SyncTrigger) -> UUID:
        return await self._postgres.create_sync_log(connection_id, trigger.value)

    async def update_sync_log(
        self,
        log_id: UUID,
        status: Optional[SyncStatus] = None,
        **fields: Any,
    ) -> bool:
        return await self._postgres.update_sync_log(
            log_id, status=status.value if status else None, **fields
        )

    async def list_sync_logs(self, connection_id: UUID, limit: int = 20) -> list[dict[str, Any]]:
        return await self._postgres.list_sync_logs(connection_id, limit=limit)
