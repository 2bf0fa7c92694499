"""Materializer: turns synced items into stored documents.

Documents are keyed by ``(connection_id, external_id)``. After each write
an event is published to the ``documents.ingest`` stream for the downstream
chunking and embedding pipeline.
"""

from typing import Any, Protocol
from uuid import UUID

import structlog

from ..db.postgres import PostgresClient
from ..db.redis import DOCUMENTS_INGEST_STREAM, RedisClient
from .models import SyncedItem

logger = structlog.get_logger(__name__)


class ConnectionLike(Protocol):
    id: UUID
    tenant_id: UUID


def item_fragments(item: SyncedItem) -> list[dict[str, Any]]:
    """One fragment per message, or a single fragment holding the whole content."""
    if item.messages:
        return [
            {
                "key": message.key,
                "content": message.content,
                "source_url": message.source_url,
                "metadata": message.metadata,
            }
            for message in item.messages
        ]
    return [
        {
            "key": "content",
            "content": item.content,
            "source_url": item.source_url,
            "metadata": item.metadata,
        }
    ]


class Materializer:
    """Upserts and deletes normalized documents derived from provider items."""

    def __init__(self, postgres: PostgresClient, redis_client: RedisClient) -> None:
        self._postgres = postgres
        self._redis = redis_client

    async def upsert_document(self, connection: ConnectionLike, item: SyncedItem) -> UUID:
        """
        Store an item, replacing the fragments derived from its previous version.

        Append-only items keep their stored fragments and upsert the new ones
        by key.

        Returns:
            UUID of the stored document
        """
        document_id = await self._postgres.upsert_document(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            external_id=item.external_id,
            title=item.title,
            content=item.content,
            source_url=item.source_url,
            metadata=item.metadata,
            fragments=item_fragments(item),
            replace_fragments=not item.append_only,
        )
        await self._publish(
            connection.tenant_id, connection.id, item.external_id, document_id, "upsert"
        )
        return document_id

    async def delete_document(self, connection: ConnectionLike, external_id: str) -> bool:
        """Delete the document for ``external_id``. Returns False if none existed."""
        document_id = await self._postgres.delete_document(connection.id, external_id)
        if document_id is None:
            return False
        await self._publish(connection.tenant_id, connection.id, external_id, document_id, "delete")
        logger.info(
            "document_deleted",
            connection_id=str(connection.id),
            external_id=external_id,
        )
        return True

    async def purge_connection(self, connection_id: UUID, tenant_id: UUID) -> int:
        """
        Delete every document of a connection and announce each deletion.

        Call before the connection row itself is deleted; the cascade does
        not publish anything.

        Returns:
            Number of documents deleted
        """
        removed = await self._postgres.delete_connection_documents(connection_id)
        for row in removed:
            await self._publish(tenant_id, connection_id, row["external_id"], row["id"], "delete")
        logger.info(
            "connection_documents_purged",
            connection_id=str(connection_id),
            documents=len(removed),
        )
        return len(removed)

    async def _publish(
        self,
        tenant_id: UUID,
        connection_id: UUID,
        external_id: str,
        document_id: UUID,
        action: str,
    ) -> None:
        await self._redis.publish_job(
            DOCUMENTS_INGEST_STREAM,
            {
                "document_id": document_id,
                "tenant_id": tenant_id,
                "connection_id": connection_id,
                "external_id": external_id,
                "action": action,
            },
        )
