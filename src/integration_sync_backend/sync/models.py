"""Data models for external provider sync.

This module defines the provider-neutral types exchanged between
connectors, the sync orchestrator and the materializer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

if TYPE_CHECKING:
    from .provider_data import ProviderData


class IntegrationProvider(str, Enum):
    """Supported external providers."""

    SLACK = "SLACK"
    GITHUB = "GITHUB"
    LINEAR = "LINEAR"
    NOTION = "NOTION"

    @classmethod
    def parse(cls, value: str) -> Optional["IntegrationProvider"]:
        """Resolve a provider from a path segment, case-insensitively."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class ConnectionStatus(str, Enum):
    """Lifecycle status of a connection."""

    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


class SyncTrigger(str, Enum):
    """What caused a sync run."""

    INITIAL = "INITIAL"
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    WEBHOOK = "WEBHOOK"


class SyncStatus(str, Enum):
    """Status of a sync run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WebhookAction(str, Enum):
    """Normalized change kind carried by a webhook event."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class WebhookEvent:
    """A normalized change notification for one external item."""

    action: WebhookAction
    external_id: str

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action.value, "external_id": self.external_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookEvent":
        return cls(action=WebhookAction(data["action"]), external_id=str(data["external_id"]))


@dataclass
class SyncedMessage:
    """One addressable piece of a synced item.

    Attributes:
        content: Text of the message
        key: Stable identifier within the item (comment id, message ts, ...)
        source_url: Deep link to the message, when the provider has one
        metadata: Provider-specific metadata
    """

    content: str
    key: str
    source_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncedItem:
    """A provider-neutral unit of content ready for materialization.

    Attributes:
        external_id: Stable identifier of the item within the provider
        title: Human-readable title
        content: Full text content
        messages: Ordered sub-messages, one fragment each
        source_url: Link to the item in the provider
        metadata: Provider-specific metadata
        append_only: When True, messages are added to the stored document
            instead of replacing its fragments
    """

    external_id: str
    title: str
    content: str
    messages: list[SyncedMessage] = field(default_factory=list)
    source_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    append_only: bool = False


@dataclass
class SyncResult:
    """Result of one discovery page.

    Bulk-discovery providers return ``webhook_events`` instead of
    fully-fetched ``items``; the orchestrator fans those out as item jobs.
    """

    items: list[SyncedItem]
    deleted_external_ids: list[str]
    updated_provider_data: "ProviderData"
    has_more: bool = False
    webhook_events: list[WebhookEvent] = field(default_factory=list)


@dataclass
class ItemResult:
    """Result of fetching a single item for a webhook event."""

    item: Optional[SyncedItem] = None
    deleted_external_id: Optional[str] = None


@dataclass
class OAuthTokens:
    """Credentials returned by a code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AccountInfo:
    """External account behind a connection."""

    id: str
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitConfig:
    """Documented provider request budget."""

    max_requests_per_minute: int
    max_requests_per_hour: int


@dataclass(frozen=True)
class ConnectionRef:
    """Minimal view of a connection used for webhook routing."""

    id: UUID
    tenant_id: UUID
    provider_data: "ProviderData"


@dataclass
class WebhookHandlerResult:
    """Outcome of handling one inbound webhook request."""

    response: dict[str, Any] = field(default_factory=lambda: {"ok": True})
    sync_connections: list[tuple[ConnectionRef, Optional[WebhookEvent]]] = field(
        default_factory=list
    )
    disconnect_connections: list[ConnectionRef] = field(default_factory=list)


@dataclass
class Connection:
    """A tenant's authorization for one provider, with decrypted tokens."""

    id: UUID
    tenant_id: UUID
    provider: IntegrationProvider
    status: ConnectionStatus
    access_token: str
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    scopes: list[str]
    external_account_id: Optional[str]
    external_account_name: Optional[str]
    provider_data: "ProviderData"
    sync_enabled: bool = True
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def needs_refresh(self, buffer: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the token expires within ``buffer`` and can be refreshed."""
        if self.token_expires_at is None or not self.refresh_token:
            return False
        now = now or datetime.now(timezone.utc)
        return self.token_expires_at - now < buffer

    def to_ref(self) -> ConnectionRef:
        return ConnectionRef(
            id=self.id,
            tenant_id=self.tenant_id,
            provider_data=self.provider_data,
        )


@dataclass
class SyncLog:
    """Persisted record of one sync run."""

    id: UUID
    connection_id: UUID
    trigger: SyncTrigger
    status: SyncStatus
    items_synced: int = 0
    items_failed: int = 0
    progress: float = 0.0
    details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
