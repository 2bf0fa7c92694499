"""Connector and sync orchestration module.

This module mirrors content from third-party workspaces into the document
store:
- Connectors: Slack, GitHub, Linear and Notion
- ConnectionStore: encrypted credentials and typed provider data
- SyncOrchestrator: discover and item jobs with checkpoints and retries
- WebhookIngress: verified provider events turned into jobs
- SyncScheduler: periodic discovery for polling providers

Example:
    from integration_sync_backend.sync import (
        IntegrationProvider,
        build_connector_registry,
    )

    registry = build_connector_registry(settings)
    connector = registry.get_connector(IntegrationProvider.SLACK)
    result = await connector.sync(access_token, provider_data)
"""

from .base import BaseConnector
from .github_connector import GitHubConnector
from .jobs import JobKind, SyncJob, SyncJobQueue
from .linear_connector import LinearConnector
from .materializer import Materializer
from .models import (
    AccountInfo,
    Connection,
    ConnectionRef,
    ConnectionStatus,
    IntegrationProvider,
    ItemResult,
    OAuthTokens,
    SyncedItem,
    SyncedMessage,
    SyncResult,
    SyncStatus,
    SyncTrigger,
    WebhookAction,
    WebhookEvent,
    WebhookHandlerResult,
)
from .notion_connector import NotionConnector
from .orchestrator import SyncOrchestrator
from .registry import ConnectorRegistry, build_connector_registry
from .scheduler import SyncScheduler
from .service import IntegrationsService
from .slack_connector import SlackConnector
from .store import ConnectionStore
from .webhook_ingress import WebhookIngress

__all__ = [
    # Models
    "AccountInfo",
    "Connection",
    "ConnectionRef",
    "ConnectionStatus",
    "IntegrationProvider",
    "ItemResult",
    "OAuthTokens",
    "SyncedItem",
    "SyncedMessage",
    "SyncResult",
    "SyncStatus",
    "SyncTrigger",
    "WebhookAction",
    "WebhookEvent",
    "WebhookHandlerResult",
    # Connectors
    "BaseConnector",
    "GitHubConnector",
    "LinearConnector",
    "NotionConnector",
    "SlackConnector",
    "ConnectorRegistry",
    "build_connector_registry",
    # Orchestration
    "ConnectionStore",
    "IntegrationsService",
    "JobKind",
    "Materializer",
    "SyncJob",
    "SyncJobQueue",
    "SyncOrchestrator",
    "SyncScheduler",
    "WebhookIngress",
]
