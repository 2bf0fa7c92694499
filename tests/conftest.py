"""pytest fixtures for Integration Sync Backend tests."""

import os

# Set environment variables BEFORE any imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("INTEGRATION_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("API_URL", "http://api.test")

import dataclasses
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from integration_sync_backend.config import Settings, load_settings
from integration_sync_backend.sync.models import (
    Connection,
    ConnectionStatus,
    IntegrationProvider,
)
from integration_sync_backend.sync.provider_data import (
    GitHubProviderData,
    LinearProviderData,
    NotionProviderData,
    SlackProviderData,
)


@pytest.fixture
def settings() -> Settings:
    """Settings with small limits suitable for tests."""
    return dataclasses.replace(
        load_settings(),
        sync_max_attempts=3,
        sync_max_pages_per_job=5,
        sync_job_timeout_seconds=30,
        slack_client_id="slack-client",
        slack_client_secret="slack-secret",
        slack_signing_secret="slack-signing",
        linear_client_id="linear-client",
        linear_client_secret="linear-secret",
        linear_webhook_secret="linear-webhook",
        notion_client_id="notion-client",
        notion_client_secret="notion-secret",
        notion_webhook_secret="notion-webhook",
    )


@pytest.fixture
def sample_tenant_id():
    """Provide a sample tenant ID."""
    return uuid4()


@pytest.fixture
def sample_connection_id():
    """Provide a sample connection ID."""
    return uuid4()


def make_connection(
    provider: IntegrationProvider = IntegrationProvider.SLACK,
    provider_data=None,
    **overrides,
) -> Connection:
    """Build a Connection with sensible defaults for the provider."""
    defaults = {
        IntegrationProvider.SLACK: SlackProviderData(slack_team_id="T1"),
        IntegrationProvider.GITHUB: GitHubProviderData(github_installation_id=42),
        IntegrationProvider.LINEAR: LinearProviderData(linear_organization_id="org-1"),
        IntegrationProvider.NOTION: NotionProviderData(notion_workspace_id="ws-1"),
    }
    fields = {
        "id": uuid4(),
        "tenant_id": uuid4(),
        "provider": provider,
        "status": ConnectionStatus.ACTIVE,
        "access_token": "access-token",
        "refresh_token": None,
        "token_expires_at": None,
        "scopes": [],
        "external_account_id": "acct-1",
        "external_account_name": "Acme",
        "provider_data": provider_data or defaults[provider],
        "sync_enabled": True,
    }
    fields.update(overrides)
    return Connection(**fields)


@pytest.fixture
def connection_factory():
    """Factory for Connection objects."""
    return make_connection


@pytest.fixture
def expiring_connection():
    """Connection whose token expires within the refresh buffer."""
    return make_connection(
        IntegrationProvider.LINEAR,
        refresh_token="refresh-token",
        token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    )


@pytest.fixture
def mock_redis_client():
    """Mock RedisClient wrapper."""
    from integration_sync_backend.db.redis import RedisClient

    client = MagicMock(spec=RedisClient)
    client.publish_job = AsyncMock(return_value="1234567890-0")
    client.ensure_consumer_group = AsyncMock()
    client.read_jobs = AsyncMock(return_value=[])
    client.ack_job = AsyncMock()
    client.claim_stale_jobs = AsyncMock(return_value=[])
    client.schedule_delayed_job = AsyncMock()
    client.promote_due_jobs = AsyncMock(return_value=0)
    client.acquire_lock = AsyncMock(return_value="lock-token")
    client.release_lock = AsyncMock(return_value=True)
    client.mark_once = AsyncMock(return_value=True)
    client.unmark = AsyncMock()
    client.set_oauth_state = AsyncMock()
    client.pop_oauth_state = AsyncMock(return_value=None)
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    return client


@pytest.fixture
def mock_postgres_client():
    """Mock PostgresClient wrapper."""
    from integration_sync_backend.db.postgres import PostgresClient

    client = MagicMock(spec=PostgresClient)
    client.get_connection_by_id = AsyncMock(return_value=None)
    client.upsert_document = AsyncMock(return_value=uuid4())
    client.delete_document = AsyncMock(return_value=None)
    client.delete_connection_documents = AsyncMock(return_value=[])
    client.create_sync_log = AsyncMock(return_value=uuid4())
    client.update_sync_log = AsyncMock(return_value=True)
    client.list_sync_logs = AsyncMock(return_value=[])
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.create_tables = AsyncMock()
    return client


@pytest.fixture
def mock_store():
    """Mock ConnectionStore."""
    from integration_sync_backend.sync.store import ConnectionStore

    store = MagicMock(spec=ConnectionStore)
    store.get = AsyncMock(return_value=None)
    store.get_for_tenant = AsyncMock(return_value=None)
    store.get_summary = AsyncMock(return_value=None)
    store.list_summaries = AsyncMock(return_value=[])
    store.list_active_refs = AsyncMock(return_value=[])
    store.list_schedulable = AsyncMock(return_value=[])
    store.create = AsyncMock()
    store.save_tokens = AsyncMock()
    store.save_provider_data = AsyncMock()
    store.mark_synced = AsyncMock()
    store.set_status = AsyncMock(return_value=True)
    store.delete = AsyncMock(return_value=True)
    store.create_sync_log = AsyncMock(return_value=uuid4())
    store.update_sync_log = AsyncMock(return_value=True)
    store.list_sync_logs = AsyncMock(return_value=[])
    return store


@pytest.fixture
def mock_queue():
    """Mock SyncJobQueue."""
    from integration_sync_backend.sync.jobs import SyncJobQueue

    queue = MagicMock(spec=SyncJobQueue)
    queue.enqueue = AsyncMock(return_value="1-0")
    queue.enqueue_delayed = AsyncMock()
    return queue


@pytest.fixture
def mock_scheduler():
    """Mock SyncScheduler."""
    from integration_sync_backend.sync.scheduler import SyncScheduler

    scheduler = MagicMock(spec=SyncScheduler)
    scheduler.remove = MagicMock(return_value=True)
    scheduler.register = MagicMock()
    return scheduler


@pytest.fixture
def mock_service():
    """Mock IntegrationsService for route tests."""
    from integration_sync_backend.sync.service import IntegrationsService

    service = MagicMock(spec=IntegrationsService)
    service.list_connections = AsyncMock(return_value=[])
    service.start_connect = AsyncMock()
    service.complete_oauth = AsyncMock()
    service.disconnect = AsyncMock(return_value={})
    service.delete = AsyncMock()
    service.update_config = AsyncMock(return_value={})
    service.trigger_sync = AsyncMock()
    service.list_sync_logs = AsyncMock(return_value=[])
    return service


@pytest.fixture
def mock_ingress():
    """Mock WebhookIngress for route tests."""
    from integration_sync_backend.sync.webhook_ingress import WebhookIngress

    ingress = MagicMock(spec=WebhookIngress)
    ingress.handle = AsyncMock(return_value={"ok": True})
    return ingress


@pytest.fixture
def client(mock_service, mock_ingress, settings):
    """Create FastAPI test client with mocked dependencies."""
    from integration_sync_backend.main import app
    from integration_sync_backend.api.routes.integrations import (
        get_app_settings,
        get_integrations_service,
        limiter,
    )
    from integration_sync_backend.api.routes.webhooks import get_webhook_ingress

    # Disable rate limiting for tests
    limiter.enabled = False

    app.dependency_overrides[get_integrations_service] = lambda: mock_service
    app.dependency_overrides[get_webhook_ingress] = lambda: mock_ingress
    app.dependency_overrides[get_app_settings] = lambda: settings

    # Lifespan is not entered, so no real connections are made
    test_client = TestClient(app)
    yield test_client

    # Re-enable rate limiting after tests
    limiter.enabled = True
    app.dependency_overrides.clear()
