"""Tests for the connection store."""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from integration_sync_backend.sync.models import (
    AccountInfo,
    ConnectionStatus,
    IntegrationProvider,
    OAuthTokens,
    SyncStatus,
)
from integration_sync_backend.sync.provider_data import GitHubProviderData, SlackProviderData
from integration_sync_backend.sync.store import ConnectionStore
from integration_sync_backend.token_vault import LocalTokenVault


@pytest.fixture
def vault():
    return LocalTokenVault("store-test-key")


@pytest.fixture
def store(mock_postgres_client, vault):
    mock_postgres_client.replace_connection = AsyncMock()
    mock_postgres_client.get_connection = AsyncMock(return_value=None)
    mock_postgres_client.list_connections = AsyncMock(return_value=[])
    mock_postgres_client.list_active_connections = AsyncMock(return_value=[])
    mock_postgres_client.update_connection = AsyncMock(return_value=True)
    mock_postgres_client.delete_connection = AsyncMock(return_value=True)
    return ConnectionStore(mock_postgres_client, vault)


async def _row(vault, provider="SLACK", provider_data=None, **overrides):
    row = {
        "id": uuid4(),
        "tenant_id": uuid4(),
        "provider": provider,
        "status": "ACTIVE",
        "access_token": await vault.encrypt("xoxb-secret"),
        "refresh_token": None,
        "token_expires_at": None,
        "scopes": ["channels:read"],
        "external_account_id": "T1",
        "external_account_name": "Acme",
        "provider_data": provider_data or {"provider": "SLACK", "slack_team_id": "T1"},
        "sync_enabled": True,
        "last_synced_at": None,
        "created_at": None,
        "updated_at": None,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_create_encrypts_tokens(store, mock_postgres_client, vault):
    mock_postgres_client.replace_connection.return_value = await _row(vault)

    connection = await store.create(
        uuid4(),
        IntegrationProvider.SLACK,
        OAuthTokens(access_token="xoxb-secret"),
        AccountInfo(id="T1", name="Acme"),
        SlackProviderData(slack_team_id="T1"),
    )

    kwargs = mock_postgres_client.replace_connection.await_args.kwargs
    assert kwargs["access_token"] != "xoxb-secret"
    assert await vault.decrypt(kwargs["access_token"]) == "xoxb-secret"
    assert kwargs["refresh_token"] is None
    assert kwargs["provider_data"]["slack_team_id"] == "T1"
    assert connection.access_token == "xoxb-secret"
    assert isinstance(connection.provider_data, SlackProviderData)


@pytest.mark.asyncio
async def test_summary_never_exposes_tokens(store, mock_postgres_client, vault):
    mock_postgres_client.get_connection.return_value = await _row(
        vault,
        provider="GITHUB",
        provider_data={"provider": "GITHUB", "github_installation_id": 42},
    )

    summary = await store.get_summary(uuid4(), IntegrationProvider.GITHUB)

    assert "access_token" not in summary
    assert "github_installation_id" not in summary["provider_data"]


@pytest.mark.asyncio
async def test_active_refs_skip_invalid_provider_data(store, mock_postgres_client, vault):
    good = await _row(vault)
    bad = await _row(vault, provider_data={"provider": "LINEAR"})
    mock_postgres_client.list_active_connections.return_value = [good, bad]

    refs = await store.list_active_refs(IntegrationProvider.SLACK)

    assert [ref.id for ref in refs] == [good["id"]]


@pytest.mark.asyncio
async def test_schedulable_excludes_sync_disabled(store, mock_postgres_client, vault):
    enabled = await _row(vault)
    disabled = await _row(vault, sync_enabled=False)
    mock_postgres_client.list_active_connections.return_value = [enabled, disabled]

    assert await store.list_schedulable() == [(enabled["id"], IntegrationProvider.SLACK)]


@pytest.mark.asyncio
async def test_save_tokens_keeps_refresh_token_when_absent(store, mock_postgres_client):
    connection_id = uuid4()

    await store.save_tokens(connection_id, OAuthTokens(access_token="new"))

    fields = mock_postgres_client.update_connection.await_args.kwargs
    assert "refresh_token" not in fields
    assert "scopes" not in fields


@pytest.mark.asyncio
async def test_save_provider_data_validates(store, mock_postgres_client):
    data = GitHubProviderData(github_installation_id=42, repo_cursors={"acme/api": "2024-01-01T00:00:00Z"})

    await store.save_provider_data(uuid4(), IntegrationProvider.GITHUB, data)

    saved = mock_postgres_client.update_connection.await_args.kwargs["provider_data"]
    assert saved["repo_cursors"] == {"acme/api": "2024-01-01T00:00:00Z"}


@pytest.mark.asyncio
async def test_set_status(store, mock_postgres_client):
    connection_id = uuid4()

    await store.set_status(connection_id, ConnectionStatus.DISCONNECTED, sync_enabled=False)

    mock_postgres_client.update_connection.assert_awaited_once_with(
        connection_id, status="DISCONNECTED", sync_enabled=False
    )


@pytest.mark.asyncio
async def test_update_sync_log_passes_status_value(store, mock_postgres_client):
    log_id = uuid4()

    await store.update_sync_log(log_id, SyncStatus.COMPLETED, items_synced=3)

    mock_postgres_client.update_sync_log.assert_awaited_once_with(
        log_id, status="COMPLETED", items_synced=3
    )
