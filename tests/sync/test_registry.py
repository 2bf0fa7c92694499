"""Tests for the connector registry."""

import dataclasses

import httpx
import pytest

from integration_sync_backend.core.errors import ConfigurationError, ConnectorNotRegisteredError
from integration_sync_backend.sync.linear_connector import LinearConnector
from integration_sync_backend.sync.models import IntegrationProvider
from integration_sync_backend.sync.registry import ConnectorRegistry, build_connector_registry
from integration_sync_backend.sync.slack_connector import SlackConnector


def test_builds_enabled_providers_only(settings):
    enabled = dataclasses.replace(settings, integration_providers=("SLACK", "LINEAR"))

    registry = build_connector_registry(enabled, http_client=httpx.AsyncClient())

    assert registry.providers == [IntegrationProvider.SLACK, IntegrationProvider.LINEAR]
    assert isinstance(registry.get_connector(IntegrationProvider.SLACK), SlackConnector)
    assert isinstance(registry.get_connector(IntegrationProvider.LINEAR), LinearConnector)
    assert not registry.has_connector(IntegrationProvider.GITHUB)


def test_unknown_provider_lookup(settings):
    registry = build_connector_registry(dataclasses.replace(settings, integration_providers=()))

    with pytest.raises(ConnectorNotRegisteredError):
        registry.get_connector(IntegrationProvider.NOTION)
    assert len(registry) == 0


def test_missing_secret_fails_at_startup(settings):
    broken = dataclasses.replace(
        settings, integration_providers=("SLACK",), slack_signing_secret=None
    )

    with pytest.raises(ConfigurationError) as exc_info:
        build_connector_registry(broken)
    assert exc_info.value.details == {"setting": "SLACK_SIGNING_SECRET"}


def test_registry_is_read_only():
    registry = ConnectorRegistry({})
    with pytest.raises(TypeError):
        registry._connectors[IntegrationProvider.SLACK] = object()


@pytest.mark.asyncio
async def test_close_only_closes_owned_clients(settings):
    shared = httpx.AsyncClient()
    registry = build_connector_registry(
        dataclasses.replace(settings, integration_providers=("LINEAR",)), http_client=shared
    )

    await registry.close()

    assert not shared.is_closed
    await shared.aclose()
