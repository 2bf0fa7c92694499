"""Connector registry.

Built once at startup from the enabled providers and shared by reference
between the API and the workers.
"""

from types import MappingProxyType
from typing import Iterator, Mapping, Optional

import httpx
import structlog

from ..config import Settings
from ..core.errors import ConnectorNotRegisteredError
from .base import BaseConnector
from .github_connector import GitHubConnector
from .linear_connector import LinearConnector
from .models import IntegrationProvider
from .notion_connector import NotionConnector
from .slack_connector import SlackConnector

logger = structlog.get_logger(__name__)


class ConnectorRegistry:
    """Immutable provider → connector mapping."""

    def __init__(self, connectors: Mapping[IntegrationProvider, BaseConnector]) -> None:
        self._connectors = MappingProxyType(dict(connectors))

    def get_connector(self, provider: IntegrationProvider) -> BaseConnector:
        """
        Look up the connector for a provider.

        Raises:
            ConnectorNotRegisteredError: If the provider is not enabled
        """
        connector = self._connectors.get(provider)
        if connector is None:
            raise ConnectorNotRegisteredError(getattr(provider, "value", str(provider)))
        return connector

    def has_connector(self, provider: IntegrationProvider) -> bool:
        return provider in self._connectors

    @property
    def providers(self) -> list[IntegrationProvider]:
        return list(self._connectors)

    def __iter__(self) -> Iterator[BaseConnector]:
        return iter(self._connectors.values())

    def __len__(self) -> int:
        return len(self._connectors)

    async def close(self) -> None:
        """Close every connector's HTTP client."""
        for connector in self._connectors.values():
            await connector.close()


def build_connector_registry(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ConnectorRegistry:
    """
    Create connectors for every provider enabled in ``INTEGRATION_PROVIDERS``.

    Raises:
        ConfigurationError: If an enabled provider is missing a required secret
    """
    connectors: dict[IntegrationProvider, BaseConnector] = {}
    for name in settings.integration_providers:
        provider = IntegrationProvider(name)
        if provider == IntegrationProvider.SLACK:
            connectors[provider] = SlackConnector(
                settings.slack_client_id,
                settings.slack_client_secret,
                settings.slack_signing_secret,
                http_client=http_client,
            )
        elif provider == IntegrationProvider.GITHUB:
            connectors[provider] = GitHubConnector(
                settings.github_app_id,
                settings.github_app_slug,
                settings.github_private_key,
                settings.github_webhook_secret,
                http_client=http_client,
            )
        elif provider == IntegrationProvider.LINEAR:
            connectors[provider] = LinearConnector(
                settings.linear_client_id,
                settings.linear_client_secret,
                settings.linear_webhook_secret,
                http_client=http_client,
            )
        elif provider == IntegrationProvider.NOTION:
            connectors[provider] = NotionConnector(
                settings.notion_client_id,
                settings.notion_client_secret,
                settings.notion_webhook_secret,
                http_client=http_client,
            )
    logger.info("connector_registry_built", providers=[p.value for p in connectors])
    return ConnectorRegistry(connectors)
