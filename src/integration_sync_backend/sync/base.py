"""Base connector contract for external provider sync.

Every provider module subclasses ``BaseConnector`` and is registered in the
connector registry at startup. Connectors are stateless with respect to
tenants: credentials and provider data are passed in on every call.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar, Mapping, Optional, Sequence
from uuid import UUID

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..core.errors import (
    ConfigurationError,
    PayloadError,
    ProviderAuthError,
    ProviderRequestError,
    ProviderTransientError,
)
from .models import (
    AccountInfo,
    ConnectionRef,
    IntegrationProvider,
    ItemResult,
    OAuthTokens,
    RateLimitConfig,
    SyncResult,
    WebhookEvent,
    WebhookHandlerResult,
)
from .provider_data import ProviderData

logger = structlog.get_logger(__name__)

# How far back a connection with no cursor looks on its first sync
INITIAL_SYNC_LOOKBACK = timedelta(days=30)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


def initial_sync_since(now: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp ``INITIAL_SYNC_LOOKBACK`` before ``now``."""
    now = now or datetime.now(timezone.utc)
    return (now - INITIAL_SYNC_LOOKBACK).isoformat().replace("+00:00", "Z")


def initial_sync_slack_ts(now: Optional[datetime] = None) -> str:
    """Slack-style ``seconds.micros`` timestamp for the initial lookback."""
    now = now or datetime.now(timezone.utc)
    return f"{int((now - INITIAL_SYNC_LOOKBACK).timestamp())}.000000"


def format_utc(value: str) -> str:
    """Render an ISO timestamp as ``YYYY-MM-DD HH:MM:SS UTC``."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class BaseConnector(ABC):
    """Abstract base class for provider connectors.

    Subclasses declare ``provider``, ``rate_limits`` and optionally
    ``sync_schedule``, and implement the auth, webhook and sync operations.

    Example:
        class MyConnector(BaseConnector):
            provider = IntegrationProvider.SLACK
            rate_limits = RateLimitConfig(50, 3000)

            async def sync(self, access_token, provider_data) -> SyncResult:
                ...
    """

    provider: ClassVar[IntegrationProvider]
    rate_limits: ClassVar[RateLimitConfig]
    # Polling interval for scheduled discovery; None means webhook driven
    sync_schedule: ClassVar[Optional[timedelta]] = None
    # Whether discovery jobs take the per-connection lock
    lock_on_discovery: ClassVar[bool] = True
    api_base_url: ClassVar[str] = ""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize the connector.

        Args:
            http_client: Pre-built client, mainly for tests. When omitted a
                client is created lazily and owned by the connector.
        """
        self._client = http_client
        self._owns_client = http_client is None
        self._logger = logger.bind(provider=self.provider.value)

    @staticmethod
    def _require(value: Optional[str], setting: str) -> str:
        if not value:
            raise ConfigurationError(f"{setting} is required", setting=setting)
        return value

    @property
    def webhook_secret(self) -> Optional[str]:
        """App-level secret used to verify inbound webhooks."""
        return None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base_url,
                timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this connector created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        access_token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Issue a provider request and map failures to the error taxonomy.

        Raises:
            ProviderAuthError: 401/403 responses
            ProviderTransientError: 429, 5xx and network failures
            ProviderRequestError: Any other non-success response
        """
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = await self._send(method, url, headers=request_headers, **kwargs)
        except httpx.TransportError as e:
            self._logger.warning(
                "provider_request_network_error",
                operation=operation,
                error_type=e.__class__.__name__,
            )
            raise ProviderTransientError(
                self.provider.value, operation, f"network error: {e.__class__.__name__}"
            ) from e
        self._raise_for_status(response, operation)
        return response

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        self._logger.warning(
            "provider_request_failed",
            operation=operation,
            status_code=status,
        )
        reason = f"HTTP {status}"
        if status in (401, 403):
            raise ProviderAuthError(self.provider.value, operation, reason, status_code=status)
        if status == 429 or status >= 500:
            raise ProviderTransientError(
                self.provider.value,
                operation,
                reason,
                status_code=status,
                retry_after=_retry_after_seconds(response),
            )
        raise ProviderRequestError(self.provider.value, operation, reason, status_code=status)

    async def _request_json(
        self,
        method: str,
        url: str,
        operation: str,
        access_token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        response = await self._request(
            method, url, operation, access_token=access_token, headers=headers, **kwargs
        )
        try:
            return response.json()
        except ValueError as e:
            raise PayloadError(f"{self.provider.value} {operation}", "response is not JSON") from e

    # ---- Auth ----------------------------------------------------------------

    @abstractmethod
    def get_auth_url(self, tenant_id: UUID, state: str, redirect_uri: str) -> str:
        """Return the provider URL the user is sent to for authorization."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code (or equivalent) for tokens."""
        ...

    @abstractmethod
    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        """Obtain fresh tokens; raises ProviderAuthError if unsupported."""
        ...

    @abstractmethod
    async def get_account_info(self, access_token: str) -> AccountInfo:
        """Fetch the connected account's identifier and display name."""
        ...

    # ---- Webhooks ------------------------------------------------------------

    @abstractmethod
    def parse_webhook(
        self,
        headers: Mapping[str, str],
        body: Any,
        secret: Optional[str],
        raw_body: Optional[bytes] = None,
    ) -> Optional[WebhookEvent]:
        """Verify and classify a payload. Returns None instead of raising."""
        ...

    def delivery_id(self, headers: Mapping[str, str], body: Any) -> Optional[str]:
        """Provider-assigned id of this delivery, used to drop redeliveries."""
        return None

    def route_webhook(
        self,
        body: Any,
        connections: Sequence[ConnectionRef],
    ) -> list[ConnectionRef]:
        """Connections an app-scoped event belongs to. Defaults to all."""
        return list(connections)

    def handle_webhook_request(
        self,
        headers: Mapping[str, str],
        body: Any,
        connections: Sequence[ConnectionRef],
        raw_body: Optional[bytes] = None,
    ) -> WebhookHandlerResult:
        """Verify once with the app-level secret, then dispatch to routed connections."""
        event = self.parse_webhook(headers, body, self.webhook_secret, raw_body)
        if event is None:
            return WebhookHandlerResult()
        return WebhookHandlerResult(
            sync_connections=[(conn, event) for conn in self.route_webhook(body, connections)]
        )

    # ---- Sync ----------------------------------------------------------------

    @abstractmethod
    async def sync(self, access_token: str, provider_data: ProviderData) -> SyncResult:
        """Fetch one page of changes since the cursor held in ``provider_data``."""
        ...

    @abstractmethod
    async def process_webhook_item(
        self,
        access_token: str,
        provider_data: ProviderData,
        event: WebhookEvent,
    ) -> ItemResult:
        """Fetch the single item an event refers to, or report its deletion."""
        ...

    @abstractmethod
    def build_initial_provider_data(
        self,
        token_metadata: Optional[dict[str, Any]] = None,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderData:
        """Provider data for a brand-new connection."""
        ...
