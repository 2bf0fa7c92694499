"""Notion sync connector.

Notion has no incremental change feed, so discovery walks the search API
newest-first and returns one ``updated`` event per changed page. Page
content is fetched later, one item job per page.
"""

import asyncio
import base64
import time
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Mapping, Optional, Sequence
from urllib.parse import urlencode
from uuid import UUID

import httpx
import structlog

from ..core.errors import ProviderAuthError, ProviderRequestError
from .base import BaseConnector, initial_sync_since
from .models import (
    AccountInfo,
    ConnectionRef,
    IntegrationProvider,
    ItemResult,
    OAuthTokens,
    RateLimitConfig,
    SyncedItem,
    SyncedMessage,
    SyncResult,
    WebhookAction,
    WebhookEvent,
    WebhookHandlerResult,
)
from .provider_data import NotionProviderData, ProviderData, expect_provider_data
from .signatures import normalize_headers, verify_hmac_signature

logger = structlog.get_logger(__name__)

NOTION_API_VERSION = "2022-06-28"
NOTION_API_BASE = "https://api.notion.com/v1/"
NOTION_AUTH_URL = "https://api.notion.com/v1/oauth/authorize"

# Notion allows an average of three requests per second
THROTTLE_SECONDS = 0.35
SEARCH_PAGE_SIZE = 100
MAX_BLOCK_DEPTH = 3
# Maximum pagination iterations per block list
MAX_PAGINATION_PAGES = 100

UPDATED_EVENT_TYPES = {
    "page.content_updated",
    "page.properties_updated",
    "page.moved",
    "page.undeleted",
    "page.locked",
    "page.unlocked",
}
COMMENT_EVENT_TYPES = {"comment.created", "comment.updated"}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def page_url(page_id: str) -> str:
    return f"https://www.notion.so/{page_id.replace('-', '')}"


def _plain_text(rich_text: list[dict[str, Any]]) -> str:
    return "".join(t.get("plain_text", "") for t in rich_text or [])


def extract_title(page: dict[str, Any]) -> str:
    """Extract the title from a Notion page or database object."""
    if page.get("object") == "database":
        return _plain_text(page.get("title")) or "Untitled"
    for prop in (page.get("properties") or {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            title = _plain_text(prop.get("title"))
            if title:
                return title
    return "Untitled"


def block_to_text(block: dict[str, Any], depth: int = 0) -> Optional[str]:
    """Convert one Notion block to a line of text.

    Args:
        block: Notion block object
        depth: Nesting level, used for indentation

    Returns:
        Rendered text, or None for blocks with no text representation
    """
    block_type = block.get("type", "")
    block_data = block.get(block_type) or {}
    indent = "  " * depth
    text = _plain_text(block_data.get("rich_text"))

    if block_type in ("paragraph", "toggle"):
        return f"{indent}{text}" if text else None
    if block_type in ("heading_1", "heading_2", "heading_3"):
        return f"{indent}{'#' * int(block_type[-1])} {text}"
    if block_type == "bulleted_list_item":
        return f"{indent}- {text}"
    if block_type == "numbered_list_item":
        return f"{indent}1. {text}"
    if block_type == "to_do":
        checkbox = "[x]" if block_data.get("checked") else "[ ]"
        return f"{indent}{checkbox} {text}"
    if block_type == "code":
        language = block_data.get("language", "")
        return f"{indent}```{language}\n{text}\n{indent}```"
    if block_type == "quote":
        return f"{indent}> {text}"
    if block_type == "callout":
        emoji = (block_data.get("icon") or {}).get("emoji", "")
        return f"{indent}{emoji} {text}".rstrip() if emoji else f"{indent}{text}"
    if block_type == "divider":
        return f"{indent}---"
    if block_type == "table_row":
        cells = block_data.get("cells") or []
        return indent + " | ".join(_plain_text(cell) for cell in cells)
    if block_type == "child_page":
        return f"{indent}[Child Page: {block_data.get('title', '')}]"
    if block_type == "child_database":
        return f"{indent}[Database: {block_data.get('title', '')}]"
    if block_type in ("image", "video", "file", "pdf", "bookmark", "embed"):
        caption = _plain_text(block_data.get("caption"))
        return f"{indent}[{block_type}]" + (f" {caption}" if caption else "")
    if text:
        return f"{indent}{text}"
    return None


class NotionConnector(BaseConnector):
    """Sync connector for Notion workspaces (public integration OAuth)."""

    provider: ClassVar[IntegrationProvider] = IntegrationProvider.NOTION
    rate_limits: ClassVar[RateLimitConfig] = RateLimitConfig(180, 10800)
    sync_schedule: ClassVar[Optional[timedelta]] = timedelta(minutes=15)
    api_base_url: ClassVar[str] = NOTION_API_BASE

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        throttle_seconds: float = THROTTLE_SECONDS,
    ) -> None:
        super().__init__(http_client)
        self._client_id = self._require(client_id, "NOTION_CLIENT_ID")
        self._client_secret = self._require(client_secret, "NOTION_CLIENT_SECRET")
        # Optional: without it, the scheduled search pass keeps pages fresh
        self._webhook_secret = webhook_secret
        self._throttle_seconds = throttle_seconds
        self._throttle_lock = asyncio.Lock()
        self._last_request_at = 0.0

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._webhook_secret

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self._last_request_at + self._throttle_seconds - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        access_token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        await self._throttle()
        request_headers = {"Notion-Version": NOTION_API_VERSION, **(headers or {})}
        return await super()._request(
            method, url, operation, access_token=access_token, headers=request_headers, **kwargs
        )

    # ---- Auth ----------------------------------------------------------------

    def get_auth_url(self, tenant_id: UUID, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "owner": "user",
                "state": state,
            }
        )
        return f"{NOTION_AUTH_URL}?{query}"

    async def _token_request(self, payload: dict[str, str], operation: str) -> OAuthTokens:
        credentials = base64.b64encode(
            f"{self._client_id}:{self._client_secret}".encode("utf-8")
        ).decode("ascii")
        body = await self._request_json(
            "POST",
            "oauth/token",
            operation,
            headers={"Authorization": f"Basic {credentials}"},
            json=payload,
        )
        if not body.get("access_token"):
            raise ProviderAuthError(
                self.provider.value, operation, body.get("error") or "missing access token"
            )
        expires_at = None
        if body.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(body["expires_in"]))
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
            metadata={
                "notion_workspace_id": body.get("workspace_id"),
                "workspace_name": body.get("workspace_name"),
            },
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "exchange_code",
        )

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        if not refresh_token:
            raise ProviderAuthError(self.provider.value, "refresh_tokens", "no refresh token")
        try:
            return await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
                "refresh_tokens",
            )
        except ProviderRequestError as e:
            raise ProviderAuthError(
                self.provider.value, "refresh_tokens", str(e), status_code=e.status_code
            ) from e

    async def get_account_info(self, access_token: str) -> AccountInfo:
        me = await self._request_json(
            "GET", "users/me", "get_account_info", access_token=access_token
        )
        name = (me.get("bot") or {}).get("workspace_name") or me.get("name") or "Notion Workspace"
        return AccountInfo(id=me.get("id", ""), name=name, metadata={"workspace_name": name})

    # ---- Webhooks ------------------------------------------------------------

    def parse_webhook(
        self,
        headers: Mapping[str, str],
        body: Any,
        secret: Optional[str],
        raw_body: Optional[bytes] = None,
    ) -> Optional[WebhookEvent]:
        headers = normalize_headers(headers)
        if not verify_hmac_signature(
            secret, raw_body, headers.get("x-notion-signature"), prefix="sha256="
        ):
            return None
        if not isinstance(body, dict):
            return None
        event_type = body.get("type")
        entity = body.get("entity") or {}
        entity_id = entity.get("id") if isinstance(entity, dict) else None
        if not isinstance(event_type, str) or not entity_id:
            return None

        if event_type == "page.deleted":
            return WebhookEvent(action=WebhookAction.DELETED, external_id=entity_id)
        if event_type == "page.created":
            return WebhookEvent(action=WebhookAction.CREATED, external_id=entity_id)
        if event_type in UPDATED_EVENT_TYPES:
            return WebhookEvent(action=WebhookAction.UPDATED, external_id=entity_id)
        if event_type in COMMENT_EVENT_TYPES:
            # The entity is the comment; re-sync the page it belongs to
            page_id = (body.get("data") or {}).get("page_id")
            if page_id:
                return WebhookEvent(action=WebhookAction.UPDATED, external_id=page_id)
        return None

    def delivery_id(self, headers: Mapping[str, str], body: Any) -> Optional[str]:
        event_id = body.get("id") if isinstance(body, dict) else None
        return str(event_id) if event_id else None

    def route_webhook(
        self,
        body: Any,
        connections: Sequence[ConnectionRef],
    ) -> list[ConnectionRef]:
        workspace_id = body.get("workspace_id") if isinstance(body, dict) else None
        if not workspace_id:
            return list(connections)
        return [
            conn
            for conn in connections
            if isinstance(conn.provider_data, NotionProviderData)
            and conn.provider_data.notion_workspace_id == workspace_id
        ]

    def handle_webhook_request(
        self,
        headers: Mapping[str, str],
        body: Any,
        connections: Sequence[ConnectionRef],
        raw_body: Optional[bytes] = None,
    ) -> WebhookHandlerResult:
        if isinstance(body, dict) and set(body) == {"verification_token"}:
            # Subscription handshake; the token is read from the Notion UI
            self._logger.info("notion_webhook_verification_requested")
            return WebhookHandlerResult()
        return super().handle_webhook_request(headers, body, connections, raw_body)

    # ---- Sync ----------------------------------------------------------------

    async def sync(self, access_token: str, provider_data: ProviderData) -> SyncResult:
        """Walk one search page and emit an event per page edited after the cursor.

        The cursor only advances once the walk reaches a page at or before
        it, so a pass interrupted between pages resumes from
        ``search_cursor`` without losing edits.
        """
        provider_data = expect_provider_data(provider_data, NotionProviderData)
        cutoff = _parse_time(provider_data.last_synced_at or initial_sync_since())
        payload: dict[str, Any] = {
            "filter": {"property": "object", "value": "page"},
            "sort": {"timestamp": "last_edited_time", "direction": "descending"},
            "page_size": SEARCH_PAGE_SIZE,
        }
        if provider_data.search_cursor:
            payload["start_cursor"] = provider_data.search_cursor

        data = await self._request_json(
            "POST", "search", "search", access_token=access_token, json=payload
        )

        events: list[WebhookEvent] = []
        newest = provider_data.pending_max_edited_time
        reached_cutoff = False
        for result in data.get("results") or []:
            if result.get("object", "page") != "page":
                continue
            edited_raw = result.get("last_edited_time")
            edited = _parse_time(edited_raw)
            if edited is None or not result.get("id"):
                continue
            if cutoff is not None and edited <= cutoff:
                reached_cutoff = True
                break
            if newest is None or edited > _parse_time(newest):
                newest = edited_raw
            action = (
                WebhookAction.DELETED
                if result.get("archived") or result.get("in_trash")
                else WebhookAction.UPDATED
            )
            events.append(WebhookEvent(action=action, external_id=result["id"]))

        has_more = not reached_cutoff and bool(data.get("has_more")) and bool(data.get("next_cursor"))
        if has_more:
            update = {"search_cursor": data["next_cursor"], "pending_max_edited_time": newest}
        else:
            update = {
                "search_cursor": None,
                "pending_max_edited_time": None,
                "last_synced_at": newest or provider_data.last_synced_at,
            }
        return SyncResult(
            items=[],
            deleted_external_ids=[],
            updated_provider_data=provider_data.model_copy(update=update),
            has_more=has_more,
            webhook_events=events,
        )

    async def _fetch_blocks(
        self,
        access_token: str,
        block_id: str,
    ) -> list[dict[str, Any]]:
        """Fetch all child blocks of a page or block."""
        blocks: list[dict[str, Any]] = []
        start_cursor = None
        page_count = 0

        while page_count < MAX_PAGINATION_PAGES:
            params: dict[str, Any] = {"page_size": 100}
            if start_cursor:
                params["start_cursor"] = start_cursor
            data = await self._request_json(
                "GET",
                f"blocks/{block_id}/children",
                "list_blocks",
                access_token=access_token,
                params=params,
            )
            blocks.extend(data.get("results") or [])
            page_count += 1
            if not data.get("has_more"):
                break
            start_cursor = data.get("next_cursor")

        if page_count >= MAX_PAGINATION_PAGES:
            self._logger.warning(
                "notion_pagination_limit_reached",
                block_id=block_id,
                max_pages=MAX_PAGINATION_PAGES,
                blocks_fetched=len(blocks),
            )
        return blocks

    async def _render_blocks(self, access_token: str, block_id: str, depth: int = 0) -> list[str]:
        lines: list[str] = []
        for block in await self._fetch_blocks(access_token, block_id):
            text = block_to_text(block, depth)
            if text:
                lines.append(text)
            if (
                block.get("has_children")
                and depth + 1 < MAX_BLOCK_DEPTH
                and block.get("type") not in ("child_page", "child_database")
            ):
                lines.extend(await self._render_blocks(access_token, block["id"], depth + 1))
        return lines

    async def process_webhook_item(
        self,
        access_token: str,
        provider_data: ProviderData,
        event: WebhookEvent,
    ) -> ItemResult:
        page_id = event.external_id
        if event.action == WebhookAction.DELETED:
            return ItemResult(deleted_external_id=page_id)

        try:
            page = await self._request_json(
                "GET", f"pages/{page_id}", "get_page", access_token=access_token
            )
        except ProviderRequestError as e:
            if e.status_code == 404:
                # Unshared from the integration or removed
                return ItemResult(deleted_external_id=page_id)
            raise
        if page.get("archived") or page.get("in_trash"):
            return ItemResult(deleted_external_id=page_id)

        title = extract_title(page)
        body = "\n".join(await self._render_blocks(access_token, page_id))
        content = f"{title}\n\n{body}" if body else title
        source_url = page.get("url") or page_url(page_id)
        return ItemResult(
            item=SyncedItem(
                external_id=page_id,
                title=title,
                content=content,
                messages=[
                    SyncedMessage(
                        content=content,
                        key="page",
                        source_url=source_url,
                        metadata={"type": "NOTION", "notion_page_id": page_id},
                    )
                ],
                source_url=source_url,
                metadata={
                    "notion_page_id": page_id,
                    "last_edited_time": page.get("last_edited_time"),
                    "parent_type": (page.get("parent") or {}).get("type"),
                },
            )
        )

    def build_initial_provider_data(
        self,
        token_metadata: Optional[dict[str, Any]] = None,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderData:
        token_metadata = token_metadata or {}
        account_metadata = account_metadata or {}
        return NotionProviderData(
            notion_workspace_id=token_metadata.get("notion_workspace_id"),
            workspace_name=token_metadata.get("workspace_name")
            or account_metadata.get("workspace_name"),
        )
