"""Linear sync connector (GraphQL API, webhook driven)."""

from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Mapping, Optional, Sequence
from urllib.parse import urlencode
from uuid import UUID

import structlog

from ..core.errors import ProviderAuthError, ProviderRequestError, ProviderTransientError
from .base import BaseConnector, format_utc, initial_sync_since
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
)
from .provider_data import LinearProviderData, ProviderData, expect_provider_data
from .signatures import is_timestamp_fresh, normalize_headers, verify_hmac_signature

logger = structlog.get_logger(__name__)

LINEAR_API_BASE = "https://api.linear.app"
LINEAR_AUTH_URL = "https://linear.app/oauth/authorize"
LINEAR_TOKEN_PATH = "/oauth/token"
ISSUES_PER_PAGE = 50

ISSUE_FIELDS = """
  id identifier title description url updatedAt priorityLabel
  state { name }
  assignee { name }
  team { name key }
  labels { nodes { name } }
  parent { identifier title }
  children { nodes { identifier title } }
  comments(first: 50) { nodes { id body url createdAt user { name } } }
"""

ISSUES_QUERY = (
    """
query($first: Int!, $after: String, $filter: IssueFilter) {
  issues(first: $first, after: $after, orderBy: updatedAt, filter: $filter) {
    nodes {"""
    + ISSUE_FIELDS
    + """}
    pageInfo { hasNextPage endCursor }
  }
}
"""
)

ISSUE_QUERY = "query($id: String!) { issue(id: $id) {" + ISSUE_FIELDS + "} }"

ORGANIZATION_QUERY = "query { organization { id name urlKey } }"

ACTION_MAP = {
    "create": WebhookAction.CREATED,
    "update": WebhookAction.UPDATED,
    "remove": WebhookAction.DELETED,
}


def build_issue_item(issue: dict[str, Any]) -> SyncedItem:
    """Render a Linear issue and its comments as a synced item."""
    identifier = issue.get("identifier") or issue["id"]
    title = issue.get("title") or ""
    labels = [n["name"] for n in (issue.get("labels") or {}).get("nodes") or [] if n.get("name")]
    state = (issue.get("state") or {}).get("name")
    assignee = (issue.get("assignee") or {}).get("name")
    team = (issue.get("team") or {}).get("name")

    context = f"Issue {identifier}: {title}"
    lines = [context]
    parts = []
    if state:
        parts.append(f"Status: {state}")
    if issue.get("priorityLabel"):
        parts.append(f"Priority: {issue['priorityLabel']}")
    parts.append(f"Assignee: {assignee or 'Unassigned'}")
    if team:
        parts.append(f"Team: {team}")
    lines.append(" | ".join(parts))
    if labels:
        lines.append(f"Labels: {', '.join(labels)}")
    parent = issue.get("parent")
    if parent:
        lines.append(f"Parent: {parent.get('identifier')} {parent.get('title')}")
    children = (issue.get("children") or {}).get("nodes") or []
    if children:
        lines.append(
            "Sub-issues: " + ", ".join(f"{c.get('identifier')} {c.get('title')}" for c in children)
        )
    header = "\n".join(lines)
    description = issue.get("description")

    messages = [
        SyncedMessage(
            content=f"{header}\n\n{description}" if description else header,
            key="description",
            source_url=issue.get("url"),
            metadata={"type": "LINEAR", "linear_comment_id": None},
        )
    ]
    comments = sorted(
        (issue.get("comments") or {}).get("nodes") or [],
        key=lambda c: c.get("createdAt") or "",
    )
    for comment in comments:
        author = (comment.get("user") or {}).get("name") or "unknown"
        messages.append(
            SyncedMessage(
                content=(
                    f"{context}\n"
                    f"[{format_utc(comment.get('createdAt') or '')}] {author}: {comment.get('body') or ''}"
                ),
                key=f"comment-{comment.get('id')}",
                source_url=comment.get("url") or issue.get("url"),
                metadata={"type": "LINEAR", "linear_comment_id": comment.get("id")},
            )
        )

    return SyncedItem(
        external_id=issue["id"],
        title=f"[{identifier}] {title}",
        content="\n\n".join(m.content for m in messages),
        messages=messages,
        source_url=issue.get("url"),
        metadata={
            "identifier": identifier,
            "state": state,
            "team": team,
            "labels": labels or None,
            "updated_at": issue.get("updatedAt"),
        },
    )


class LinearConnector(BaseConnector):
    """Sync connector for Linear workspaces."""

    provider: ClassVar[IntegrationProvider] = IntegrationProvider.LINEAR
    rate_limits: ClassVar[RateLimitConfig] = RateLimitConfig(60, 1500)
    api_base_url: ClassVar[str] = LINEAR_API_BASE

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_secret: Optional[str],
        http_client: Any = None,
    ) -> None:
        super().__init__(http_client)
        self._client_id = self._require(client_id, "LINEAR_CLIENT_ID")
        self._client_secret = self._require(client_secret, "LINEAR_CLIENT_SECRET")
        self._webhook_secret = self._require(webhook_secret, "LINEAR_WEBHOOK_SECRET")

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._webhook_secret

    async def _graphql(
        self,
        query: str,
        operation: str,
        access_token: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        body = await self._request_json(
            "POST",
            "/graphql",
            operation,
            access_token=access_token,
            json={"query": query, "variables": variables or {}},
        )
        errors = body.get("errors")
        if errors:
            first = errors[0] or {}
            error_type = str((first.get("extensions") or {}).get("type", "")).lower()
            reason = first.get("message") or "GraphQL error"
            if "authentication" in error_type:
                raise ProviderAuthError(self.provider.value, operation, reason)
            if "ratelimit" in error_type.replace(" ", ""):
                raise ProviderTransientError(self.provider.value, operation, reason)
            raise ProviderRequestError(self.provider.value, operation, reason)
        return body.get("data") or {}

    # ---- Auth ----------------------------------------------------------------

    def get_auth_url(self, tenant_id: UUID, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": "read",
                "state": state,
                "prompt": "consent",
            }
        )
        return f"{LINEAR_AUTH_URL}?{query}"

    async def _token_request(self, form: dict[str, str], operation: str) -> OAuthTokens:
        body = await self._request_json(
            "POST",
            LINEAR_TOKEN_PATH,
            operation,
            data={"client_id": self._client_id, "client_secret": self._client_secret, **form},
        )
        expires_at = None
        if body.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(body["expires_in"]))
        scope = body.get("scope") or ""
        scopes = scope if isinstance(scope, list) else scope.replace(",", " ").split()
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
            scopes=scopes,
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
            # invalid_grant: the refresh token was revoked or already rotated
            raise ProviderAuthError(
                self.provider.value, "refresh_tokens", str(e), status_code=e.status_code
            ) from e

    async def get_account_info(self, access_token: str) -> AccountInfo:
        data = await self._graphql(ORGANIZATION_QUERY, "get_account_info", access_token)
        org = data.get("organization") or {}
        return AccountInfo(
            id=org.get("id", ""),
            name=org.get("name", ""),
            metadata={
                "linear_organization_id": org.get("id"),
                "workspace_slug": org.get("urlKey"),
            },
        )

    # ---- Webhooks ------------------------------------------------------------

    def parse_webhook(
        self,
        headers: Mapping[str, str],
        body: Any,
        secret: Optional[str],
        raw_body: Optional[bytes] = None,
    ) -> Optional[WebhookEvent]:
        headers = normalize_headers(headers)
        if not verify_hmac_signature(secret, raw_body, headers.get("linear-signature")):
            return None
        if not isinstance(body, dict):
            return None
        # Signed payloads always carry webhookTimestamp (ms); without it replays pass
        try:
            seconds = str(int(body["webhookTimestamp"]) // 1000)
        except (KeyError, TypeError, ValueError):
            return None
        if not is_timestamp_fresh(seconds):
            return None

        action = ACTION_MAP.get(body.get("action"))
        data = body.get("data")
        if action is None or not isinstance(data, dict):
            return None
        event_type = body.get("type")
        if event_type == "Issue" and data.get("id"):
            return WebhookEvent(action=action, external_id=str(data["id"]))
        if event_type == "Comment" and data.get("issueId"):
            # Any comment change re-syncs the parent issue
            return WebhookEvent(action=WebhookAction.UPDATED, external_id=str(data["issueId"]))
        return None

    def delivery_id(self, headers: Mapping[str, str], body: Any) -> Optional[str]:
        return normalize_headers(headers).get("linear-delivery")

    def route_webhook(
        self,
        body: Any,
        connections: Sequence[ConnectionRef],
    ) -> list[ConnectionRef]:
        org_id = body.get("organizationId") if isinstance(body, dict) else None
        if not org_id:
            return list(connections)
        return [
            conn
            for conn in connections
            if isinstance(conn.provider_data, LinearProviderData)
            and conn.provider_data.linear_organization_id in (None, org_id)
        ]

    # ---- Sync ----------------------------------------------------------------

    async def sync(self, access_token: str, provider_data: ProviderData) -> SyncResult:
        """Fetch one page of issues updated after the watermark."""
        provider_data = expect_provider_data(provider_data, LinearProviderData)
        since = provider_data.last_issue_synced_at or initial_sync_since()
        data = await self._graphql(
            ISSUES_QUERY,
            "list_issues",
            access_token,
            {
                "first": ISSUES_PER_PAGE,
                "after": provider_data.issue_cursor,
                "filter": {"updatedAt": {"gt": since}},
            },
        )
        connection = data.get("issues") or {}
        nodes = connection.get("nodes") or []
        page_info = connection.get("pageInfo") or {}

        items = []
        newest = provider_data.pending_max_updated_at
        for issue in nodes:
            if not issue.get("id"):
                continue
            items.append(build_issue_item(issue))
            updated_at = issue.get("updatedAt")
            if updated_at and (newest is None or updated_at > newest):
                newest = updated_at

        has_more = bool(page_info.get("hasNextPage")) and bool(page_info.get("endCursor"))
        if has_more:
            update = {"issue_cursor": page_info["endCursor"], "pending_max_updated_at": newest}
        else:
            update = {
                "issue_cursor": None,
                "pending_max_updated_at": None,
                "last_issue_synced_at": newest or provider_data.last_issue_synced_at,
            }
        return SyncResult(
            items=items,
            deleted_external_ids=[],
            updated_provider_data=provider_data.model_copy(update=update),
            has_more=has_more,
        )

    async def process_webhook_item(
        self,
        access_token: str,
        provider_data: ProviderData,
        event: WebhookEvent,
    ) -> ItemResult:
        if event.action == WebhookAction.DELETED:
            return ItemResult(deleted_external_id=event.external_id)
        try:
            data = await self._graphql(
                ISSUE_QUERY, "get_issue", access_token, {"id": event.external_id}
            )
        except ProviderRequestError as e:
            self._logger.warning(
                "linear_issue_unavailable", external_id=event.external_id, error=str(e)
            )
            return ItemResult()
        issue = data.get("issue")
        if not issue:
            return ItemResult()
        return ItemResult(item=build_issue_item(issue))

    def build_initial_provider_data(
        self,
        token_metadata: Optional[dict[str, Any]] = None,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderData:
        token_metadata = token_metadata or {}
        account_metadata = account_metadata or {}
        return LinearProviderData(
            linear_organization_id=token_metadata.get(
                "linear_organization_id", account_metadata.get("linear_organization_id")
            ),
            workspace_slug=token_metadata.get(
                "workspace_slug", account_metadata.get("workspace_slug")
            ),
        )
