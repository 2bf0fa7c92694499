"""GitHub sync connector.

Connects through a GitHub App installation. Issues, pull requests and
discussions become one item each, keyed ``owner/repo#number``.
"""

import base64
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Mapping, Optional, Sequence
from urllib.parse import quote
from uuid import UUID

import jwt
import structlog

from ..core.errors import PayloadError, ProviderAuthError, ProviderRequestError
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
    WebhookHandlerResult,
)
from .provider_data import GitHubProviderData, ProviderData, expect_provider_data
from .signatures import normalize_headers, verify_hmac_signature

logger = structlog.get_logger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_SCOPES = ["repo", "read:org"]
ISSUES_PER_PAGE = 50
LIST_PAGE_SIZE = 100
MAX_LIST_PAGES = 50
EXTERNAL_ID_PATTERN = re.compile(r"^(.+?)/(.+?)#(\d+)$")

ISSUE_EVENTS = {"issues", "issue_comment"}
PULL_REQUEST_EVENTS = {"pull_request", "pull_request_review_comment"}
DISCUSSION_EVENTS = {"discussion", "discussion_comment"}

DISCUSSION_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    discussion(number: $number) {
      number title body url updatedAt
      author { login }
      category { name }
      labels(first: 10) { nodes { name } }
      comments(first: 50) { nodes { id body url createdAt author { login } } }
    }
  }
}
"""


def build_context_header(
    repo: str,
    number: int,
    title: str,
    author: str,
    labels: list[str],
    kind: Optional[str] = None,
    state: Optional[str] = None,
    assignees: Optional[list[str]] = None,
    branches: Optional[tuple[str, str]] = None,
    category: Optional[str] = None,
) -> str:
    """Summary lines prepended to an item's first message."""
    suffix = f" ({kind})" if kind else ""
    lines = [f"{repo}#{number}{suffix}: {title}"]
    parts = []
    if category:
        parts.append(f"Category: {category}")
    if state:
        parts.append(f"State: {state}")
    if author:
        parts.append(f"Author: {author}")
    if assignees:
        parts.append(f"Assignees: {', '.join(assignees)}")
    if parts:
        lines.append(" | ".join(parts))
    if branches:
        lines.append(f"Branches: {branches[0]} -> {branches[1]}")
    if labels:
        lines.append(f"Labels: {', '.join(labels)}")
    return "\n".join(lines)


def build_item(
    item_type: str,
    repo: str,
    number: int,
    title: str,
    source_url: str,
    header: str,
    body: Optional[str],
    comments: list[SyncedMessage],
    metadata: dict[str, Any],
) -> SyncedItem:
    description = f"{header}\n\n{body}" if body else header
    messages = [
        SyncedMessage(
            content=description,
            key="description",
            source_url=source_url,
            metadata={"type": "GITHUB", "github_item_type": item_type, "github_comment_id": None},
        ),
        *comments,
    ]
    return SyncedItem(
        external_id=f"{repo}#{number}",
        title=f"[{repo}#{number}] {title}",
        content="\n\n".join(m.content for m in messages),
        messages=messages,
        source_url=source_url,
        metadata={"github_item_type": item_type, "repo": repo, "number": number, **metadata},
    )


def _labels(raw: list[Any]) -> list[str]:
    names = []
    for label in raw or []:
        name = label if isinstance(label, str) else (label or {}).get("name")
        if name:
            names.append(name)
    return names


def _login(user: Optional[dict[str, Any]]) -> str:
    return (user or {}).get("login") or "unknown"


class GitHubConnector(BaseConnector):
    """Sync connector for GitHub App installations.

    The installation id stands in for the refresh token: installation
    tokens expire after an hour and are re-minted from the app JWT.
    """

    provider: ClassVar[IntegrationProvider] = IntegrationProvider.GITHUB
    rate_limits: ClassVar[RateLimitConfig] = RateLimitConfig(30, 5000)
    api_base_url: ClassVar[str] = GITHUB_API_BASE

    def __init__(
        self,
        app_id: Optional[str],
        app_slug: Optional[str],
        private_key: Optional[str],
        webhook_secret: Optional[str],
        http_client: Any = None,
    ) -> None:
        super().__init__(http_client)
        self._app_id = self._require(app_id, "GITHUB_APP_ID")
        self._app_slug = self._require(app_slug, "GITHUB_APP_SLUG")
        self._private_key = self._decode_private_key(
            self._require(private_key, "GITHUB_PRIVATE_KEY")
        )
        self._webhook_secret = self._require(webhook_secret, "GITHUB_WEBHOOK_SECRET")

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._webhook_secret

    @staticmethod
    def _decode_private_key(raw: str) -> str:
        if raw.startswith("-----BEGIN"):
            return raw.replace("\\n", "\n")
        return base64.b64decode(raw).decode("utf-8")

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    # ---- Auth ----------------------------------------------------------------

    def get_auth_url(self, tenant_id: UUID, state: str, redirect_uri: str) -> str:
        return (
            f"https://github.com/apps/{self._app_slug}/installations/new"
            f"?state={quote(state, safe='')}"
        )

    def _app_jwt(self) -> str:
        now = int(time.time())
        return jwt.encode(
            {"iat": now - 60, "exp": now + 540, "iss": self._app_id},
            self._private_key,
            algorithm="RS256",
        )

    async def _create_installation_token(self, installation_id: int) -> tuple[str, datetime]:
        data = await self._request_json(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            "create_installation_token",
            access_token=self._app_jwt(),
            headers=self._headers(),
        )
        token = data.get("token")
        if not token:
            raise PayloadError("github create_installation_token", "missing token")
        expires_raw = data.get("expires_at")
        if expires_raw:
            expires_at = datetime.fromisoformat(expires_raw.replace("Z", "+00:00"))
        else:
            expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        return token, expires_at

    @staticmethod
    def _installation_id(raw: str, operation: str) -> int:
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise ProviderAuthError(
                IntegrationProvider.GITHUB.value, operation, f"invalid installation id {raw!r}"
            ) from e

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        installation_id = self._installation_id(code, "exchange_code")
        token, expires_at = await self._create_installation_token(installation_id)
        return OAuthTokens(
            access_token=token,
            refresh_token=str(installation_id),
            expires_at=expires_at,
            scopes=list(GITHUB_SCOPES),
            metadata={"github_installation_id": installation_id},
        )

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        installation_id = self._installation_id(refresh_token, "refresh_tokens")
        token, expires_at = await self._create_installation_token(installation_id)
        return OAuthTokens(
            access_token=token,
            refresh_token=str(installation_id),
            expires_at=expires_at,
            scopes=list(GITHUB_SCOPES),
        )

    async def get_account_info(self, access_token: str) -> AccountInfo:
        data = await self._request_json(
            "GET",
            "/installation/repositories",
            "get_account_info",
            access_token=access_token,
            headers=self._headers(),
            params={"per_page": 1},
        )
        repos = data.get("repositories") or []
        login = _login(repos[0].get("owner")) if repos else "unknown"
        return AccountInfo(id=login, name=login, metadata={"installation_owner": login})

    # ---- Webhooks ------------------------------------------------------------

    def _verify(self, headers: Mapping[str, str], raw_body: Optional[bytes]) -> bool:
        return verify_hmac_signature(
            self._webhook_secret,
            raw_body,
            headers.get("x-hub-signature-256"),
            prefix="sha256=",
        )

    def parse_webhook(
        self,
        headers: Mapping[str, str],
        body: Any,
        secret: Optional[str],
        raw_body: Optional[bytes] = None,
    ) -> Optional[WebhookEvent]:
        headers = normalize_headers(headers)
        if not secret or not self._verify(headers, raw_body):
            return None
        return self._extract_event(headers.get("x-github-event"), body)

    @staticmethod
    def _extract_event(event_type: Optional[str], body: Any) -> Optional[WebhookEvent]:
        if not event_type or not isinstance(body, dict):
            return None
        repo = (body.get("repository") or {}).get("full_name")
        if not repo:
            return None
        action = body.get("action")

        if event_type in ISSUE_EVENTS:
            subject = body.get("issue")
        elif event_type in PULL_REQUEST_EVENTS:
            subject = body.get("pull_request")
        elif event_type in DISCUSSION_EVENTS:
            subject = body.get("discussion")
        else:
            return None
        if not isinstance(subject, dict) or not isinstance(subject.get("number"), int):
            return None

        if action in ("opened", "created"):
            webhook_action = WebhookAction.CREATED
        elif action == "deleted":
            webhook_action = WebhookAction.DELETED
        elif (
            event_type == "pull_request"
            and action == "closed"
            and not subject.get("merged")
        ):
            webhook_action = WebhookAction.DELETED
        else:
            webhook_action = WebhookAction.UPDATED
        # Comment deletions update the parent item rather than removing it
        if webhook_action == WebhookAction.DELETED and event_type.endswith("comment"):
            webhook_action = WebhookAction.UPDATED
        return WebhookEvent(action=webhook_action, external_id=f"{repo}#{subject['number']}")

    @staticmethod
    def _matching(
        installation_id: Optional[int],
        connections: Sequence[ConnectionRef],
    ) -> list[ConnectionRef]:
        if installation_id is None:
            return []
        return [
            conn
            for conn in connections
            if isinstance(conn.provider_data, GitHubProviderData)
            and conn.provider_data.github_installation_id == installation_id
        ]

    def delivery_id(self, headers: Mapping[str, str], body: Any) -> Optional[str]:
        return normalize_headers(headers).get("x-github-delivery")

    def handle_webhook_request(
        self,
        headers: Mapping[str, str],
        body: Any,
        connections: Sequence[ConnectionRef],
        raw_body: Optional[bytes] = None,
    ) -> WebhookHandlerResult:
        headers = normalize_headers(headers)
        if not self._verify(headers, raw_body) or not isinstance(body, dict):
            return WebhookHandlerResult()

        event_type = headers.get("x-github-event")
        installation = body.get("installation") or {}
        installation_id = installation.get("id") if isinstance(installation, dict) else None

        if event_type == "installation":
            action = body.get("action")
            if action in ("deleted", "suspend"):
                matched = self._matching(installation_id, connections)
                self._logger.info(
                    "github_installation_removed",
                    action=action,
                    installation_id=installation_id,
                    connections=len(matched),
                )
                return WebhookHandlerResult(disconnect_connections=matched)
            return WebhookHandlerResult()

        event = self._extract_event(event_type, body)
        if event is None:
            return WebhookHandlerResult()
        matched = self._matching(installation_id, connections)
        return WebhookHandlerResult(sync_connections=[(conn, event) for conn in matched])

    # ---- Sync ----------------------------------------------------------------

    async def _list_all(
        self,
        access_token: str,
        path: str,
        operation: str,
        key: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Collect every entry of a list endpoint by following ``Link: rel="next"``."""
        entries: list[dict[str, Any]] = []
        url = path
        params: Optional[dict[str, Any]] = {"per_page": LIST_PAGE_SIZE}
        for _ in range(MAX_LIST_PAGES):
            response = await self._request(
                "GET",
                url,
                operation,
                access_token=access_token,
                headers=self._headers(),
                params=params,
            )
            try:
                data = response.json()
            except ValueError as e:
                raise PayloadError(f"github {operation}", "response is not JSON") from e
            page = data.get(key) if key and isinstance(data, dict) else data
            entries.extend(page or [])
            next_url = response.links.get("next", {}).get("url")
            if not next_url:
                return entries
            # The next link already carries the query string
            url, params = next_url, None
        self._logger.warning("github_list_truncated", operation=operation, entries=len(entries))
        return entries

    async def _list_repositories(self, access_token: str) -> list[dict[str, Any]]:
        return await self._list_all(
            access_token, "/installation/repositories", "list_repositories", key="repositories"
        )

    async def _list_comments(
        self,
        access_token: str,
        repo: str,
        number: int,
        title: str,
        item_type: str,
    ) -> list[SyncedMessage]:
        try:
            comments = await self._list_all(
                access_token, f"/repos/{repo}/issues/{number}/comments", "list_comments"
            )
        except ProviderRequestError as e:
            self._logger.warning("github_comments_unavailable", repo=repo, number=number, error=str(e))
            return []
        kind = " PR" if item_type == "pull_request" else ""
        messages = []
        for comment in comments:
            created = format_utc(comment.get("created_at") or "")
            messages.append(
                SyncedMessage(
                    content=(
                        f"Comment on {repo}#{number}{kind} ({title})\n"
                        f"[{created}] {_login(comment.get('user'))}: {comment.get('body') or ''}"
                    ),
                    key=f"comment-{comment.get('id')}",
                    source_url=comment.get("html_url"),
                    metadata={
                        "type": "GITHUB",
                        "github_item_type": item_type,
                        "github_comment_id": str(comment.get("id")),
                    },
                )
            )
        return messages

    async def _build_issue_item(
        self,
        access_token: str,
        repo: str,
        issue: dict[str, Any],
    ) -> SyncedItem:
        number = issue["number"]
        title = issue.get("title") or ""
        labels = _labels(issue.get("labels"))
        assignees = [_login(a) for a in issue.get("assignees") or []]
        is_pull = "pull_request" in issue
        item_type = "pull_request" if is_pull else "issue"
        branches = None
        state = issue.get("state")
        source_url = issue.get("html_url") or f"https://github.com/{repo}/issues/{number}"

        if is_pull:
            pull = await self._request_json(
                "GET",
                f"/repos/{repo}/pulls/{number}",
                "get_pull_request",
                access_token=access_token,
                headers=self._headers(),
            )
            branches = (
                (pull.get("head") or {}).get("ref", ""),
                (pull.get("base") or {}).get("ref", ""),
            )
            if pull.get("merged"):
                state = "merged"
            source_url = pull.get("html_url") or source_url

        header = build_context_header(
            repo,
            number,
            title,
            _login(issue.get("user")),
            labels,
            kind="PR" if is_pull else None,
            state=state,
            assignees=assignees,
            branches=branches,
        )
        comments = await self._list_comments(access_token, repo, number, title, item_type)
        return build_item(
            item_type,
            repo,
            number,
            title,
            source_url,
            header,
            issue.get("body"),
            comments,
            {
                "state": state,
                "labels": labels or None,
                "assignees": assignees or None,
                "updated_at": issue.get("updated_at"),
            },
        )

    async def sync(self, access_token: str, provider_data: ProviderData) -> SyncResult:
        """Sync one page of issues and pull requests per repository.

        Each repository keeps its own ``updated_at`` watermark so a full
        page in one repository never advances the cursor of another.
        GitHub's ``since`` filter is inclusive, so the newest item of the
        previous page is re-emitted once.
        """
        provider_data = expect_provider_data(provider_data, GitHubProviderData)
        repo_cursors = dict(provider_data.repo_cursors)
        items: list[SyncedItem] = []
        has_more = False

        for repo in await self._list_repositories(access_token):
            full_name = repo.get("full_name")
            if not full_name:
                continue
            since = repo_cursors.get(full_name) or initial_sync_since()
            issues = await self._request_json(
                "GET",
                f"/repos/{full_name}/issues",
                "list_issues",
                access_token=access_token,
                headers=self._headers(),
                params={
                    "state": "all",
                    "sort": "updated",
                    "direction": "asc",
                    "since": since,
                    "per_page": ISSUES_PER_PAGE,
                },
            )
            newest = repo_cursors.get(full_name)
            for issue in issues:
                items.append(await self._build_issue_item(access_token, full_name, issue))
                updated_at = issue.get("updated_at")
                if updated_at and (newest is None or updated_at > newest):
                    newest = updated_at
            if newest:
                repo_cursors[full_name] = newest
            if len(issues) >= ISSUES_PER_PAGE:
                has_more = True

        last_synced_at = max(repo_cursors.values(), default=provider_data.last_synced_at)
        updated = provider_data.model_copy(
            update={"repo_cursors": repo_cursors, "last_synced_at": last_synced_at}
        )
        return SyncResult(
            items=items,
            deleted_external_ids=[],
            updated_provider_data=updated,
            has_more=has_more,
        )

    async def _fetch_discussion(
        self,
        access_token: str,
        owner: str,
        name: str,
        number: int,
    ) -> Optional[SyncedItem]:
        data = await self._request_json(
            "POST",
            "/graphql",
            "get_discussion",
            access_token=access_token,
            json={
                "query": DISCUSSION_QUERY,
                "variables": {"owner": owner, "name": name, "number": number},
            },
        )
        discussion = ((data.get("data") or {}).get("repository") or {}).get("discussion")
        if not discussion:
            return None
        repo = f"{owner}/{name}"
        title = discussion.get("title") or ""
        labels = _labels((discussion.get("labels") or {}).get("nodes"))
        header = build_context_header(
            repo,
            number,
            title,
            _login(discussion.get("author")),
            labels,
            kind="Discussion",
            category=(discussion.get("category") or {}).get("name"),
        )
        comments = [
            SyncedMessage(
                content=(
                    f"Comment on {repo}#{number} Discussion ({title})\n"
                    f"[{format_utc(c.get('createdAt') or '')}] "
                    f"{_login(c.get('author'))}: {c.get('body') or ''}"
                ),
                key=f"comment-{c.get('id')}",
                source_url=c.get("url"),
                metadata={
                    "type": "GITHUB",
                    "github_item_type": "discussion",
                    "github_comment_id": c.get("id"),
                },
            )
            for c in (discussion.get("comments") or {}).get("nodes") or []
        ]
        return build_item(
            "discussion",
            repo,
            number,
            title,
            discussion.get("url") or f"https://github.com/{repo}/discussions/{number}",
            header,
            discussion.get("body"),
            comments,
            {"labels": labels or None, "updated_at": discussion.get("updatedAt")},
        )

    async def process_webhook_item(
        self,
        access_token: str,
        provider_data: ProviderData,
        event: WebhookEvent,
    ) -> ItemResult:
        if event.action == WebhookAction.DELETED:
            return ItemResult(deleted_external_id=event.external_id)

        match = EXTERNAL_ID_PATTERN.match(event.external_id)
        if not match:
            self._logger.warning("github_external_id_invalid", external_id=event.external_id)
            return ItemResult()
        owner, name, number_str = match.groups()
        number = int(number_str)
        repo = f"{owner}/{name}"

        try:
            issue = await self._request_json(
                "GET",
                f"/repos/{repo}/issues/{number}",
                "get_issue",
                access_token=access_token,
                headers=self._headers(),
            )
        except ProviderRequestError as e:
            if e.status_code not in (404, 410):
                raise
            # Discussions are not served by the issues API
            item = await self._fetch_discussion(access_token, owner, name, number)
            if item is None:
                self._logger.warning("github_item_not_found", external_id=event.external_id)
            return ItemResult(item=item)
        return ItemResult(item=await self._build_issue_item(access_token, repo, issue))

    def build_initial_provider_data(
        self,
        token_metadata: Optional[dict[str, Any]] = None,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderData:
        token_metadata = token_metadata or {}
        account_metadata = account_metadata or {}
        installation_id = token_metadata.get(
            "github_installation_id", account_metadata.get("github_installation_id")
        )
        if installation_id is None:
            raise PayloadError("github", "GitHub App installation id is required")
        return GitHubProviderData(
            github_installation_id=int(installation_id),
            installation_owner=token_metadata.get(
                "installation_owner", account_metadata.get("installation_owner")
            ),
        )
