"""Slack sync connector.

Each member public channel becomes one item whose messages are the channel's
messages, oldest first. After the first sync a channel item is append-only:
new messages are added as fragments and older ones are left in place.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Mapping, Optional, Sequence
from urllib.parse import urlencode
from uuid import UUID

import structlog

from ..core.errors import ProviderAuthError, ProviderRequestError, ProviderTransientError
from .base import BaseConnector, initial_sync_slack_ts
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
from .provider_data import ProviderData, SlackProviderData, expect_provider_data
from .signatures import is_timestamp_fresh, normalize_headers, verify_hmac_signature

logger = structlog.get_logger(__name__)

SLACK_API_BASE = "https://slack.com/api/"
SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
SLACK_SCOPES = ["channels:history", "channels:read", "users:read", "team:read"]

HISTORY_PAGE_SIZE = 200
CHANNEL_PAGE_SIZE = 200
MAX_THREADS_PER_CHANNEL = 30

AUTH_ERROR_CODES = {
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "token_expired",
    "account_inactive",
    "missing_scope",
}


def slack_ts_to_utc(ts: str) -> str:
    """Render a Slack ``seconds.micros`` timestamp as ``YYYY-MM-DD HH:MM:SS UTC``."""
    try:
        seconds = float(ts)
    except (TypeError, ValueError):
        return str(ts)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def message_url(team_domain: Optional[str], channel_id: str, ts: Optional[str] = None) -> str:
    if not team_domain:
        return f"https://slack.com/app_redirect?{urlencode({'channel': channel_id})}"
    url = f"https://{team_domain}.slack.com/archives/{channel_id}"
    if ts:
        url += f"/p{ts.replace('.', '')}"
    return url


def _ts_key(ts: str) -> float:
    try:
        return float(ts)
    except (TypeError, ValueError):
        return 0.0


class SlackConnector(BaseConnector):
    """Sync connector for Slack workspaces (bot token, OAuth v2)."""

    provider: ClassVar[IntegrationProvider] = IntegrationProvider.SLACK
    rate_limits: ClassVar[RateLimitConfig] = RateLimitConfig(50, 3000)
    sync_schedule: ClassVar[Optional[timedelta]] = timedelta(minutes=30)
    api_base_url: ClassVar[str] = SLACK_API_BASE

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        signing_secret: Optional[str],
        http_client: Any = None,
    ) -> None:
        super().__init__(http_client)
        self._client_id = self._require(client_id, "SLACK_CLIENT_ID")
        self._client_secret = self._require(client_secret, "SLACK_CLIENT_SECRET")
        self._signing_secret = self._require(signing_secret, "SLACK_SIGNING_SECRET")

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._signing_secret

    async def _call(
        self,
        method: str,
        operation: str,
        access_token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Call a Web API method; Slack reports failures in the ``ok`` field."""
        if data is not None:
            body = await self._request_json(
                "POST", method, operation, access_token=access_token, data=data
            )
        else:
            body = await self._request_json(
                "GET", method, operation, access_token=access_token, params=params
            )
        if body.get("ok"):
            return body
        error = body.get("error") or "unknown_error"
        self._logger.warning("slack_api_error", operation=operation, error=error)
        if error in AUTH_ERROR_CODES:
            raise ProviderAuthError(self.provider.value, operation, error)
        if error == "ratelimited":
            raise ProviderTransientError(self.provider.value, operation, error, status_code=429)
        raise ProviderRequestError(self.provider.value, operation, error)

    # ---- Auth ----------------------------------------------------------------

    def get_auth_url(self, tenant_id: UUID, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "scope": ",".join(SLACK_SCOPES),
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return f"{SLACK_AUTH_URL}?{query}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        body = await self._call(
            "oauth.v2.access",
            "exchange_code",
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        team = body.get("team") or {}
        return OAuthTokens(
            access_token=body["access_token"],
            scopes=[s for s in (body.get("scope") or "").split(",") if s],
            metadata={
                "slack_team_id": team.get("id"),
                "slack_bot_user_id": body.get("bot_user_id"),
            },
        )

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        raise ProviderAuthError(
            self.provider.value, "refresh_tokens", "Slack bot tokens cannot be refreshed"
        )

    async def get_account_info(self, access_token: str) -> AccountInfo:
        body = await self._call("team.info", "get_account_info", access_token=access_token)
        team = body.get("team") or {}
        return AccountInfo(
            id=team.get("id", ""),
            name=team.get("name", ""),
            metadata={"slack_team_id": team.get("id"), "team_domain": team.get("domain")},
        )

    # ---- Webhooks ------------------------------------------------------------

    def _verify(self, headers: Mapping[str, str], raw_body: Optional[bytes], secret: Optional[str]) -> bool:
        timestamp = headers.get("x-slack-request-timestamp")
        if raw_body is None or not is_timestamp_fresh(timestamp):
            return False
        base = b"v0:" + str(timestamp).encode("utf-8") + b":" + raw_body
        return verify_hmac_signature(secret, base, headers.get("x-slack-signature"), prefix="v0=")

    def parse_webhook(
        self,
        headers: Mapping[str, str],
        body: Any,
        secret: Optional[str],
        raw_body: Optional[bytes] = None,
    ) -> Optional[WebhookEvent]:
        headers = normalize_headers(headers)
        if not self._verify(headers, raw_body, secret):
            return None
        if not isinstance(body, dict) or body.get("type") != "event_callback":
            return None
        event = body.get("event")
        if not isinstance(event, dict) or event.get("type") != "message":
            return None
        channel = event.get("channel")
        if not isinstance(channel, str) or not channel:
            return None
        subtype = event.get("subtype")
        if subtype == "message_changed":
            action = WebhookAction.UPDATED
        elif subtype == "message_deleted":
            action = WebhookAction.DELETED
        else:
            action = WebhookAction.CREATED
        return WebhookEvent(action=action, external_id=channel)

    def delivery_id(self, headers: Mapping[str, str], body: Any) -> Optional[str]:
        event_id = body.get("event_id") if isinstance(body, dict) else None
        return str(event_id) if event_id else None

    def route_webhook(
        self,
        body: Any,
        connections: Sequence[ConnectionRef],
    ) -> list[ConnectionRef]:
        team_id = body.get("team_id") if isinstance(body, dict) else None
        if not team_id:
            return list(connections)
        return [
            conn
            for conn in connections
            if isinstance(conn.provider_data, SlackProviderData)
            and conn.provider_data.slack_team_id == team_id
        ]

    def handle_webhook_request(
        self,
        headers: Mapping[str, str],
        body: Any,
        connections: Sequence[ConnectionRef],
        raw_body: Optional[bytes] = None,
    ) -> WebhookHandlerResult:
        if isinstance(body, dict) and body.get("type") == "url_verification":
            if not self._verify(normalize_headers(headers), raw_body, self._signing_secret):
                return WebhookHandlerResult()
            return WebhookHandlerResult(response={"challenge": body.get("challenge")})
        return super().handle_webhook_request(headers, body, connections, raw_body)

    # ---- Sync ----------------------------------------------------------------

    async def _list_channels(
        self,
        access_token: str,
        selected: Optional[list[str]],
    ) -> list[dict[str, Any]]:
        channels: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {
                "types": "public_channel",
                "exclude_archived": "true",
                "limit": CHANNEL_PAGE_SIZE,
            }
            if cursor:
                params["cursor"] = cursor
            body = await self._call(
                "conversations.list", "list_channels", access_token=access_token, params=params
            )
            channels.extend(c for c in body.get("channels") or [] if c.get("is_member"))
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        if selected is not None:
            wanted = set(selected)
            channels = [c for c in channels if c.get("id") in wanted]
        return channels

    async def _fetch_history(
        self,
        access_token: str,
        channel_id: str,
        oldest: str,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {
                "channel": channel_id,
                "oldest": oldest,
                "inclusive": "false",
                "limit": HISTORY_PAGE_SIZE,
            }
            if cursor:
                params["cursor"] = cursor
            body = await self._call(
                "conversations.history", "fetch_history", access_token=access_token, params=params
            )
            messages.extend(body.get("messages") or [])
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not body.get("has_more") or not cursor:
                break
        return messages

    async def _fetch_replies(
        self,
        access_token: str,
        channel_id: str,
        thread_ts: str,
    ) -> list[dict[str, Any]]:
        body = await self._call(
            "conversations.replies",
            "fetch_replies",
            access_token=access_token,
            params={"channel": channel_id, "ts": thread_ts, "limit": HISTORY_PAGE_SIZE},
        )
        # The first reply is the parent message itself
        return [m for m in body.get("messages") or [] if m.get("ts") != thread_ts]

    async def _user_name(
        self,
        access_token: str,
        user_id: Optional[str],
        cache: dict[str, str],
    ) -> str:
        if not user_id:
            return "unknown"
        if user_id not in cache:
            try:
                body = await self._call(
                    "users.info", "get_user", access_token=access_token, params={"user": user_id}
                )
                user = body.get("user") or {}
                profile = user.get("profile") or {}
                cache[user_id] = (
                    profile.get("display_name") or user.get("real_name") or user.get("name") or user_id
                )
            except ProviderRequestError:
                cache[user_id] = user_id
        return cache[user_id]

    @staticmethod
    def _is_relevant(message: dict[str, Any], bot_user_id: Optional[str]) -> bool:
        if message.get("bot_id") or message.get("subtype") in ("bot_message", "channel_join"):
            return False
        text = message.get("text") or ""
        if bot_user_id and f"<@{bot_user_id}>" in text:
            return False
        return bool(text.strip())

    async def _build_channel_item(
        self,
        access_token: str,
        data: SlackProviderData,
        channel: dict[str, Any],
        oldest: str,
        append_only: bool,
        user_cache: dict[str, str],
    ) -> tuple[Optional[SyncedItem], Optional[str]]:
        """Build the item for one channel; returns it with the newest message ts."""
        channel_id = channel["id"]
        name = channel.get("name") or channel_id
        raw = await self._fetch_history(access_token, channel_id, oldest)
        if not raw:
            return None, None
        newest = max((m.get("ts", "0") for m in raw), key=_ts_key)

        expanded: list[dict[str, Any]] = []
        threads = 0
        for message in raw:
            expanded.append(message)
            thread_ts = message.get("thread_ts")
            if (
                message.get("reply_count")
                and thread_ts == message.get("ts")
                and threads < MAX_THREADS_PER_CHANNEL
            ):
                threads += 1
                expanded.extend(await self._fetch_replies(access_token, channel_id, thread_ts))

        messages: list[SyncedMessage] = []
        seen: set[str] = set()
        for message in sorted(expanded, key=lambda m: _ts_key(m.get("ts", "0"))):
            ts = message.get("ts")
            if not ts or ts in seen or not self._is_relevant(message, data.slack_bot_user_id):
                continue
            seen.add(ts)
            user = await self._user_name(access_token, message.get("user"), user_cache)
            messages.append(
                SyncedMessage(
                    content=f"[{slack_ts_to_utc(ts)}] {user}: {message.get('text')}",
                    key=ts,
                    source_url=message_url(data.team_domain, channel_id, ts),
                    metadata={
                        "type": "SLACK",
                        "channel_id": channel_id,
                        "channel_name": name,
                        "ts": ts,
                        "thread_ts": message.get("thread_ts"),
                        "user": message.get("user"),
                    },
                )
            )
        if not messages:
            return None, newest
        return (
            SyncedItem(
                external_id=channel_id,
                title=f"#{name}",
                content="\n".join(m.content for m in messages),
                messages=messages,
                source_url=message_url(data.team_domain, channel_id),
                metadata={"channel_id": channel_id, "channel_name": name},
                append_only=append_only,
            ),
            newest,
        )

    async def sync(self, access_token: str, provider_data: ProviderData) -> SyncResult:
        """Sync new messages in every selected member channel.

        A channel's watermark only advances once its history has been fully
        read. When Slack rate limits the pass part way through, the channels
        finished so far are returned with ``has_more`` set.
        """
        provider_data = expect_provider_data(provider_data, SlackProviderData)
        timestamps = dict(provider_data.channel_timestamps)
        items: list[SyncedItem] = []
        user_cache: dict[str, str] = {}
        has_more = False

        channels = await self._list_channels(access_token, provider_data.selected_channel_ids)
        for channel in channels:
            channel_id = channel.get("id")
            if not channel_id:
                continue
            previous = timestamps.get(channel_id)
            try:
                item, newest = await self._build_channel_item(
                    access_token,
                    provider_data,
                    channel,
                    previous or initial_sync_slack_ts(),
                    append_only=previous is not None,
                    user_cache=user_cache,
                )
            except ProviderTransientError:
                if not items:
                    raise
                self._logger.info(
                    "slack_sync_rate_limited", channel_id=channel_id, items=len(items)
                )
                has_more = True
                break
            if item is not None:
                items.append(item)
            if newest:
                timestamps[channel_id] = newest

        return SyncResult(
            items=items,
            deleted_external_ids=[],
            updated_provider_data=provider_data.model_copy(
                update={"channel_timestamps": timestamps}
            ),
            has_more=has_more,
        )

    async def process_webhook_item(
        self,
        access_token: str,
        provider_data: ProviderData,
        event: WebhookEvent,
    ) -> ItemResult:
        """Fetch recent messages of the channel an event refers to.

        New messages are read after the channel watermark; edits and
        deletions re-read the lookback window so edited fragments are
        replaced by key. Message removals are not propagated to stored
        fragments.
        """
        provider_data = expect_provider_data(provider_data, SlackProviderData)
        channel_id = event.external_id
        selected = provider_data.selected_channel_ids
        if selected is not None and channel_id not in selected:
            return ItemResult()

        body = await self._call(
            "conversations.info",
            "get_channel",
            access_token=access_token,
            params={"channel": channel_id},
        )
        channel = body.get("channel") or {"id": channel_id}
        watermark = provider_data.channel_timestamps.get(channel_id)
        if event.action == WebhookAction.CREATED and watermark:
            oldest = watermark
        else:
            oldest = initial_sync_slack_ts()
        item, _ = await self._build_channel_item(
            access_token,
            provider_data,
            channel,
            oldest,
            append_only=True,
            user_cache={},
        )
        return ItemResult(item=item)

    def build_initial_provider_data(
        self,
        token_metadata: Optional[dict[str, Any]] = None,
        account_metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderData:
        merged = {
            key: value
            for source in (account_metadata or {}, token_metadata or {})
            for key, value in source.items()
            if value is not None
        }
        return SlackProviderData(
            slack_team_id=merged.get("slack_team_id"),
            slack_bot_user_id=merged.get("slack_bot_user_id"),
            team_domain=(account_metadata or {}).get("team_domain"),
        )
