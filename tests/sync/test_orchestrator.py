"""Tests for the sync orchestrator: discovery, item jobs, retries and locking."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from integration_sync_backend.core.errors import (
    DatabaseError,
    ProviderAuthError,
    ProviderDataError,
    ProviderRequestError,
    ProviderTransientError,
    TokenDecryptError,
)
from integration_sync_backend.sync.base import BaseConnector
from integration_sync_backend.sync.jobs import JobKind, SyncJob
from integration_sync_backend.sync.materializer import Materializer
from integration_sync_backend.sync.models import (
    ConnectionStatus,
    IntegrationProvider,
    ItemResult,
    OAuthTokens,
    SyncedItem,
    SyncResult,
    SyncStatus,
    SyncTrigger,
    WebhookAction,
    WebhookEvent,
)
from integration_sync_backend.sync.orchestrator import SyncOrchestrator, retry_delay
from integration_sync_backend.sync.provider_data import LinearProviderData, SlackProviderData
from integration_sync_backend.sync.registry import ConnectorRegistry


def _item(external_id: str) -> SyncedItem:
    return SyncedItem(external_id=external_id, title=f"Item {external_id}", content="body")


def _page(items, data, has_more=False, deleted=None, events=None) -> SyncResult:
    return SyncResult(
        items=items,
        deleted_external_ids=deleted or [],
        updated_provider_data=data,
        has_more=has_more,
        webhook_events=events or [],
    )


@pytest.fixture
def connector():
    mock = MagicMock(spec=BaseConnector)
    mock.lock_on_discovery = True
    mock.sync = AsyncMock()
    mock.process_webhook_item = AsyncMock()
    mock.refresh_tokens = AsyncMock()
    return mock


@pytest.fixture
def materializer():
    mock = MagicMock(spec=Materializer)
    mock.upsert_document = AsyncMock()
    mock.delete_document = AsyncMock(return_value=True)
    return mock


def _orchestrator(connector, provider, store, materializer, queue, redis, settings, scheduler):
    return SyncOrchestrator(
        store=store,
        registry=ConnectorRegistry({provider: connector}),
        materializer=materializer,
        queue=queue,
        redis_client=redis,
        settings=settings,
        scheduler=scheduler,
    )


@pytest.fixture
def slack_setup(
    connector,
    materializer,
    mock_store,
    mock_queue,
    mock_redis_client,
    settings,
    mock_scheduler,
    connection_factory,
):
    connection = connection_factory(IntegrationProvider.SLACK)
    mock_store.get.return_value = connection
    orchestrator = _orchestrator(
        connector,
        IntegrationProvider.SLACK,
        mock_store,
        materializer,
        mock_queue,
        mock_redis_client,
        settings,
        mock_scheduler,
    )
    job = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.MANUAL)
    return orchestrator, connection, job


# ============================================================================
# Discovery
# ============================================================================


class TestDiscover:
    """Discovery job behavior."""

    @pytest.mark.asyncio
    async def test_paginates_and_checkpoints_every_page(
        self, slack_setup, connector, materializer, mock_store, mock_redis_client
    ):
        orchestrator, connection, job = slack_setup
        first = SlackProviderData(slack_team_id="T1", channel_timestamps={"C1": "1.0"})
        second = SlackProviderData(slack_team_id="T1", channel_timestamps={"C1": "2.0"})
        connector.sync.side_effect = [
            _page([_item("a"), _item("b")], first, has_more=True),
            _page([_item("c")], second, deleted=["gone"]),
        ]

        await orchestrator.handle(job)

        assert connector.sync.await_count == 2
        # Second call resumes from the first checkpoint
        assert connector.sync.await_args_list[1].args[1] == first
        assert materializer.upsert_document.await_count == 3
        materializer.delete_document.assert_awaited_once_with(connection, "gone")
        saved = [c.args[2] for c in mock_store.save_provider_data.await_args_list]
        assert saved == [first, second]
        mock_store.mark_synced.assert_awaited_once_with(connection.id)
        final = mock_store.update_sync_log.await_args_list[-1]
        assert final.kwargs["status"] == SyncStatus.COMPLETED
        assert final.kwargs["items_synced"] == 3
        assert final.kwargs["progress"] == 1.0
        mock_redis_client.release_lock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_item_failures_are_counted_not_fatal(
        self, slack_setup, connector, materializer, mock_store
    ):
        orchestrator, connection, job = slack_setup
        data = SlackProviderData(slack_team_id="T1")
        connector.sync.return_value = _page([_item("a"), _item("b")], data)
        materializer.upsert_document.side_effect = [DatabaseError("upsert", "boom"), None]

        await orchestrator.handle(job)

        final = mock_store.update_sync_log.await_args_list[-1]
        assert final.kwargs["status"] == SyncStatus.COMPLETED
        assert final.kwargs["items_synced"] == 1
        assert final.kwargs["items_failed"] == 1
        mock_store.set_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_page_failure_keeps_first_checkpoint_and_disconnects(
        self, slack_setup, connector, mock_store, mock_scheduler, mock_redis_client
    ):
        orchestrator, connection, job = slack_setup
        first = SlackProviderData(slack_team_id="T1", channel_timestamps={"C1": "1.0"})
        connector.sync.side_effect = [
            _page([_item("a")], first, has_more=True),
            ProviderRequestError("SLACK", "conversations.history", "channel_not_found", 400),
        ]

        with pytest.raises(ProviderRequestError):
            await orchestrator.handle(job)

        mock_store.save_provider_data.assert_awaited_once_with(
            connection.id, IntegrationProvider.SLACK, first
        )
        mock_store.mark_synced.assert_not_awaited()
        final = mock_store.update_sync_log.await_args_list[-1]
        assert final.kwargs["status"] == SyncStatus.FAILED
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )
        mock_scheduler.remove.assert_called_once_with(connection.id)
        mock_redis_client.release_lock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_error_schedules_retry_without_disconnect(
        self, slack_setup, connector, mock_store, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        connector.sync.side_effect = ProviderTransientError(
            "SLACK", "conversations.history", "ratelimited", 429, retry_after=12
        )

        await orchestrator.handle(job)

        mock_store.set_status.assert_not_awaited()
        retry, delay = mock_queue.enqueue_delayed.await_args.args
        assert retry.attempt == 1
        assert retry.sync_log_id is not None
        assert delay == 12

    @pytest.mark.asyncio
    async def test_transient_error_disconnects_after_max_attempts(
        self, slack_setup, connector, mock_store, mock_queue, settings
    ):
        orchestrator, connection, job = slack_setup
        job = job.model_copy(update={"attempt": settings.sync_max_attempts - 1})
        connector.sync.side_effect = ProviderTransientError("SLACK", "sync", "503", 503)

        await orchestrator.handle(job)

        mock_queue.enqueue_delayed.assert_not_awaited()
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )

    @pytest.mark.asyncio
    async def test_page_budget_enqueues_continuation(
        self, slack_setup, connector, mock_store, mock_queue, settings
    ):
        orchestrator, connection, job = slack_setup
        data = SlackProviderData(slack_team_id="T1")
        connector.sync.return_value = _page([_item("a")], data, has_more=True)

        await orchestrator.handle(job)

        assert connector.sync.await_count == settings.sync_max_pages_per_job
        continuation = mock_queue.enqueue.await_args.args[0]
        assert continuation.kind == JobKind.DISCOVER
        assert continuation.items_synced == settings.sync_max_pages_per_job
        assert continuation.sync_log_id is not None
        mock_store.mark_synced.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bulk_discovery_fans_out_item_jobs(
        self, slack_setup, connector, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        data = SlackProviderData(slack_team_id="T1")
        events = [
            WebhookEvent(action=WebhookAction.UPDATED, external_id="p1"),
            WebhookEvent(action=WebhookAction.DELETED, external_id="p2"),
        ]
        connector.sync.return_value = _page([], data, events=events)

        await orchestrator.handle(job)

        jobs = [c.args[0] for c in mock_queue.enqueue.await_args_list]
        assert [j.kind for j in jobs] == [JobKind.PROCESS_ITEM, JobKind.PROCESS_ITEM]
        assert [j.event.external_id for j in jobs] == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_skips_inactive_connection(
        self, slack_setup, connector, mock_store, connection_factory
    ):
        orchestrator, connection, job = slack_setup
        mock_store.get.return_value = connection_factory(status=ConnectionStatus.DISCONNECTED)

        await orchestrator.handle(job)

        connector.sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_stored_provider_data_disconnects(
        self, slack_setup, connector, mock_store, mock_scheduler
    ):
        orchestrator, connection, job = slack_setup
        mock_store.get.side_effect = ProviderDataError("SLACK", "slack_team_id: field required")
        scheduled = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.SCHEDULED)

        await orchestrator.handle(scheduled)

        connector.sync.assert_not_awaited()
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )
        mock_scheduler.remove.assert_called_once_with(connection.id)

    @pytest.mark.asyncio
    async def test_undecryptable_token_fails_pending_log(
        self, slack_setup, mock_store, mock_scheduler
    ):
        orchestrator, connection, job = slack_setup
        mock_store.get.side_effect = TokenDecryptError("authentication tag mismatch")
        log_id = uuid4()
        manual = SyncJob.discover(
            connection.id, connection.tenant_id, SyncTrigger.MANUAL, sync_log_id=log_id
        )

        await orchestrator.handle(manual)

        mock_store.update_sync_log.assert_awaited_once()
        assert mock_store.update_sync_log.await_args.args[0] == log_id
        assert mock_store.update_sync_log.await_args.kwargs["status"] == SyncStatus.FAILED
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )
        mock_scheduler.remove.assert_called_once_with(connection.id)


class TestDiscoveryTimeout:
    """Discovery runs are bounded by the job timeout."""

    @pytest.fixture
    def slow_setup(
        self,
        connector,
        materializer,
        mock_store,
        mock_queue,
        mock_redis_client,
        settings,
        mock_scheduler,
        connection_factory,
    ):
        connection = connection_factory(IntegrationProvider.SLACK)
        mock_store.get.return_value = connection

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        connector.sync.side_effect = hang
        orchestrator = _orchestrator(
            connector,
            IntegrationProvider.SLACK,
            mock_store,
            materializer,
            mock_queue,
            mock_redis_client,
            dataclasses.replace(settings, sync_job_timeout_seconds=0.05),
            mock_scheduler,
        )
        job = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.SCHEDULED)
        return orchestrator, connection, job

    @pytest.mark.asyncio
    async def test_timeout_retries_with_same_sync_log(
        self, slow_setup, mock_store, mock_queue, mock_redis_client
    ):
        orchestrator, connection, job = slow_setup
        log_id = uuid4()
        mock_store.create_sync_log.return_value = log_id

        await orchestrator.handle(job)

        retry, _delay = mock_queue.enqueue_delayed.await_args.args
        assert retry.attempt == 1
        assert retry.sync_log_id == log_id
        mock_store.create_sync_log.assert_awaited_once()
        mock_store.set_status.assert_not_awaited()
        mock_redis_client.release_lock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts_fails_and_disconnects(
        self, slow_setup, mock_store, mock_queue, mock_scheduler, settings
    ):
        orchestrator, connection, job = slow_setup
        log_id = uuid4()
        job = job.model_copy(
            update={"attempt": settings.sync_max_attempts - 1, "sync_log_id": log_id}
        )

        await orchestrator.handle(job)

        mock_queue.enqueue_delayed.assert_not_awaited()
        final = mock_store.update_sync_log.await_args_list[-1]
        assert final.args[0] == log_id
        assert final.kwargs["status"] == SyncStatus.FAILED
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )
        mock_scheduler.remove.assert_called_once_with(connection.id)


class TestDiscoveryLock:
    """At most one discovery per connection."""

    @pytest.mark.asyncio
    async def test_scheduled_job_dropped_when_lock_held(
        self, slack_setup, connector, mock_redis_client, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        mock_redis_client.acquire_lock.return_value = None
        scheduled = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.SCHEDULED)

        await orchestrator.handle(scheduled)

        connector.sync.assert_not_awaited()
        mock_queue.enqueue_delayed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_job_requeued_when_lock_held(
        self, slack_setup, connector, mock_redis_client, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        mock_redis_client.acquire_lock.return_value = None

        await orchestrator.handle(job)

        connector.sync.assert_not_awaited()
        requeued, _delay = mock_queue.enqueue_delayed.await_args.args
        assert requeued.job_id == job.job_id

    @pytest.mark.asyncio
    async def test_scheduled_continuation_deferred_when_lock_held(
        self, slack_setup, connector, mock_redis_client, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        mock_redis_client.acquire_lock.return_value = None
        scheduled = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.SCHEDULED)
        continuation = scheduled.continuation(uuid4(), items_synced=40, items_failed=0)

        await orchestrator.handle(continuation)

        connector.sync.assert_not_awaited()
        requeued, _delay = mock_queue.enqueue_delayed.await_args.args
        assert requeued.sync_log_id == continuation.sync_log_id
        assert requeued.items_synced == 40

    @pytest.mark.asyncio
    async def test_continuation_enqueued_after_lock_release(
        self, slack_setup, connector, mock_redis_client, mock_queue
    ):
        orchestrator, connection, job = slack_setup
        calls = []
        mock_redis_client.release_lock.side_effect = lambda *args: calls.append("release") or True
        mock_queue.enqueue.side_effect = lambda *args: calls.append("enqueue") or "1-0"
        connector.sync.return_value = _page(
            [_item("a")], SlackProviderData(slack_team_id="T1"), has_more=True
        )

        await orchestrator.handle(job)

        assert calls == ["release", "enqueue"]
        assert mock_queue.enqueue.await_args.args[0].sync_log_id is not None

    @pytest.mark.asyncio
    async def test_double_schedule_runs_once(
        self, slack_setup, connector, mock_redis_client
    ):
        orchestrator, connection, job = slack_setup
        connector.sync.return_value = _page([], SlackProviderData(slack_team_id="T1"))
        mock_redis_client.acquire_lock.side_effect = ["lock-token", None]
        scheduled = SyncJob.discover(connection.id, connection.tenant_id, SyncTrigger.SCHEDULED)

        await orchestrator.handle(scheduled)
        await orchestrator.handle(scheduled.model_copy())

        assert connector.sync.await_count == 1


# ============================================================================
# Token refresh
# ============================================================================


class TestTokenRefresh:
    """Refresh before sync and on authentication failures."""

    @pytest.fixture
    def linear_setup(
        self,
        connector,
        materializer,
        mock_store,
        mock_queue,
        mock_redis_client,
        settings,
        mock_scheduler,
        expiring_connection,
    ):
        mock_store.get.return_value = expiring_connection
        connector.refresh_tokens.return_value = OAuthTokens(
            access_token="new-access",
            refresh_token="new-refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        connector.sync.return_value = _page([], LinearProviderData(linear_organization_id="org-1"))
        orchestrator = _orchestrator(
            connector,
            IntegrationProvider.LINEAR,
            mock_store,
            materializer,
            mock_queue,
            mock_redis_client,
            settings,
            mock_scheduler,
        )
        job = SyncJob.discover(
            expiring_connection.id, expiring_connection.tenant_id, SyncTrigger.SCHEDULED
        )
        return orchestrator, expiring_connection, job

    @pytest.mark.asyncio
    async def test_refreshes_expiring_token_before_sync(
        self, linear_setup, connector, mock_store
    ):
        orchestrator, connection, job = linear_setup
        order = []
        mock_store.save_tokens.side_effect = lambda *a: order.append("save_tokens")
        connector.sync.side_effect = lambda token, data: (
            order.append(f"sync:{token}")
            or _page([], LinearProviderData(linear_organization_id="org-1"))
        )

        await orchestrator.handle(job)

        connector.refresh_tokens.assert_awaited_once_with("refresh-token")
        assert order == ["save_tokens", "sync:new-access"]

    @pytest.mark.asyncio
    async def test_skips_refresh_when_another_worker_already_refreshed(
        self, linear_setup, connector, mock_store, connection_factory
    ):
        orchestrator, connection, job = linear_setup
        fresh = connection_factory(
            IntegrationProvider.LINEAR,
            id=connection.id,
            tenant_id=connection.tenant_id,
            access_token="refreshed-elsewhere",
            refresh_token="refresh-2",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        mock_store.get.side_effect = [connection, fresh]

        await orchestrator.handle(job)

        connector.refresh_tokens.assert_not_awaited()
        assert connector.sync.await_args.args[0] == "refreshed-elsewhere"

    @pytest.mark.asyncio
    async def test_auth_failure_refreshes_once_and_retries_page(
        self, linear_setup, connector, mock_store, connection_factory
    ):
        orchestrator, connection, job = linear_setup
        valid = connection_factory(
            IntegrationProvider.LINEAR,
            id=connection.id,
            refresh_token="refresh-token",
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        mock_store.get.return_value = valid
        data = LinearProviderData(linear_organization_id="org-1")
        connector.sync.side_effect = [
            ProviderAuthError("LINEAR", "sync", "expired", 401),
            _page([], data),
        ]

        await orchestrator.handle(job)

        connector.refresh_tokens.assert_awaited_once()
        assert connector.sync.await_args_list[1].args[0] == "new-access"
        mock_store.set_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_refresh_disconnects(self, linear_setup, connector, mock_store):
        orchestrator, connection, job = linear_setup
        connector.refresh_tokens.side_effect = ProviderAuthError(
            "LINEAR", "refresh_tokens", "invalid_grant", 400
        )

        with pytest.raises(ProviderAuthError):
            await orchestrator.handle(job)

        connector.sync.assert_not_awaited()
        mock_store.set_status.assert_awaited_once_with(
            connection.id, ConnectionStatus.DISCONNECTED, sync_enabled=False
        )


# ============================================================================
# Item jobs
# ============================================================================


class TestProcessItem:
    """Webhook item jobs."""

    @pytest.mark.asyncio
    async def test_upserts_fetched_item(self, slack_setup, connector, materializer):
        orchestrator, connection, _ = slack_setup
        item = _item("C1")
        connector.process_webhook_item.return_value = ItemResult(item=item)
        job = SyncJob.process_item(
            connection.id,
            connection.tenant_id,
            WebhookEvent(action=WebhookAction.UPDATED, external_id="C1"),
        )

        await orchestrator.handle(job)

        materializer.upsert_document.assert_awaited_once_with(connection, item)

    @pytest.mark.asyncio
    async def test_deletes_reported_item(self, slack_setup, connector, materializer):
        orchestrator, connection, _ = slack_setup
        connector.process_webhook_item.return_value = ItemResult(deleted_external_id="C1")
        job = SyncJob.process_item(
            connection.id,
            connection.tenant_id,
            WebhookEvent(action=WebhookAction.DELETED, external_id="C1"),
        )

        await orchestrator.handle(job)

        materializer.delete_document.assert_awaited_once_with(connection, "C1")
        materializer.upsert_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, slack_setup, connector, materializer):
        orchestrator, connection, _ = slack_setup
        item = _item("C1")
        connector.process_webhook_item.return_value = ItemResult(item=item)
        event = WebhookEvent(action=WebhookAction.UPDATED, external_id="C1")
        job = SyncJob.process_item(connection.id, connection.tenant_id, event)

        await orchestrator.handle(job)
        await orchestrator.handle(job)

        # Same key both times; storage replaces rather than duplicates
        calls = materializer.upsert_document.await_args_list
        assert len(calls) == 2
        assert calls[0].args == calls[1].args

    @pytest.mark.asyncio
    async def test_item_failure_never_disconnects(
        self, slack_setup, connector, mock_store, mock_queue
    ):
        orchestrator, connection, _ = slack_setup
        connector.process_webhook_item.side_effect = ProviderRequestError(
            "SLACK", "conversations.info", "channel_not_found", 404
        )
        job = SyncJob.process_item(
            connection.id,
            connection.tenant_id,
            WebhookEvent(action=WebhookAction.UPDATED, external_id="C1"),
        )

        await orchestrator.handle(job)

        mock_store.set_status.assert_not_awaited()
        mock_queue.enqueue_delayed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_item_failure_is_retried(self, slack_setup, connector, mock_queue):
        orchestrator, connection, _ = slack_setup
        connector.process_webhook_item.side_effect = ProviderTransientError(
            "SLACK", "conversations.info", "ratelimited", 429
        )
        job = SyncJob.process_item(
            connection.id,
            connection.tenant_id,
            WebhookEvent(action=WebhookAction.UPDATED, external_id="C1"),
        )

        await orchestrator.handle(job)

        retry, _delay = mock_queue.enqueue_delayed.await_args.args
        assert retry.attempt == 1
        assert retry.kind == JobKind.PROCESS_ITEM


def test_retry_delay_backs_off_and_caps():
    assert retry_delay(0) == 30.0
    assert retry_delay(2) == 120.0
    assert retry_delay(20) == 900.0
    assert retry_delay(0, retry_after=5) == 5
