"""Tests for integration management endpoints."""

from urllib.parse import parse_qs, urlparse
from uuid import uuid4

from integration_sync_backend.core.errors import (
    ConnectionNotFoundError,
    OAuthStateError,
    ProviderAuthError,
    ValidationError,
)
from integration_sync_backend.sync.models import IntegrationProvider


def _redirect_params(response) -> dict[str, list[str]]:
    location = response.headers["location"]
    assert location.startswith("http://frontend.test/integrations?")
    return parse_qs(urlparse(location).query)


class TestOAuthCallback:
    """Tests for GET /api/v1/integrations/callback."""

    def test_success_redirects_with_provider(self, client, mock_service, connection_factory):
        mock_service.complete_oauth.return_value = connection_factory(
            provider=IntegrationProvider.LINEAR
        )

        response = client.get(
            "/api/v1/integrations/callback",
            params={"state": "s1", "code": "c1"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert _redirect_params(response) == {"connected": ["LINEAR"]}
        mock_service.complete_oauth.assert_awaited_once_with("s1", "c1")

    def test_github_installation_id_is_used_as_code(
        self, client, mock_service, connection_factory
    ):
        mock_service.complete_oauth.return_value = connection_factory(
            provider=IntegrationProvider.GITHUB
        )

        client.get(
            "/api/v1/integrations/callback",
            params={"state": "s1", "installation_id": "42", "setup_action": "install"},
            follow_redirects=False,
        )

        mock_service.complete_oauth.assert_awaited_once_with("s1", "42")

    def test_missing_state(self, client, mock_service):
        response = client.get(
            "/api/v1/integrations/callback", params={"code": "c1"}, follow_redirects=False
        )

        assert _redirect_params(response) == {"error": ["invalid_state"]}
        mock_service.complete_oauth.assert_not_awaited()

    def test_unknown_state(self, client, mock_service):
        mock_service.complete_oauth.side_effect = OAuthStateError()

        response = client.get(
            "/api/v1/integrations/callback",
            params={"state": "replayed", "code": "c1"},
            follow_redirects=False,
        )

        assert _redirect_params(response) == {"error": ["invalid_state"]}

    def test_missing_code(self, client, mock_service):
        mock_service.complete_oauth.side_effect = ValidationError("Missing authorization code")

        response = client.get(
            "/api/v1/integrations/callback", params={"state": "s1"}, follow_redirects=False
        )

        assert _redirect_params(response) == {"error": ["missing_code"]}

    def test_provider_error_param_consumes_state(self, client, mock_service):
        mock_service.complete_oauth.side_effect = ValidationError("Missing authorization code")

        response = client.get(
            "/api/v1/integrations/callback",
            params={"state": "s1", "code": "c1", "error": "access_denied"},
            follow_redirects=False,
        )

        assert _redirect_params(response) == {"error": ["oauth_failed"]}
        mock_service.complete_oauth.assert_awaited_once_with("s1", None)

    def test_exchange_failure(self, client, mock_service):
        mock_service.complete_oauth.side_effect = ProviderAuthError(
            "LINEAR", "exchange_code", "invalid_grant", status_code=400
        )

        response = client.get(
            "/api/v1/integrations/callback",
            params={"state": "s1", "code": "c1"},
            follow_redirects=False,
        )

        assert _redirect_params(response) == {"error": ["oauth_failed"]}


class TestConnectionRoutes:
    def test_list_connections(self, client, mock_service, sample_tenant_id):
        mock_service.list_connections.return_value = [{"provider": "SLACK", "status": "ACTIVE"}]

        response = client.get(f"/api/v1/integrations/{sample_tenant_id}/connections")

        assert response.status_code == 200
        data = response.json()
        assert data["data"] == [{"provider": "SLACK", "status": "ACTIVE"}]
        assert "requestId" in data["meta"]

    def test_list_connections_invalid_tenant(self, client):
        response = client.get("/api/v1/integrations/not-a-uuid/connections")
        assert response.status_code == 422

    def test_connect_returns_auth_url(self, client, mock_service, sample_tenant_id):
        mock_service.start_connect.return_value = {
            "auth_url": "https://linear.app/oauth/authorize?state=abc",
            "state": "abc",
        }

        response = client.post(
            f"/api/v1/integrations/{sample_tenant_id}/linear/connect",
            json={"user_id": "user-1"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["state"] == "abc"
        mock_service.start_connect.assert_awaited_once_with(
            sample_tenant_id, IntegrationProvider.LINEAR, user_id="user-1"
        )

    def test_connect_without_body(self, client, mock_service, sample_tenant_id):
        mock_service.start_connect.return_value = {"auth_url": "https://x", "state": "s"}

        response = client.post(f"/api/v1/integrations/{sample_tenant_id}/slack/connect")

        assert response.status_code == 200
        assert mock_service.start_connect.await_args.kwargs["user_id"] is None

    def test_unknown_provider(self, client, mock_service, sample_tenant_id):
        response = client.post(f"/api/v1/integrations/{sample_tenant_id}/myspace/connect")

        assert response.status_code == 400
        assert response.json()["title"] == "Provider Not Supported"
        mock_service.start_connect.assert_not_awaited()

    def test_disconnect(self, client, mock_service, sample_tenant_id):
        mock_service.disconnect.return_value = {"status": "DISCONNECTED"}

        response = client.post(f"/api/v1/integrations/{sample_tenant_id}/slack/disconnect")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "DISCONNECTED"

    def test_delete(self, client, mock_service, sample_tenant_id):
        response = client.delete(f"/api/v1/integrations/{sample_tenant_id}/notion")

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": True, "provider": "NOTION"}
        mock_service.delete.assert_awaited_once_with(sample_tenant_id, IntegrationProvider.NOTION)

    def test_delete_missing_connection(self, client, mock_service):
        tenant_id = uuid4()
        mock_service.delete.side_effect = ConnectionNotFoundError(f"{tenant_id}/NOTION")

        response = client.delete(f"/api/v1/integrations/{tenant_id}/notion")

        assert response.status_code == 404
        problem = response.json()
        assert problem["status"] == 404
        assert problem["instance"] == f"/api/v1/integrations/{tenant_id}/notion"

    def test_update_config(self, client, mock_service, sample_tenant_id):
        response = client.patch(
            f"/api/v1/integrations/{sample_tenant_id}/slack/config",
            json={"selected_channel_ids": ["C1"]},
        )

        assert response.status_code == 200
        mock_service.update_config.assert_awaited_once_with(
            sample_tenant_id, IntegrationProvider.SLACK, {"selected_channel_ids": ["C1"]}
        )

    def test_trigger_sync(self, client, mock_service, sample_tenant_id):
        mock_service.trigger_sync.return_value = {"sync_log_id": "log-1", "status": "PENDING"}

        response = client.post(f"/api/v1/integrations/{sample_tenant_id}/github/sync")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "PENDING"

    def test_trigger_sync_on_disconnected_connection(
        self, client, mock_service, sample_tenant_id
    ):
        mock_service.trigger_sync.side_effect = ValidationError(
            "Connection is disconnected; reconnect before syncing"
        )

        response = client.post(f"/api/v1/integrations/{sample_tenant_id}/github/sync")

        assert response.status_code == 400

    def test_sync_logs_limit_bounds(self, client, mock_service, sample_tenant_id):
        response = client.get(
            f"/api/v1/integrations/{sample_tenant_id}/slack/sync-logs", params={"limit": 500}
        )
        assert response.status_code == 422

        response = client.get(
            f"/api/v1/integrations/{sample_tenant_id}/slack/sync-logs", params={"limit": 5}
        )
        assert response.status_code == 200
        assert mock_service.list_sync_logs.await_args.kwargs["limit"] == 5


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_request_size_limit(client, settings, sample_tenant_id):
    response = client.patch(
        f"/api/v1/integrations/{sample_tenant_id}/slack/config",
        content=b"x" * (settings.request_max_bytes + 1),
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 413
