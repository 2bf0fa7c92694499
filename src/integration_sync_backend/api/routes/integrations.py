"""Integration management endpoints: connect, OAuth callback, sync and config."""

from typing import Any, Optional
from urllib.parse import urlencode
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config import Settings, get_settings
from ...core.errors import (
    AppError,
    ConnectorNotRegisteredError,
    OAuthStateError,
    ValidationError,
)
from ...sync.models import IntegrationProvider
from ...sync.service import IntegrationsService
from ..utils import success_response

logger = structlog.get_logger(__name__)

# Rate limiter instance - key function extracts client IP
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/integrations", tags=["integrations"])


class ConnectRequest(BaseModel):
    """Optional context for starting an OAuth flow."""

    user_id: Optional[str] = Field(default=None, max_length=255)


def get_integrations_service(request: Request) -> IntegrationsService:
    """Get the integrations service from app.state."""
    return request.app.state.integrations_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def parse_provider(provider: str) -> IntegrationProvider:
    parsed = IntegrationProvider.parse(provider)
    if parsed is None:
        raise ConnectorNotRegisteredError(provider)
    return parsed


def _manual_sync_limit() -> str:
    return get_settings().manual_sync_rate_limit


def _frontend_redirect(settings: Settings, **params: str) -> RedirectResponse:
    url = f"{settings.frontend_url.rstrip('/')}/integrations?{urlencode(params)}"
    return RedirectResponse(url, status_code=302)


@router.get("/callback", summary="OAuth callback")
async def oauth_callback(
    state: Optional[str] = Query(default=None),
    code: Optional[str] = Query(default=None),
    installation_id: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    service: IntegrationsService = Depends(get_integrations_service),
    settings: Settings = Depends(get_app_settings),
) -> RedirectResponse:
    """
    Complete an OAuth flow and redirect back to the frontend.

    GitHub App installs return ``installation_id`` instead of ``code``.
    """
    if not state:
        return _frontend_redirect(settings, error="invalid_state")
    try:
        connection = await service.complete_oauth(state, None if error else code or installation_id)
    except OAuthStateError:
        return _frontend_redirect(settings, error="invalid_state")
    except ValidationError:
        return _frontend_redirect(settings, error="oauth_failed" if error else "missing_code")
    except AppError as e:
        logger.error("oauth_callback_failed", error=e.message, code=e.code.value)
        return _frontend_redirect(settings, error="oauth_failed")
    return _frontend_redirect(settings, connected=connection.provider.value)


@router.get("/{tenant_id}/connections", summary="List connections")
async def list_connections(
    tenant_id: UUID,
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    return success_response(await service.list_connections(tenant_id))


@router.post("/{tenant_id}/{provider}/connect", summary="Start OAuth flow")
async def connect(
    tenant_id: UUID,
    provider: str,
    payload: Optional[ConnectRequest] = Body(default=None),
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    result = await service.start_connect(
        tenant_id,
        parse_provider(provider),
        user_id=payload.user_id if payload else None,
    )
    return success_response(result)


@router.post("/{tenant_id}/{provider}/disconnect", summary="Disconnect a provider")
async def disconnect(
    tenant_id: UUID,
    provider: str,
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    return success_response(await service.disconnect(tenant_id, parse_provider(provider)))


@router.delete("/{tenant_id}/{provider}", summary="Delete a connection and its documents")
async def delete_connection(
    tenant_id: UUID,
    provider: str,
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    parsed = parse_provider(provider)
    await service.delete(tenant_id, parsed)
    return success_response({"deleted": True, "provider": parsed.value})


@router.patch("/{tenant_id}/{provider}/config", summary="Update provider settings")
async def update_config(
    tenant_id: UUID,
    provider: str,
    updates: dict[str, Any] = Body(...),
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    """Merge tenant-editable fields into the connection and start a resync."""
    return success_response(await service.update_config(tenant_id, parse_provider(provider), updates))


@router.post("/{tenant_id}/{provider}/sync", summary="Trigger a manual sync")
@limiter.limit(_manual_sync_limit)
async def trigger_sync(
    request: Request,
    tenant_id: UUID,
    provider: str,
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    """
    Queue a manual sync for an ACTIVE connection.

    Args:
        request: FastAPI request object (used by rate limiter)
    """
    return success_response(await service.trigger_sync(tenant_id, parse_provider(provider)))


@router.get("/{tenant_id}/{provider}/sync-logs", summary="Recent sync runs")
async def list_sync_logs(
    tenant_id: UUID,
    provider: str,
    limit: int = Query(default=20, ge=1, le=100),
    service: IntegrationsService = Depends(get_integrations_service),
) -> dict[str, Any]:
    logs = await service.list_sync_logs(tenant_id, parse_provider(provider), limit=limit)
    return success_response(logs)
