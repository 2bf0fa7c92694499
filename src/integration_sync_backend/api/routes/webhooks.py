"""Public webhook endpoint for provider events."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from ...sync.webhook_ingress import WebhookIngress

router = APIRouter(prefix="/integrations", tags=["webhooks"])


def get_webhook_ingress(request: Request) -> WebhookIngress:
    """Get the webhook ingress from app.state."""
    return request.app.state.webhook_ingress


@router.post("/webhook/{provider}", summary="Receive a provider webhook")
async def receive_webhook(
    provider: str,
    request: Request,
    ingress: WebhookIngress = Depends(get_webhook_ingress),
) -> dict[str, Any]:
    """
    Verify and enqueue a provider event.

    The raw body is read before any parsing so signatures are checked against
    the exact bytes the provider signed. The reply is not wrapped in the
    usual envelope because providers expect their own handshake formats.
    """
    raw_body = await request.body()
    return await ingress.handle(provider, dict(request.headers), raw_body)
