"""API route modules."""

from .integrations import router as integrations_router
from .webhooks import router as webhooks_router

__all__ = [
    "integrations_router",
    "webhooks_router",
]
