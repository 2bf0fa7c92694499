"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, cast

from fastapi import APIRouter, FastAPI, HTTPException, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import JSONResponse, Response
import structlog

from .api.routes import integrations_router, webhooks_router
from .api.routes.integrations import limiter as slowapi_limiter
from .config import get_settings, load_settings
from .core.errors import AppError, app_error_handler, http_exception_handler
from .db.postgres import PostgresClient
from .db.redis import RedisClient
from .observability import get_metrics_registry
from .sync.jobs import SyncJobQueue
from .sync.materializer import Materializer
from .sync.registry import build_connector_registry
from .sync.scheduler import SyncScheduler
from .sync.service import IntegrationsService
from .sync.store import ConnectionStore
from .sync.webhook_ingress import WebhookIngress
from .token_vault import create_token_vault

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Connects to Redis and PostgreSQL, builds the connector registry and
    restores sync schedules. Stores services in app.state for dependency
    injection.
    """
    settings = load_settings()
    app.state.settings = settings

    app.state.redis_client = RedisClient(settings.redis_url)
    await app.state.redis_client.connect()
    app.state.postgres = PostgresClient(settings.database_url)
    await app.state.postgres.connect()
    await app.state.postgres.create_tables()

    registry = build_connector_registry(settings)
    store = ConnectionStore(app.state.postgres, create_token_vault(settings))
    queue = SyncJobQueue(app.state.redis_client)
    scheduler = SyncScheduler(app.state.postgres, queue)

    app.state.registry = registry
    app.state.scheduler = scheduler
    app.state.integrations_service = IntegrationsService(
        store=store,
        registry=registry,
        queue=queue,
        materializer=Materializer(app.state.postgres, app.state.redis_client),
        redis_client=app.state.redis_client,
        settings=settings,
        scheduler=scheduler,
    )
    app.state.webhook_ingress = WebhookIngress(
        store=store,
        registry=registry,
        queue=queue,
        redis_client=app.state.redis_client,
        scheduler=scheduler,
    )

    scheduler.start()
    await scheduler.restore(store, registry)
    logger.info("application_started", providers=[p.value for p in registry.providers])

    yield

    scheduler.shutdown()
    await registry.close()
    await app.state.redis_client.disconnect()
    await app.state.postgres.disconnect()
    logger.info("database_connections_closed")


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Integration Sync Backend",
        version="0.1.0",
        description="Connector and sync orchestration API for third-party workspaces",
        lifespan=lifespan,
    )
    install_middleware(app)

    # Register slowapi rate limiter for manual sync
    app.state.limiter = slowapi_limiter
    app.add_exception_handler(
        RateLimitExceeded,
        cast(Callable[[Request, Exception], Response], _rate_limit_exceeded_handler),
    )

    # Register exception handlers
    app.add_exception_handler(
        AppError,
        cast(Callable[[Request, Exception], Awaitable[Response]], app_error_handler),
    )
    app.add_exception_handler(
        HTTPException,
        cast(Callable[[Request, Exception], Awaitable[Response]], http_exception_handler),
    )

    # Register routers
    app.include_router(router)
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(integrations_router, prefix="/api/v1")

    return app


router = APIRouter()


def install_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def enforce_request_size(request: Request, call_next):
        settings = getattr(request.app.state, "settings", None) or get_settings()
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > settings.request_max_bytes:
                    return JSONResponse(
                        status_code=413,
                        content={"detail": "Request body too large"},
                    )
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"detail": "Invalid content-length header"},
                )
        return await call_next(request)


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus exposition of sync metrics."""
    return Response(content=generate_latest(get_metrics_registry()), media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "integration_sync_backend.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
    )


app = create_app()
