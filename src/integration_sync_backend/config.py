"""Configuration management for the Integration Sync Backend."""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
import structlog


logger = structlog.get_logger(__name__)

KNOWN_PROVIDERS = ("SLACK", "GITHUB", "LINEAR", "NOTION")
DEVELOPMENT_ENVS = {"development", "dev", "test", "local"}


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables."""

    app_env: str
    database_url: str
    redis_url: str
    backend_host: str
    backend_port: int
    frontend_url: str
    api_url: str
    request_max_bytes: int
    # Token vault
    token_vault_backend: str
    integration_encryption_key: Optional[str]
    kms_key_id: Optional[str]
    aws_region: str
    # OAuth / token lifecycle
    oauth_state_ttl_seconds: int
    token_refresh_buffer_seconds: int
    # Sync worker
    sync_worker_concurrency: int
    sync_job_timeout_seconds: int
    sync_max_attempts: int
    sync_max_pages_per_job: int
    manual_sync_rate_limit: str
    integration_providers: tuple[str, ...]
    # Provider credentials
    slack_client_id: Optional[str]
    slack_client_secret: Optional[str]
    slack_signing_secret: Optional[str]
    github_app_id: Optional[str]
    github_app_slug: Optional[str]
    github_private_key: Optional[str]
    github_webhook_secret: Optional[str]
    linear_client_id: Optional[str]
    linear_client_secret: Optional[str]
    linear_webhook_secret: Optional[str]
    notion_client_id: Optional[str]
    notion_client_secret: Optional[str]
    notion_webhook_secret: Optional[str]

    @property
    def oauth_redirect_uri(self) -> str:
        """Callback URL registered with every OAuth provider."""
        return f"{self.api_url.rstrip('/')}/api/v1/integrations/callback"


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a valid integer. Check your .env file.") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}.")
    return value


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_providers(raw: str) -> tuple[str, ...]:
    providers = tuple(
        dict.fromkeys(p.strip().upper() for p in raw.split(",") if p.strip())
    )
    unknown = [p for p in providers if p not in KNOWN_PROVIDERS]
    if unknown:
        raise ValueError(
            f"INTEGRATION_PROVIDERS contains unknown providers: {', '.join(unknown)}. "
            f"Expected a subset of {', '.join(KNOWN_PROVIDERS)}."
        )
    return providers


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings instance with all configuration values

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    load_dotenv()

    app_env = os.getenv("APP_ENV", "development").strip().lower()

    database_url = os.getenv("DATABASE_URL")
    redis_url = os.getenv("REDIS_URL")
    missing = [
        name
        for name, value in (("DATABASE_URL", database_url), ("REDIS_URL", redis_url))
        if not value
    ]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Check your .env file."
        )

    backend_port = _int_env("BACKEND_PORT", 8000)
    request_max_bytes = _int_env("REQUEST_MAX_BYTES", 1048576)
    oauth_state_ttl_seconds = _int_env("OAUTH_STATE_TTL_SECONDS", 600)
    token_refresh_buffer_seconds = _int_env("TOKEN_REFRESH_BUFFER_SECONDS", 300, minimum=0)
    sync_worker_concurrency = _int_env("SYNC_WORKER_CONCURRENCY", 4)
    sync_job_timeout_seconds = _int_env("SYNC_JOB_TIMEOUT_SECONDS", 900)
    sync_max_attempts = _int_env("SYNC_MAX_ATTEMPTS", 5)
    sync_max_pages_per_job = _int_env("SYNC_MAX_PAGES_PER_JOB", 20)

    token_vault_backend = os.getenv("TOKEN_VAULT_BACKEND", "").strip().lower()
    if not token_vault_backend:
        token_vault_backend = "local" if app_env in DEVELOPMENT_ENVS else "kms"
    if token_vault_backend not in {"local", "kms"}:
        raise ValueError("TOKEN_VAULT_BACKEND must be 'local' or 'kms'.")
    if app_env == "production" and token_vault_backend != "kms":
        raise ValueError("TOKEN_VAULT_BACKEND must be 'kms' in production.")

    integration_encryption_key = _optional_env("INTEGRATION_ENCRYPTION_KEY")
    kms_key_id = _optional_env("KMS_KEY_ID")
    if token_vault_backend == "local" and not integration_encryption_key:
        if app_env not in DEVELOPMENT_ENVS:
            raise ValueError(
                "INTEGRATION_ENCRYPTION_KEY must be set when TOKEN_VAULT_BACKEND=local."
            )
        logger.warning("integration_encryption_key_defaulted", env=app_env)
        integration_encryption_key = "local-development-key"
    if token_vault_backend == "kms" and not kms_key_id:
        raise ValueError("KMS_KEY_ID must be set when TOKEN_VAULT_BACKEND=kms.")

    integration_providers = _parse_providers(
        os.getenv("INTEGRATION_PROVIDERS", ",".join(KNOWN_PROVIDERS))
    )

    return Settings(
        app_env=app_env,
        database_url=database_url or "",
        redis_url=redis_url or "",
        backend_host=os.getenv("BACKEND_HOST", "0.0.0.0"),
        backend_port=backend_port,
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        api_url=os.getenv("API_URL", f"http://localhost:{backend_port}"),
        request_max_bytes=request_max_bytes,
        token_vault_backend=token_vault_backend,
        integration_encryption_key=integration_encryption_key,
        kms_key_id=kms_key_id,
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        oauth_state_ttl_seconds=oauth_state_ttl_seconds,
        token_refresh_buffer_seconds=token_refresh_buffer_seconds,
        sync_worker_concurrency=sync_worker_concurrency,
        sync_job_timeout_seconds=sync_job_timeout_seconds,
        sync_max_attempts=sync_max_attempts,
        sync_max_pages_per_job=sync_max_pages_per_job,
        manual_sync_rate_limit=os.getenv("MANUAL_SYNC_RATE_LIMIT", "10/minute"),
        integration_providers=integration_providers,
        slack_client_id=_optional_env("SLACK_CLIENT_ID"),
        slack_client_secret=_optional_env("SLACK_CLIENT_SECRET"),
        slack_signing_secret=_optional_env("SLACK_SIGNING_SECRET"),
        github_app_id=_optional_env("GITHUB_APP_ID"),
        github_app_slug=_optional_env("GITHUB_APP_SLUG"),
        github_private_key=_optional_env("GITHUB_PRIVATE_KEY"),
        github_webhook_secret=_optional_env("GITHUB_WEBHOOK_SECRET"),
        linear_client_id=_optional_env("LINEAR_CLIENT_ID"),
        linear_client_secret=_optional_env("LINEAR_CLIENT_SECRET"),
        linear_webhook_secret=_optional_env("LINEAR_WEBHOOK_SECRET"),
        notion_client_id=_optional_env("NOTION_CLIENT_ID"),
        notion_client_secret=_optional_env("NOTION_CLIENT_SECRET"),
        notion_webhook_secret=_optional_env("NOTION_WEBHOOK_SECRET"),
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once
    from environment variables.

    Returns:
        Cached Settings instance
    """
    return load_settings()
