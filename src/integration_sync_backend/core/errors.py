"""Error handling with RFC 7807 Problem Details support."""

from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Standardized error codes for the application."""

    VALIDATION_ERROR = "validation_error"
    CONNECTION_NOT_FOUND = "connection_not_found"
    PROVIDER_NOT_SUPPORTED = "provider_not_supported"
    CONFIGURATION_ERROR = "configuration_error"
    TOKEN_DECRYPT_FAILED = "token_decrypt_failed"
    PROVIDER_AUTH_FAILED = "provider_auth_failed"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REQUEST_FAILED = "provider_request_failed"
    PROVIDER_DATA_INVALID = "provider_data_invalid"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_OAUTH_STATE = "invalid_oauth_state"
    DATABASE_ERROR = "database_error"
    REDIS_ERROR = "redis_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    HTTP_ERROR = "http_error"
    INTERNAL_ERROR = "internal_error"


class AppError(Exception):
    """
    Structured application error following RFC 7807 Problem Details.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        status: HTTP status code
        details: Additional error context
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: int = 500,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_problem_detail(self, instance: str) -> dict[str, Any]:
        """
        Convert error to RFC 7807 Problem Details format.

        Args:
            instance: The request path where the error occurred

        Returns:
            Dictionary in RFC 7807 format
        """
        problem = {
            "type": f"https://api.example.com/errors/{self.code.value.replace('_', '-')}",
            "title": self.code.value.replace("_", " ").title(),
            "status": self.status,
            "detail": self.message,
            "instance": instance,
        }
        if self.details:
            problem["errors"] = self.details
        return problem


class ValidationError(AppError):
    """Validation error for request data."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            status=400,
            details=details,
        )


class ConnectionNotFoundError(AppError):
    """Error when a connection does not exist for the tenant/provider."""

    def __init__(self, identifier: str) -> None:
        super().__init__(
            code=ErrorCode.CONNECTION_NOT_FOUND,
            message=f"Connection '{identifier}' not found",
            status=404,
            details={"connection": identifier},
        )


class ConnectorNotRegisteredError(AppError):
    """Raised when no connector is registered for a provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            code=ErrorCode.PROVIDER_NOT_SUPPORTED,
            message=f"No connector registered for provider: {provider}",
            status=400,
            details={"provider": provider},
        )


class ConfigurationError(AppError):
    """Missing or invalid deployment configuration."""

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=message,
            status=500,
            details={"setting": setting} if setting else None,
        )


class TokenDecryptError(AppError):
    """A stored credential could not be decrypted."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code=ErrorCode.TOKEN_DECRYPT_FAILED,
            message=f"Token decryption failed: {reason}",
            status=500,
        )


class ProviderError(AppError):
    """Base class for failures talking to an external provider."""

    def __init__(
        self,
        code: ErrorCode,
        provider: str,
        operation: str,
        reason: str,
        status: int,
        status_code: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {"provider": provider, "operation": operation}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            code=code,
            message=f"{provider} {operation} failed: {reason}",
            status=status,
            details=details,
        )
        self.provider = provider
        self.operation = operation
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Invalid, expired or revoked provider credentials."""

    def __init__(
        self,
        provider: str,
        operation: str,
        reason: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            ErrorCode.PROVIDER_AUTH_FAILED,
            provider,
            operation,
            reason,
            status=502,
            status_code=status_code,
        )


class ProviderTransientError(ProviderError):
    """Rate limiting, 5xx or network failure. Safe to retry later."""

    def __init__(
        self,
        provider: str,
        operation: str,
        reason: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(
            ErrorCode.PROVIDER_UNAVAILABLE,
            provider,
            operation,
            reason,
            status=503,
            status_code=status_code,
        )
        self.retry_after = retry_after


class ProviderRequestError(ProviderError):
    """Non-retryable provider rejection (4xx other than auth and rate limits)."""

    def __init__(
        self,
        provider: str,
        operation: str,
        reason: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            ErrorCode.PROVIDER_REQUEST_FAILED,
            provider,
            operation,
            reason,
            status=502,
            status_code=status_code,
        )


class ProviderDataError(AppError):
    """Persisted provider data failed schema validation."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.PROVIDER_DATA_INVALID,
            message=f"Invalid provider data for {provider}: {reason}",
            status=400,
            details={"provider": provider},
        )


class PayloadError(AppError):
    """An inbound payload or provider response had an unexpected shape."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_PAYLOAD,
            message=f"Invalid payload from {source}: {reason}",
            status=400,
            details={"source": source},
        )


class OAuthStateError(AppError):
    """OAuth state was missing, expired or already consumed."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.INVALID_OAUTH_STATE,
            message="OAuth state is invalid or expired",
            status=400,
        )


class DatabaseError(AppError):
    """Database operation error."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database error during {operation}: {reason}",
            status=500,
        )


class RedisError(AppError):
    """Redis operation error."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.REDIS_ERROR,
            message=f"Redis error during {operation}: {reason}",
            status=500,
        )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    FastAPI exception handler for AppError.

    Converts AppError to RFC 7807 Problem Details JSON response.

    Args:
        request: The FastAPI request object
        exc: The AppError exception

    Returns:
        JSONResponse with Problem Details format
    """
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_problem_detail(str(request.url.path)),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException as RFC 7807 Problem Details."""
    code = (
        ErrorCode.RATE_LIMIT_EXCEEDED
        if exc.status_code == 429
        else ErrorCode.HTTP_ERROR
    )
    error = AppError(code=code, message=str(exc.detail), status=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error.to_problem_detail(str(request.url.path)),
        headers=getattr(exc, "headers", None),
    )
