"""Core utilities for the Integration Sync Backend."""

from .errors import (
    AppError,
    ConfigurationError,
    ConnectionNotFoundError,
    ConnectorNotRegisteredError,
    ErrorCode,
    ProviderAuthError,
    ProviderTransientError,
    ValidationError,
)

__all__ = [
    "AppError",
    "ConfigurationError",
    "ConnectionNotFoundError",
    "ConnectorNotRegisteredError",
    "ErrorCode",
    "ProviderAuthError",
    "ProviderTransientError",
    "ValidationError",
]
