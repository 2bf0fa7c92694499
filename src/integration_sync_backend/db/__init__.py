"""Database clients for the Integration Sync Backend."""

from .postgres import PostgresClient
from .redis import RedisClient

__all__ = [
    "PostgresClient",
    "RedisClient",
]
