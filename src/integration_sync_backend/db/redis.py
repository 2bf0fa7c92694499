"""Redis client with Streams support for the sync job queue."""

import json
import secrets
import time
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis
import structlog

from ..core.errors import RedisError

logger = structlog.get_logger(__name__)

# Stream names
INTEGRATION_SYNC_STREAM = "integration.sync.jobs"
DOCUMENTS_INGEST_STREAM = "documents.ingest"

# Consumer group names
INTEGRATION_SYNC_CONSUMER_GROUP = "integration-sync-workers"

# Sorted set of jobs waiting for a retry delay, scored by due time
DELAYED_JOBS_KEY = "integration.sync.delayed"

OAUTH_STATE_PREFIX = "oauth_state:"

# Deletes the lock only if it still holds our token
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Moves due members of the delayed set onto the stream
_PROMOTE_DUE_SCRIPT = """
local due = redis.call("zrangebyscore", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
for _, member in ipairs(due) do
    redis.call("xadd", KEYS[2], "*", "job", member)
    redis.call("zrem", KEYS[1], member)
end
return #due
"""


def _serialize_value(value: Any) -> str:
    """Serialize a value for Redis storage."""
    if isinstance(value, (UUID, datetime)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _deserialize_message(data: dict[bytes, bytes]) -> dict[str, Any]:
    """Deserialize a Redis message to a dictionary."""
    result = {}
    for key, value in data.items():
        key_str = key.decode("utf-8") if isinstance(key, bytes) else key
        value_str = value.decode("utf-8") if isinstance(value, bytes) else value
        # Try to parse JSON values
        try:
            result[key_str] = json.loads(value_str)
        except (json.JSONDecodeError, TypeError):
            result[key_str] = value_str
    return result


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisClient:
    """
    Redis client for async sync-job processing.

    - API / webhook ingress -> Redis Stream (integration.sync.jobs) -> Sync Worker
    - Sync Worker -> Redis Stream (documents.ingest) -> downstream pipeline

    Also holds the short-lived coordination state: per-connection locks,
    delayed retries and OAuth state.
    """

    def __init__(self, url: str) -> None:
        """
        Initialize Redis client.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
        """
        self.url = url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=False,  # We handle decoding ourselves
            )
            logger.info("redis_connected")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> redis.Redis:
        """Get the Redis client, raising error if not connected."""
        if self._client is None:
            raise RedisError("connection", "Redis client not connected")
        return self._client

    # ---- Streams -------------------------------------------------------------

    async def publish_job(
        self,
        stream: str,
        job_data: dict[str, Any],
    ) -> str:
        """
        Publish a job to a Redis Stream.

        Args:
            stream: Name of the stream (e.g., 'integration.sync.jobs')
            job_data: Job data dictionary

        Returns:
            Message ID assigned by Redis

        Raises:
            RedisError: If publish fails
        """
        try:
            serialized = {k: _serialize_value(v) for k, v in job_data.items()}
            message_id = _decode(await self.client.xadd(stream, serialized))
            logger.debug("job_published", stream=stream, message_id=message_id)
            return message_id
        except redis.RedisError as e:
            raise RedisError("publish_job", str(e)) from e

    async def ensure_consumer_group(
        self,
        stream: str,
        group: str,
    ) -> None:
        """
        Ensure a consumer group exists for a stream.

        Creates the group if it doesn't exist. Also creates the stream
        if it doesn't exist (mkstream=True).
        """
        try:
            await self.client.xgroup_create(
                stream,
                group,
                id="0",
                mkstream=True,
            )
            logger.info("consumer_group_created", stream=stream, group=group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise RedisError("ensure_consumer_group", str(e)) from e
            # Group already exists, which is fine

    async def read_jobs(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 1,
        block_ms: int = 5000,
    ) -> list[tuple[str, dict[str, Any]]]:
        """
        Read new jobs for this consumer.

        Jobs stay pending until ``ack_job`` is called, so a worker that dies
        mid-job leaves them to be reclaimed by ``claim_stale_jobs``.

        Returns:
            ``(message_id, job_data)`` pairs, possibly empty

        Raises:
            RedisError: If the read fails
        """
        try:
            messages = await self.client.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: ">"},
                count=count,
                block=block_ms,
            )
        except redis.RedisError as e:
            logger.error("consume_error", stream=stream, error=str(e))
            raise RedisError("read_jobs", str(e)) from e

        jobs = []
        for _stream_name, entries in messages or []:
            for message_id, data in entries:
                jobs.append((_decode(message_id), _deserialize_message(data)))
        return jobs

    async def ack_job(self, stream: str, group: str, message_id: str) -> None:
        """Acknowledge a handled job."""
        try:
            await self.client.xack(stream, group, message_id)
        except redis.RedisError as e:
            raise RedisError("ack_job", str(e)) from e

    async def claim_stale_jobs(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        count: int = 10,
    ) -> list[tuple[str, dict[str, Any]]]:
        """
        Take over jobs left pending by a crashed or stalled consumer.

        Returns:
            ``(message_id, job_data)`` pairs now owned by ``consumer``
        """
        try:
            response = await self.client.xautoclaim(
                stream,
                group,
                consumer,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except redis.RedisError as e:
            raise RedisError("claim_stale_jobs", str(e)) from e

        entries = response[1] if len(response) > 1 else []
        jobs = []
        for message_id, data in entries:
            # Entries deleted from the stream come back without data
            if data:
                jobs.append((_decode(message_id), _deserialize_message(data)))
        if jobs:
            logger.info("stale_jobs_claimed", stream=stream, count=len(jobs))
        return jobs

    async def get_pending_count(self, stream: str, group: str) -> int:
        """Get the count of pending messages in a consumer group."""
        try:
            info = await self.client.xpending(stream, group)
            return info["pending"] if info else 0
        except redis.RedisError:
            return 0

    async def get_stream_length(self, stream: str) -> int:
        """Get the total length of a stream."""
        try:
            return await self.client.xlen(stream)
        except redis.RedisError:
            return 0

    # ---- Delayed retries -----------------------------------------------------

    async def schedule_delayed_job(self, job_json: str, delay_seconds: float) -> None:
        """Park a serialized job until ``delay_seconds`` from now."""
        try:
            await self.client.zadd(DELAYED_JOBS_KEY, {job_json: time.time() + delay_seconds})
        except redis.RedisError as e:
            raise RedisError("schedule_delayed_job", str(e)) from e

    async def promote_due_jobs(self, stream: str, limit: int = 100) -> int:
        """Move delayed jobs whose time has come onto ``stream``."""
        try:
            moved = await self.client.eval(
                _PROMOTE_DUE_SCRIPT, 2, DELAYED_JOBS_KEY, stream, time.time(), limit
            )
        except redis.RedisError as e:
            raise RedisError("promote_due_jobs", str(e)) from e
        if moved:
            logger.info("delayed_jobs_promoted", count=moved)
        return int(moved or 0)

    # ---- Locks ---------------------------------------------------------------

    async def acquire_lock(self, key: str, ttl_ms: int) -> Optional[str]:
        """
        Try to take a lock without waiting.

        Returns:
            The lock token to pass to ``release_lock``, or None if held
        """
        token = secrets.token_hex(16)
        try:
            acquired = await self.client.set(key, token, nx=True, px=ttl_ms)
        except redis.RedisError as e:
            raise RedisError("acquire_lock", str(e)) from e
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if it is still ours."""
        try:
            released = await self.client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
        except redis.RedisError as e:
            raise RedisError("release_lock", str(e)) from e
        return bool(released)

    async def mark_once(self, key: str, ttl_seconds: int) -> bool:
        """Record ``key``; returns False if it was already recorded."""
        try:
            return bool(await self.client.set(key, b"1", nx=True, ex=ttl_seconds))
        except redis.RedisError as e:
            raise RedisError("mark_once", str(e)) from e

    async def unmark(self, key: str) -> None:
        """Forget a key recorded with ``mark_once``."""
        try:
            await self.client.delete(key)
        except redis.RedisError as e:
            raise RedisError("unmark", str(e)) from e

    # ---- OAuth state ---------------------------------------------------------

    async def set_oauth_state(self, state: str, data: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.client.set(OAUTH_STATE_PREFIX + state, json.dumps(data), ex=ttl_seconds)
        except redis.RedisError as e:
            raise RedisError("set_oauth_state", str(e)) from e

    async def pop_oauth_state(self, state: str) -> Optional[dict[str, Any]]:
        """Fetch and delete OAuth state in one step so it can be used only once."""
        try:
            raw = await self.client.getdel(OAUTH_STATE_PREFIX + state)
        except redis.RedisError as e:
            raise RedisError("pop_oauth_state", str(e)) from e
        if raw is None:
            return None
        try:
            data = json.loads(_decode(raw))
        except json.JSONDecodeError:
            logger.warning("oauth_state_corrupt")
            return None
        return data if isinstance(data, dict) else None


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


async def get_redis_client(url: Optional[str] = None) -> RedisClient:
    """
    Get or create the global Redis client instance.

    Args:
        url: Redis connection URL. Required on first call.
    """
    global _redis_client
    if _redis_client is None:
        if url is None:
            raise RedisError("init", "Redis URL required for first initialization")
        _redis_client = RedisClient(url)
        await _redis_client.connect()
    return _redis_client


async def close_redis_client() -> None:
    """Close the global Redis client connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
