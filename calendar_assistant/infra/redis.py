"""
Redis Connection Management

One shared async connection holds conversation state. Redis is optional:
when it cannot be reached callers get None and keep state in process, and
reconnection is only attempted again after a cooldown so a dead Redis does
not add a connect timeout to every chat turn.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from calendar_assistant.config import settings

logger = logging.getLogger(__name__)

# Namespace for every key this service writes
APP_PREFIX = "calendar-assistant:v1:"


class RedisClient:
    """
    Shared Redis connection with a reconnect cooldown.

    States:
    - connected: the client is returned as-is
    - cooling down: a recent failure; None is returned without a network call
    - closed: the next call connects and pings
    """

    _client: Optional[Redis] = None
    _retry_after: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get the connected client.

        Returns:
            Redis client, or None while Redis is unreachable
        """
        if cls._client is not None:
            return cls._client

        if time.monotonic() < cls._retry_after:
            return None

        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.redis_timeout,
            socket_timeout=settings.redis_timeout,
            retry=Retry(ExponentialBackoff(), retries=2),
        )

        try:
            await client.ping()
        except RedisError as e:
            await client.aclose()
            cls._cool_down(f"connect failed: {e}")
            return None

        cls._client = client
        logger.info("Redis connection established")
        return cls._client

    @classmethod
    async def mark_failed(cls, error: Exception) -> None:
        """Drop the connection after an operation error and start the cooldown."""
        client, cls._client = cls._client, None
        if client is not None:
            try:
                await client.aclose()
            except RedisError:
                pass
        cls._cool_down(f"operation failed: {error}")

    @classmethod
    def _cool_down(cls, reason: str) -> None:
        cls._retry_after = time.monotonic() + settings.redis_retry_seconds
        logger.warning(
            f"Redis unavailable ({reason}); retrying in {settings.redis_retry_seconds}s"
        )

    @classmethod
    async def close(cls) -> None:
        """Close the connection on shutdown."""
        client, cls._client = cls._client, None
        cls._retry_after = 0.0
        if client is not None:
            try:
                await client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")


async def get_redis() -> Optional[Redis]:
    """
    Get the shared Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for the readiness check.

    Returns:
        True if Redis answers a ping, False otherwise
    """
    client = await get_redis()
    if client is None:
        return False

    try:
        await client.ping()
        return True
    except RedisError as e:
        await RedisClient.mark_failed(e)
        return False
