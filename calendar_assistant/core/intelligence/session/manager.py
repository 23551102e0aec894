"""Redis-based conversation state tracking."""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import RedisError

from calendar_assistant.config import settings
from calendar_assistant.infra.redis import RedisClient, get_redis, APP_PREFIX
from .models import ConversationState


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)

logger = logging.getLogger(__name__)

# Conversation key prefix (extends existing APP_PREFIX)
CONVERSATION_PREFIX = f"{APP_PREFIX}conversation:"


class ConversationStateTracker:
    """
    Keyed store of one ConversationState per user.

    Key pattern: calendar-assistant:v1:conversation:{user_id}

    State idles out after conversation_idle_ttl seconds: Redis expires the
    key, the in-memory fallback compares updated_at on read.
    """

    def __init__(self, ttl: Optional[int] = None):
        """Initialize tracker.

        Args:
            ttl: Idle timeout in seconds (defaults to settings)
        """
        self._ttl = ttl or settings.conversation_idle_ttl
        self._in_memory_fallback: dict[str, ConversationState] = {}
        # Entries vanish once no turn holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _key(self, user_id: str) -> str:
        """Generate Redis key."""
        return f"{CONVERSATION_PREFIX}{user_id}"

    def lock(self, user_id: str) -> asyncio.Lock:
        """Per-user lock; hold it for a whole turn."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _sweep_expired(self) -> None:
        """Drop idle conversations from the in-memory fallback."""
        expired = [
            user_id for user_id, state in self._in_memory_fallback.items()
            if state.is_expired(self._ttl)
        ]
        for user_id in expired:
            del self._in_memory_fallback[user_id]
        if expired:
            logger.debug(f"Dropped {len(expired)} idle in-memory conversations")

    async def get(self, user_id: str) -> ConversationState:
        """
        Get the user's state, or a fresh idle one if absent or expired.

        Args:
            user_id: User identifier

        Returns:
            ConversationState (not persisted until save())
        """
        redis = await get_redis()

        if redis:
            try:
                data = await redis.get(self._key(user_id))
            except RedisError as e:
                await RedisClient.mark_failed(e)
            else:
                if data:
                    return ConversationState.from_json(data)
                return ConversationState(user_id=user_id)

        state = self._in_memory_fallback.get(user_id)
        if state is not None:
            if not state.is_expired(self._ttl):
                return state
            logger.debug(f"Conversation for user {user_id} expired")
            del self._in_memory_fallback[user_id]

        return ConversationState(user_id=user_id)

    async def save(self, state: ConversationState) -> bool:
        """
        Persist state and restart its idle timer.

        Args:
            state: ConversationState to save

        Returns:
            True if saved successfully
        """
        state.updated_at = _utcnow()

        redis = await get_redis()

        if redis:
            try:
                await redis.setex(self._key(state.user_id), self._ttl, state.to_json())
                logger.debug(f"Conversation saved: {state.user_id} ({state.stage.value})")
                return True
            except RedisError as e:
                await RedisClient.mark_failed(e)

        # Fallback to in-memory
        self._sweep_expired()
        self._in_memory_fallback[state.user_id] = state
        return True

    async def merge(self, user_id: str, partial: dict[str, Any]) -> ConversationState:
        """
        Merge partial params into the user's state and save it.

        Args:
            user_id: User identifier
            partial: Params to merge (new values win, attendees are unioned)

        Returns:
            Updated ConversationState with missing_fields recomputed
        """
        state = await self.get(user_id)
        state.params.merge(partial)
        state.recompute_missing()
        await self.save(state)
        return state

    async def reset(self, user_id: str) -> ConversationState:
        """
        Return the user's state to idle, dropping any offered slots.

        Args:
            user_id: User identifier

        Returns:
            The reset state
        """
        state = await self.get(user_id)
        state.reset()
        await self.save(state)
        logger.debug(f"Conversation reset: {user_id}")
        return state

    async def delete(self, user_id: str) -> bool:
        """Remove the user's state entirely."""
        redis = await get_redis()

        dropped = self._in_memory_fallback.pop(user_id, None) is not None

        if redis:
            try:
                return bool(await redis.delete(self._key(user_id))) or dropped
            except RedisError as e:
                await RedisClient.mark_failed(e)

        return dropped


# Singleton
_tracker: Optional[ConversationStateTracker] = None


async def get_state_tracker() -> ConversationStateTracker:
    """Get singleton ConversationStateTracker."""
    global _tracker
    if _tracker is None:
        _tracker = ConversationStateTracker()
    return _tracker
