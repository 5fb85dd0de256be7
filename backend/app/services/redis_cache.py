# backend/app/services/redis_cache.py
"""
Redis Cache Service (Repository Pattern)

Responsibilities
- Generation lease per session (SET NX EX) so that only one process polls the
  upstream generator for a session at a time.
- Poll status snapshot per session (JSON with TTL), updated with
  WATCH/MULTI/EXEC + bounded retry.

Operational notes
- A redis.asyncio.Redis client must be injected (prefer decode_responses=True).
- The lease fails open: on RedisError the caller may poll anyway, because the
  question insert itself is idempotent.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from app.models.api import PollStatus

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ensure_text(value: Union[str, bytes, bytearray, memoryview]) -> str:
    """Return a str whether Redis returned str (decode_responses=True) or bytes."""
    if isinstance(value, str):
        return value
    return bytes(value).decode("utf-8")


def _key_lease(session_id: Union[uuid.UUID, str]) -> str:
    return f"quiz_generation_lease:{session_id}"


def _key_status(session_id: Union[uuid.UUID, str]) -> str:
    return f"quiz_generation_status:{session_id}"


def _jittered_backoff(attempt: int, base: float = 0.05, cap: float = 0.5) -> float:
    """Small, bounded, jittered backoff (seconds)."""
    d = min(cap, base * max(1, attempt))
    return d + random.random() * 0.01


async def _unwatch_quietly(pipe: Any) -> None:
    try:
        await pipe.unwatch()
    except RedisError as e:
        logger.debug("redis.unwatch.fail", error=str(e))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class CacheRepository:
    """Handles all Redis cache operations."""

    def __init__(self, client: redis.Redis):
        self.client = client

    # ---------------------------------------------------------------------
    # Generation lease
    # ---------------------------------------------------------------------

    async def acquire_generation_lease(self, session_id: uuid.UUID, owner: str, ttl_seconds: int) -> bool:
        """True if `owner` now holds the lease (or Redis is unavailable)."""
        key = _key_lease(session_id)
        try:
            acquired = await self.client.set(key, owner, ex=ttl_seconds, nx=True)
        except RedisError as e:
            logger.warning("redis.lease.unavailable", key=key, error=str(e))
            return True
        logger.debug("redis.lease.acquire", key=key, acquired=bool(acquired))
        return bool(acquired)

    async def release_generation_lease(self, session_id: uuid.UUID, owner: str) -> bool:
        """Delete the lease only if `owner` still holds it."""
        key = _key_lease(session_id)
        async with self.client.pipeline() as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None or _ensure_text(raw) != owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("redis.lease.release_conflict", key=key)
                return False
            except RedisError as e:
                logger.warning("redis.lease.release_fail", key=key, error=str(e))
                return False

    # ---------------------------------------------------------------------
    # Poll status snapshot (JSON)
    # ---------------------------------------------------------------------

    async def get_poll_status(self, session_id: uuid.UUID) -> Optional[PollStatus]:
        key = _key_status(session_id)
        try:
            raw = await self.client.get(key)
            if raw is None:
                logger.debug("redis.poll_status.miss", key=key)
                return None
            return PollStatus.model_validate_json(_ensure_text(raw))
        except (ValidationError, RedisError) as e:
            logger.error("redis.poll_status.get.fail", key=key, error=str(e), exc_info=True)
            return None

    async def update_poll_status_atomically(
        self,
        session_id: uuid.UUID,
        new_data: Dict[str, Any],
        ttl_seconds: int = 3600,
    ) -> Optional[PollStatus]:
        """
        Merge `new_data` into the stored snapshot with optimistic concurrency.
        Creates the snapshot when missing.
        """
        key = _key_status(session_id)
        max_retries = 8
        attempt = 0

        async with self.client.pipeline() as pipe:
            while attempt < max_retries:
                attempt += 1
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        current: Dict[str, Any] = {"session_id": str(session_id), "attempt": 0}
                    else:
                        current = PollStatus.model_validate_json(_ensure_text(raw)).model_dump(mode="json")

                    current.update(new_data)
                    current["updated_at"] = time.time()
                    updated = PollStatus.model_validate(current)
                    updated_json = updated.model_dump_json()

                    pipe.multi()
                    pipe.set(key, updated_json, ex=ttl_seconds)
                    await pipe.execute()

                    logger.debug("redis.poll_status.update.ok", key=key, attempt=attempt, state=updated.state)
                    return updated

                except WatchError:
                    backoff = _jittered_backoff(attempt)
                    logger.debug("redis.poll_status.watch_conflict", key=key, attempt=attempt, sleep_s=round(backoff, 3))
                    await _unwatch_quietly(pipe)
                    await asyncio.sleep(backoff)
                    continue
                except (ValidationError, RedisError) as e:
                    logger.error("redis.poll_status.update.fail", key=key, attempt=attempt, error=str(e), exc_info=True)
                    await _unwatch_quietly(pipe)
                    return None

        logger.warning("redis.poll_status.gave_up", key=key, attempts=attempt)
        return None
