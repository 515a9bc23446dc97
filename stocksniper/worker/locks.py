"""Redis-based advisory locks and per-tenant session counters."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from stocksniper import metrics
from stocksniper.config import settings

logger = logging.getLogger(__name__)

CYCLE_LOCK_KEY = "cycle:stock-check:lock"

# Compare-and-delete: only the owner (matching token) may release.
# Returns 0 = already gone, 1 = deleted, 2 = held by someone else
RELEASE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
    return 0
end
if string.find(value, ARGV[1], 1, true) then
    redis.call('DEL', KEYS[1])
    return 1
end
return 2
"""

# Compare-and-expire for owners extending a long-running hold
REFRESH_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
    return 0
end
if string.find(value, ARGV[1], 1, true) then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
    return 1
end
return 2
"""


def item_lock_key(item_id: int) -> str:
    return f"cycle:item:{item_id}"


def purchase_lock_key(item_id: int) -> str:
    return f"autobuy:{item_id}"


def session_counter_key(tenant_id: int) -> str:
    return f"sessions:{tenant_id}"


def _token_fragment(token: str) -> str:
    # Exact JSON fragment written by acquire(), matched literally in Lua
    return json.dumps({"token": token})[1:-1]


def _lock_scope(key: str) -> str:
    if key == CYCLE_LOCK_KEY:
        return "cycle"
    if key.startswith("cycle:item:"):
        return "item"
    if key.startswith("autobuy:"):
        return "purchase"
    return "other"


class LockManager:
    """
    Advisory locks over Redis ``SET NX EX``.

    Features:
    - No queueing: a failed acquire returns None immediately
    - Owner token stored in the value; release/refresh are atomic compare-and-act
    - Expiry guarantees a crashed holder frees the key
    - TTL-decaying counters for per-tenant purchase sessions
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        """
        Args:
            redis_url: Redis connection URL (defaults to settings)
            client: Pre-built client (tests pass a fakeredis instance)
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire(self, key: str, ttl_seconds: int, owner: str = "") -> Optional[str]:
        """
        Try to take ``key`` for ``ttl_seconds``.

        Returns:
            Owner token if acquired, None if someone else holds it
        """
        redis_client = await self._get_redis()

        token = uuid4().hex
        value = json.dumps({
            "token": token,
            "owner": owner,
            "acquired_at": datetime.utcnow().isoformat(),
        })
        acquired = await redis_client.set(key, value, nx=True, ex=ttl_seconds)

        metrics.record_lock(_lock_scope(key), bool(acquired))
        if acquired:
            logger.debug(f"Acquired lock {key} (ttl={ttl_seconds}s)")
            return token

        logger.debug(f"Lock {key} already held")
        return None

    async def release(self, key: str, token: Optional[str]) -> bool:
        """
        Release ``key`` only if ``token`` still owns it.

        Returns:
            True if released or already expired, False if owned by another holder
        """
        if not token:
            logger.warning(f"Release of {key} requested without token; refusing")
            return False

        redis_client = await self._get_redis()
        result = await redis_client.eval(RELEASE_SCRIPT, 1, key, _token_fragment(token))

        if result == 0:
            logger.debug(f"Lock {key} already released or expired")
            return True
        if result == 1:
            logger.debug(f"Released lock {key}")
            return True
        logger.warning(f"Refused to release {key}: held by a different owner")
        return False

    async def refresh(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Extend the TTL of a lock we still own."""
        redis_client = await self._get_redis()
        result = await redis_client.eval(REFRESH_SCRIPT, 1, key, _token_fragment(token), str(ttl_seconds))
        return result == 1

    async def force_release(self, key: str) -> bool:
        """Delete without ownership check (recovery tooling only)."""
        redis_client = await self._get_redis()
        deleted = await redis_client.delete(key)
        logger.warning(f"Force-cleared lock {key}")
        return bool(deleted)

    async def get_lock_info(self, key: str) -> Optional[Dict[str, Any]]:
        """Current holder metadata and remaining TTL, or None when free."""
        redis_client = await self._get_redis()
        value = await redis_client.get(key)
        if not value:
            return None
        ttl = await redis_client.ttl(key)

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "owner": data.get("owner"),
            "acquired_at": data.get("acquired_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def list_locks(self, pattern: str) -> list[str]:
        """Keys currently matching ``pattern`` (for diagnostics)."""
        redis_client = await self._get_redis()
        return [key async for key in redis_client.scan_iter(match=pattern)]

    async def increment_session_count(self, tenant_id: int, ttl_seconds: Optional[int] = None) -> int:
        """
        Count a new purchase session for a tenant.

        The counter is never decremented; it decays when the TTL lapses, so a
        worker that dies mid-purchase cannot leak a slot forever.
        """
        redis_client = await self._get_redis()
        key = session_counter_key(tenant_id)
        ttl = ttl_seconds or settings.session_counter_ttl_seconds

        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl)
            count, _ = await pipe.execute()
        return int(count)

    async def get_session_count(self, tenant_id: int) -> int:
        redis_client = await self._get_redis()
        value = await redis_client.get(session_counter_key(tenant_id))
        return int(value) if value else 0


def lock_age_seconds(info: Optional[Dict[str, Any]]) -> Optional[float]:
    """Seconds since a lock described by ``get_lock_info`` was taken."""
    if not info or not info.get("acquired_at"):
        return None
    try:
        acquired = datetime.fromisoformat(info["acquired_at"])
    except ValueError:
        return None
    return max(0.0, (datetime.utcnow() - acquired).total_seconds())


# Global lock manager instance
lock_manager = LockManager()
