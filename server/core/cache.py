"""Cache service with Redis (production) or in-memory (development) backend.

Redis holds workflow configs, the job queue and the event channel when
REDIS_ENABLED=true. With Redis disabled everything lives in process memory,
which is enough for a single API+worker process and for tests.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


def _roundtrip(value: Any) -> Any:
    """Copy a value through JSON so memory mode behaves like Redis."""
    return json.loads(json.dumps(value, default=str))


class CacheService:
    """Async key/value, hash, sorted-set and pub/sub store.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - Memory: When Redis is disabled or the connection fails at startup
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled

        # Memory backend
        self.memory_cache: Dict[str, Any] = {}
        self._memory_hashes: Dict[str, Dict[str, Any]] = {}
        self._memory_zsets: Dict[str, Dict[str, float]] = {}
        self._memory_subscribers: Dict[str, Set[asyncio.Queue]] = {}

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis and self.settings.redis_url:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except (redis.RedisError, OSError) as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            self.use_redis = False
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()
        self._memory_hashes.clear()
        self._memory_zsets.clear()

    def is_redis_available(self) -> bool:
        """Check if Redis is connected and in use."""
        return self.use_redis and self.redis is not None

    # =========================================================================
    # KEY / VALUE
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get a JSON value."""
        if self.is_redis_available():
            value = await self.redis.get(key)
            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value is not None else None

        value = self.memory_cache.get(key)
        log_cache_operation(logger, "get", key, hit=value is not None)
        return _roundtrip(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a JSON value. ttl=None keeps it until deleted."""
        if self.is_redis_available():
            serialized = json.dumps(value, default=str)
            if ttl:
                await self.redis.setex(key, ttl, serialized)
            else:
                await self.redis.set(key, serialized)
        else:
            # No TTL in memory mode
            self.memory_cache[key] = _roundtrip(value)

        log_cache_operation(logger, "set", key, ttl=ttl)
        return True

    async def delete(self, key: str) -> bool:
        """Delete a value."""
        if self.is_redis_available():
            deleted = bool(await self.redis.delete(key))
        else:
            deleted = self.memory_cache.pop(key, None) is not None

        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        """Check if a key exists."""
        if self.is_redis_available():
            return bool(await self.redis.exists(key))
        return key in self.memory_cache

    # =========================================================================
    # HASHES
    # =========================================================================

    async def hash_set(self, key: str, field: str, value: Any) -> None:
        """Store a JSON value under a hash field."""
        if self.is_redis_available():
            await self.redis.hset(key, field, json.dumps(value, default=str))
        else:
            self._memory_hashes.setdefault(key, {})[field] = _roundtrip(value)

    async def hash_get(self, key: str, field: str) -> Optional[Any]:
        """Get a JSON value from a hash field."""
        if self.is_redis_available():
            value = await self.redis.hget(key, field)
            return json.loads(value) if value is not None else None

        value = self._memory_hashes.get(key, {}).get(field)
        return _roundtrip(value) if value is not None else None

    async def hash_delete(self, key: str, field: str) -> bool:
        """Delete a hash field. Returns True if it existed."""
        if self.is_redis_available():
            return bool(await self.redis.hdel(key, field))
        return self._memory_hashes.get(key, {}).pop(field, None) is not None

    async def hash_get_all(self, key: str) -> Dict[str, Any]:
        """Get every field of a hash."""
        if self.is_redis_available():
            raw = await self.redis.hgetall(key)
            return {k: json.loads(v) for k, v in raw.items()}
        return _roundtrip(self._memory_hashes.get(key, {}))

    # =========================================================================
    # SORTED SETS
    # =========================================================================

    async def zset_add(self, key: str, member: str, score: float) -> None:
        """Add or re-score a sorted set member."""
        if self.is_redis_available():
            await self.redis.zadd(key, {member: score})
        else:
            self._memory_zsets.setdefault(key, {})[member] = score

    async def zset_remove(self, key: str, member: str) -> bool:
        """Remove a member. True means this caller removed it (atomic claim in Redis)."""
        if self.is_redis_available():
            return bool(await self.redis.zrem(key, member))
        return self._memory_zsets.get(key, {}).pop(member, None) is not None

    async def zset_range_by_score(self, key: str, max_score: float,
                                  limit: Optional[int] = None) -> List[str]:
        """Members with score <= max_score, lowest score first."""
        if self.is_redis_available():
            if limit is not None:
                return await self.redis.zrangebyscore(key, "-inf", max_score, start=0, num=limit)
            return await self.redis.zrangebyscore(key, "-inf", max_score)

        members = sorted(
            ((score, member) for member, score in self._memory_zsets.get(key, {}).items()
             if score <= max_score),
        )
        result = [member for _, member in members]
        return result[:limit] if limit is not None else result

    async def zset_score(self, key: str, member: str) -> Optional[float]:
        """Score of a member or None."""
        if self.is_redis_available():
            return await self.redis.zscore(key, member)
        return self._memory_zsets.get(key, {}).get(member)

    async def zset_size(self, key: str) -> int:
        """Number of members."""
        if self.is_redis_available():
            return await self.redis.zcard(key)
        return len(self._memory_zsets.get(key, {}))

    # =========================================================================
    # PUB / SUB
    # =========================================================================

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """Publish a JSON message. Returns the number of receivers."""
        if self.is_redis_available():
            return await self.redis.publish(channel, json.dumps(message, default=str))

        subscribers = self._memory_subscribers.get(channel, set())
        for queue in list(subscribers):
            queue.put_nowait(_roundtrip(message))
        return len(subscribers)

    async def subscribe(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded messages from a channel until cancelled."""
        if self.is_redis_available():
            pubsub = self.redis.pubsub()
            await pubsub.subscribe(channel)
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        yield json.loads(message["data"])
                    except json.JSONDecodeError:
                        logger.error("Failed to parse channel message", channel=channel)
            finally:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._memory_subscribers.setdefault(channel, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._memory_subscribers.get(channel, set()).discard(queue)
