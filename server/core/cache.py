"""Cache service with Redis (production) or SQLite (single process) backend.

SQLite is sufficient for a single engine process and keeps run state across
restarts; Redis is used when several engine processes share run state.
"""

import json
import time
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheService:
    """Async key/value cache with Redis, SQLite or memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - SQLite: When Redis is disabled or unreachable and a database is given
    - Memory: Fallback without a database (lost on restart)
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None):
        self.settings = settings
        self.database = database  # SQLite backend
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self.use_sqlite = not self.use_redis and database is not None
        self._streams_available = False

    async def startup(self):
        """Initialize cache connection."""
        if not self.use_redis:
            if self.use_sqlite:
                logger.info("Using SQLite cache (no Redis required for a single process)")
            else:
                logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)
            return

        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis cache initialized", url=self.settings.redis_url)
            await self._check_streams_support()

        except Exception as e:
            logger.warning("Redis connection failed, falling back", error=str(e))
            self.use_redis = False
            self.redis = None
            if self.database:
                self.use_sqlite = True
                logger.info("Using SQLite cache (Redis fallback)")

    async def _check_streams_support(self):
        """Check if Redis supports Streams (XADD) for run event history."""
        test_stream = "_playbook_streams_test"
        try:
            msg_id = await self.redis.xadd(test_stream, {"test": "1"}, maxlen=1)
            await self.redis.delete(test_stream)
            self._streams_available = bool(msg_id)
        except Exception as e:
            self._streams_available = False
            logger.warning("Redis Streams unavailable, run events disabled", error=str(e))

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self.memory_cache[key]
            return None
        return value

    def _is_sqlite(self) -> bool:
        return self.use_sqlite and self.database is not None

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
            elif self._is_sqlite():
                value = await self.database.get_cache_entry(key)
            else:
                value = self._memory_get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return value

            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value is not None else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache. ttl=0 stores without expiry."""
        try:
            ttl = self.settings.cache_ttl if ttl is None else ttl

            if self.is_redis_available():
                serialized = json.dumps(value, default=str)
                if ttl:
                    await self.redis.setex(key, ttl, serialized)
                else:
                    await self.redis.set(key, serialized)
            elif self._is_sqlite():
                serialized = json.dumps(value, default=str)
                if not await self.database.set_cache_entry(key, serialized, ttl or None):
                    return False
            else:
                expires_at = time.time() + ttl if ttl else None
                self.memory_cache[key] = (value, expires_at)

            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value only if the key does not exist (SET NX). ttl=0 stores without expiry.

        Returns:
            True if this call stored the value
        """
        try:
            ttl = self.settings.cache_ttl if ttl is None else ttl

            if self.is_redis_available():
                added = bool(await self.redis.set(key, json.dumps(value, default=str),
                                                  ex=ttl or None, nx=True))
            elif self._is_sqlite():
                added = await self.database.add_cache_entry(key, json.dumps(value, default=str),
                                                            ttl or None)
            else:
                # No await between check and set: atomic on the event loop
                added = self._memory_get(key) is None
                if added:
                    self.memory_cache[key] = (value, time.time() + ttl if ttl else None)

            log_cache_operation(logger, "add", key, added=added)
            return added

        except Exception as e:
            logger.error("Cache add failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            elif self._is_sqlite():
                deleted = await self.database.delete_cache_entry(key)
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            if self.is_redis_available():
                return bool(await self.redis.exists(key))
            elif self._is_sqlite():
                return await self.database.cache_exists(key)
            return self._memory_get(key) is not None

        except Exception as e:
            logger.error("Cache exists check failed", key=key, error=str(e))
            return False

    async def get_prefix(self, prefix: str) -> Dict[str, Any]:
        """All live values whose key starts with prefix."""
        try:
            if self.is_redis_available():
                keys = [key async for key in self.redis.scan_iter(match=f"{prefix}*")]
                values = await self.redis.mget(keys) if keys else []
                return {k: json.loads(v) for k, v in zip(keys, values) if v is not None}
            elif self._is_sqlite():
                entries = await self.database.get_cache_entries(prefix)
                return {k: json.loads(v) for k, v in entries.items()}

            found = {}
            for key in list(self.memory_cache):
                if key.startswith(prefix):
                    value = self._memory_get(key)
                    if value is not None:
                        found[key] = value
            return found

        except Exception as e:
            logger.error("Cache prefix scan failed", prefix=prefix, error=str(e))
            return {}

    async def cleanup_expired(self) -> int:
        """Drop expired entries (Redis expires keys itself). Returns count removed."""
        try:
            if self.is_redis_available():
                return 0
            elif self._is_sqlite():
                return await self.database.cleanup_expired_cache()

            now = time.time()
            expired = [key for key, (_, expires_at) in self.memory_cache.items()
                       if expires_at is not None and expires_at <= now]
            for key in expired:
                del self.memory_cache[key]
            return len(expired)

        except Exception as e:
            logger.error("Cache cleanup failed", error=str(e))
            return 0

    async def stream_add(self, stream: str, data: Dict[str, Any], maxlen: int = 1000) -> Optional[str]:
        """Append an entry to a Redis Stream (no-op without Streams support)."""
        try:
            if self.is_streams_available():
                serialized = {k: json.dumps(v) if isinstance(v, (dict, list)) else str(v)
                              for k, v in data.items()}
                return await self.redis.xadd(stream, serialized, maxlen=maxlen, approximate=True)
            return None
        except Exception as e:
            logger.error("Stream add failed", stream=stream, error=str(e))
            return None

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None

    def is_streams_available(self) -> bool:
        """Check if Redis Streams are available."""
        return self.is_redis_available() and self._streams_available
