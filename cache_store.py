"""
Cache store for session-security counters, locks and JWT bookkeeping
Redis backend for production, in-process backend for development and tests
"""

import os
import json
import time
import logging
import threading
from typing import Any, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class CacheStore:
    """Abstract key/value cache interface"""

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default if missing/expired"""
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store value, optionally expiring after ttl seconds"""
        raise NotImplementedError

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store value only if key is absent, return whether it was stored"""
        raise NotImplementedError

    def has(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """In-process cache store (development/tests)"""

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        logger.info("Initialized memory cache store")

    def _live_entry(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.time() >= expires_at:
            del self._data[key]
            return None
        return entry

    def get(self, key, default=None):
        with self._lock:
            entry = self._live_entry(key)
            return default if entry is None else entry[0]

    def set(self, key, value, ttl=None):
        expires_at = time.time() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def add(self, key, value, ttl=None):
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._data[key] = (value, time.time() + ttl if ttl else None)
            return True

    def has(self, key):
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()


class RedisCacheStore(CacheStore):
    """Redis-backed cache store, values stored as JSON"""

    def __init__(self, redis_url: str, prefix: str = 'nutritrack:'):
        self.redis_client = redis.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

        # Test connection
        self.redis_client.ping()
        logger.info(f"Initialized Redis cache store: prefix={prefix}")

    def _key(self, key):
        return f"{self.prefix}{key}"

    def get(self, key, default=None):
        try:
            raw = self.redis_client.get(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Redis cache get error: {e}")
            return default
        return default if raw is None else json.loads(raw)

    def set(self, key, value, ttl=None):
        try:
            self.redis_client.set(self._key(key), json.dumps(value), ex=ttl or None)
        except redis.RedisError as e:
            logger.error(f"Redis cache set error: {e}")

    def add(self, key, value, ttl=None):
        try:
            return bool(self.redis_client.set(self._key(key), json.dumps(value), ex=ttl or None, nx=True))
        except redis.RedisError as e:
            logger.error(f"Redis cache add error: {e}")
            return False

    def has(self, key):
        try:
            return bool(self.redis_client.exists(self._key(key)))
        except redis.RedisError as e:
            logger.error(f"Redis cache exists error: {e}")
            return False

    def delete(self, key):
        try:
            self.redis_client.delete(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Redis cache delete error: {e}")

    def clear(self):
        try:
            keys = list(self.redis_client.scan_iter(match=f"{self.prefix}*"))
            if keys:
                self.redis_client.delete(*keys)
        except redis.RedisError as e:
            logger.error(f"Redis cache clear error: {e}")


def get_cache_store() -> CacheStore:
    """Factory function to get cache store based on configuration"""
    backend = os.environ.get('CACHE_BACKEND', 'memory').lower()

    if backend == 'redis':
        redis_url = os.environ.get('REDIS_URL')
        if not redis_url:
            logger.warning("CACHE_BACKEND=redis but REDIS_URL not set, falling back to memory")
            return MemoryCacheStore()

        try:
            return RedisCacheStore(redis_url)
        except redis.RedisError as e:
            logger.error(f"Failed to initialize Redis cache store: {e}")
            logger.warning("Falling back to memory cache store")
            return MemoryCacheStore()
    return MemoryCacheStore()
