"""
Read-through cache for the model resolver.

Entries are JSON values stored under `studio:cache:{key}` in Redis with a
TTL. When REDIS_URL is unset or Redis is unreachable, an in-process dict
with per-entry expiry takes over; its state is lost on restart and is not
shared between workers, so a saved admin setting can take up to one TTL to
reach other processes.
"""

import os
import json
import time
import logging
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "studio:cache:"

# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None
_redis_checked = False


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client, _redis_checked
    if _redis_client is None and not _redis_checked:
        _redis_checked = True
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            import redis
            client = redis.from_url(redis_url, decode_responses=True)
            try:
                client.ping()
                _redis_client = client
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}; using in-process cache")
    return _redis_client


def reset_redis() -> None:
    """Forget the cached client so the next call re-reads REDIS_URL."""
    global _redis_client, _redis_checked
    _redis_client = None
    _redis_checked = False


class TTLCache:
    """JSON cache with expiry; Redis when available, in-process otherwise."""

    def __init__(self, redis_client=None):
        self._redis = redis_client
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}  # key → (expires_at, value)

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def get(self, key: str) -> Optional[Any]:
        if self._redis is not None:
            raw = self._redis.get(KEY_PREFIX + key)
            return json.loads(raw) if raw is not None else None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.time():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> float:
        """Store `value` for `ttl_seconds`; returns the unix expiry time."""
        expires_at = time.time() + ttl_seconds
        if self._redis is not None:
            self._redis.set(KEY_PREFIX + key, json.dumps(value), ex=ttl_seconds)
        else:
            with self._lock:
                self._entries[key] = (expires_at, value)
        return expires_at

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        if self._redis is not None:
            self._redis.delete(*(KEY_PREFIX + k for k in keys))
            return
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before `key` expires, or None if it is not cached."""
        if self._redis is not None:
            remaining = self._redis.ttl(KEY_PREFIX + key)
            return float(remaining) if remaining is not None and remaining >= 0 else None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            remaining = entry[0] - time.time()
            return remaining if remaining > 0 else None

    def clear(self) -> None:
        """Drop every in-process entry. Redis keys expire on their own."""
        with self._lock:
            self._entries.clear()
