"""
Session Store - Redis-backed off-topic counters per session.

The pipeline itself is request-scoped: it takes an off-topic count and
returns the updated one. This store is the caller-side continuity for
the HTTP layer, keyed by session_id, with automatic expiration.
Falls back to in-memory storage if Redis is unavailable.

The client is synchronous; async callers run it in the threadpool.
"""

import os
import logging
import threading
from typing import Optional
import redis

logger = logging.getLogger(__name__)

# Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 3600))  # 1 hour default


class RedisSessionStore:
    """Redis-backed off-topic counter store with automatic expiration."""

    def __init__(self, redis_url: str = REDIS_URL, ttl: int = SESSION_TTL_SECONDS):
        self.ttl = ttl
        self._redis: Optional[redis.Redis] = None
        self._redis_url = redis_url
        self._fallback_store: dict[str, int] = {}
        self._lock = threading.Lock()
        self._use_fallback = False

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def _get_redis(self) -> Optional[redis.Redis]:
        """Lazy initialization of Redis connection."""
        if self._use_fallback:
            return None

        if self._redis is None:
            try:
                client = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5
                )
                client.ping()
                self._redis = client
                logger.info(f"Connected to Redis at {self._redis_url}")
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable, using in-memory fallback: {e}")
                self._use_fallback = True
                return None
        return self._redis

    def _key(self, session_id: str) -> str:
        return f"voice:session:{session_id}:off_topic"

    def load_count(self, session_id: str) -> int:
        """Off-topic count for a session (0 for unknown or expired sessions)."""
        r = self._get_redis()

        if r is None:
            return self._fallback_store.get(session_id, 0)

        try:
            data = r.get(self._key(session_id))
        except redis.RedisError as e:
            logger.error(f"Redis load failed, checking fallback: {e}")
            return self._fallback_store.get(session_id, 0)

        if data is None:
            logger.debug(f"No counter for session {session_id}, starting at 0")
            return 0
        try:
            return max(int(data), 0)
        except ValueError:
            logger.warning(f"Corrupt counter for session {session_id}: {data!r}, resetting")
            self.delete(session_id)
            return 0

    def add_count(self, session_id: str, delta: int) -> int:
        """
        Atomically add `delta` to the counter and refresh its TTL.

        Concurrent turns on one session each add their own increment,
        so none is lost. Returns the stored count.
        """
        r = self._get_redis()

        if r is None:
            return self._add_fallback(session_id, delta)

        key = self._key(session_id)
        try:
            pipe = r.pipeline()
            pipe.incrby(key, delta)
            pipe.expire(key, self.ttl)
            count, _ = pipe.execute()
            logger.debug(f"Counter for session {session_id} is now {count} (TTL {self.ttl}s)")
            return int(count)
        except redis.RedisError as e:
            logger.error(f"Redis save failed, using fallback: {e}")
            return self._add_fallback(session_id, delta)

    def _add_fallback(self, session_id: str, delta: int) -> int:
        with self._lock:
            count = self._fallback_store.get(session_id, 0) + delta
            self._fallback_store[session_id] = count
        logger.debug(f"Saved counter {count} for session {session_id} to in-memory fallback")
        return count

    def delete(self, session_id: str) -> None:
        r = self._get_redis()

        if r is None:
            with self._lock:
                self._fallback_store.pop(session_id, None)
            return

        try:
            r.delete(self._key(session_id))
            logger.info(f"Deleted session {session_id}")
        except redis.RedisError as e:
            logger.error(f"Redis delete failed: {e}")
            with self._lock:
                self._fallback_store.pop(session_id, None)
