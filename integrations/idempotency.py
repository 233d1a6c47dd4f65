import time
from typing import Optional

import redis
from loguru import logger

from integrations.config import settings

class Idem:
    """Redis-based idempotency claims fencing duplicate side effects (e.g. project creation)."""

    def __init__(self, redis_url: Optional[str] = None):
        """Initialize Redis connection; an empty url keeps claims in memory."""
        url = redis_url if redis_url is not None else settings.redis_url
        self.r = None
        self._memory_keys = {}

        if not url:
            logger.warning("No Redis url provided, keeping idempotency claims in memory")
            return

        try:
            self.r = redis.from_url(url)
            # Test connection
            self.r.ping()
            logger.info("Redis connection established successfully")
        except redis.RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage (not recommended for production)
            self.r = None

    def check_and_set(self, key: str, ttl: Optional[int] = None) -> bool:
        """
        Check if key exists and set it if it doesn't.

        Args:
            key: Unique identifier for the side effect (e.g. "project:<deal id>")
            ttl: Time to live in seconds (default: IDEMPOTENCY_TTL)

        Returns:
            True if key was set (first claim), False if already claimed
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return False

        ttl = ttl or settings.idempotency_ttl

        try:
            if self.r:
                result = self.r.set(
                    name=f"idem:{key}",
                    value=int(time.time()),
                    ex=ttl,
                    nx=True
                )
                return result is True

            now = time.time()
            expires = self._memory_keys.get(key)
            if expires is not None and expires > now:
                return False
            self._memory_keys[key] = now + ttl
            return True

        except redis.RedisError as e:
            logger.error(f"Idempotency check failed: {e}")
            # fail open; the project lookup still fences duplicates
            return True

    def clear_key(self, key: str) -> bool:
        """Release a claim so a failed side effect can be retried."""
        try:
            if self.r:
                return bool(self.r.delete(f"idem:{key}"))
            return self._memory_keys.pop(key, None) is not None
        except redis.RedisError as e:
            logger.error(f"Failed to clear key: {e}")
            return False
