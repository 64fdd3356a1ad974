"""
Short-lived cache for resolved sources, keyed by normalized domain.

Uses Redis when ``REDIS_URL`` is configured and reachable, otherwise falls
back to process memory with the same TTL semantics.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

import redis.asyncio as redis

from .config import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "trustnet:domain:"


class DomainCache:
    """Redis or in-memory TTL cache with automatic fallback"""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        ttl: int | None = None,
        prefix: str = KEY_PREFIX,
        clock=time.monotonic,
    ):
        settings = get_settings()
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self.ttl = ttl if ttl is not None else settings.resolver_cache_ttl
        self.prefix = prefix
        self.redis_client: Optional[redis.Redis] = None
        self.memory_storage: dict[str, tuple[float, dict[str, Any]]] = {}
        self.use_redis = False
        self._clock = clock

    async def connect(self) -> None:
        """Attempt Redis connection, fallback to memory"""
        if not self.redis_url:
            logger.info("No REDIS_URL configured, using in-memory domain cache")
            return
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self.redis_client.ping()
            self.use_redis = True
            logger.info("Redis connected successfully")
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis connection failed: {e}. Using in-memory domain cache")
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()

    async def get(self, domain: str) -> Optional[dict[str, Any]]:
        if self.use_redis and self.redis_client:
            try:
                data = await self.redis_client.get(self.prefix + domain)
                return json.loads(data) if data else None
            except redis.RedisError as e:
                logger.error(f"Redis get error: {e}")

        entry = self.memory_storage.get(domain)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self.memory_storage[domain]
            return None
        return value

    async def set(self, domain: str, value: dict[str, Any], ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self.ttl
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.set(self.prefix + domain, json.dumps(value, default=str), ex=ttl)
                return
            except redis.RedisError as e:
                logger.error(f"Redis set error: {e}")

        self.memory_storage[domain] = (self._clock() + ttl, value)

    async def delete(self, domain: str) -> None:
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.delete(self.prefix + domain)
                return
            except redis.RedisError as e:
                logger.error(f"Redis delete error: {e}")

        self.memory_storage.pop(domain, None)

    async def clear(self) -> None:
        if self.use_redis and self.redis_client:
            try:
                keys = [key async for key in self.redis_client.scan_iter(match=self.prefix + "*")]
                if keys:
                    await self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.error(f"Redis clear error: {e}")
        self.memory_storage.clear()

    def purge_expired(self) -> int:
        """Drop expired in-memory entries; Redis expires keys on its own."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self.memory_storage.items() if expires_at <= now]
        for key in expired:
            del self.memory_storage[key]
        return len(expired)

    def size(self) -> int:
        return len(self.memory_storage)
