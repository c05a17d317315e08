"""
Scan Cache - Redis-backed deduplication of scan results.

Keys are ``scan:{provider}:{fingerprint(repository_url)}`` and hold the JSON
of a ScanResult with a per-entry TTL. The cache is strictly best-effort: a
Redis outage or a corrupt entry turns into a cache miss or a skipped write,
never into a failed request, so the service degrades to "always scan fresh".

Each operation exists in two forms:
- ``get`` / ``set``: tolerant, absorb backend errors (used on the request path)
- ``fetch`` / ``store``: strict, raise CacheReadError / CacheWriteError (used
  where a caller wants to observe the failure, e.g. background writes)
"""

import hashlib
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..errors import CacheReadError, CacheWriteError
from ..scanners.models import ScanResult, ScanTarget


KEY_PREFIX = "scan"
DEFAULT_TTL = 86400.0  # 24 hours


def fingerprint(repository_url: str) -> str:
    """Stable SHA-256 digest of a repository URL"""
    return hashlib.sha256(repository_url.encode("utf-8")).hexdigest()


def cache_key(target: ScanTarget) -> str:
    return f"{KEY_PREFIX}:{target.provider.value}:{fingerprint(target.repository_url)}"


class ScanCache:
    """
    Cache-first lookup for scan results.

    Example:
        >>> cache = ScanCache(redis, default_ttl=3600)
        >>> await cache.set(target, result)
        >>> await cache.get(target) == result
        True
        >>> await cache.invalidate(target.repository_url)
        1
    """

    def __init__(self, redis: Redis, default_ttl: float = DEFAULT_TTL):
        """
        Initialize the cache.

        Args:
            redis: Client created with ``decode_responses=True``
            default_ttl: Entry lifetime in seconds when ``set`` gets no ttl
        """
        self.redis = redis
        self.default_ttl = default_ttl

        # Statistics
        self.hits = 0
        self.misses = 0
        self.errors = 0

        self.logger = structlog.get_logger(__name__)

    async def fetch(self, target: ScanTarget) -> Optional[ScanResult]:
        """
        Read a cached result.

        Returns:
            The cached ScanResult, or None if there is no entry

        Raises:
            CacheReadError: If Redis failed or the entry could not be decoded
        """
        key = cache_key(target)
        try:
            data = await self.redis.get(key)
        except RedisError as e:
            raise CacheReadError(detail={"key": key, "reason": str(e)}) from e

        if data is None:
            return None

        try:
            return ScanResult.model_validate_json(data)
        except ValidationError as e:
            raise CacheReadError(
                "Cached scan result is corrupt",
                detail={"key": key, "reason": f"{e.error_count()} validation errors"},
            ) from e

    async def get(self, target: ScanTarget) -> Optional[ScanResult]:
        """Read a cached result; any failure is logged and treated as a miss"""
        try:
            result = await self.fetch(target)
        except CacheReadError as e:
            self.errors += 1
            self.misses += 1
            self.logger.error(
                "cache_read_failed",
                repository_url=target.repository_url,
                provider=target.provider.value,
                **e.detail,
            )
            return None

        if result is None:
            self.misses += 1
            self.logger.debug(
                "cache_miss",
                repository_url=target.repository_url,
                provider=target.provider.value,
            )
            return None

        self.hits += 1
        self.logger.debug(
            "cache_hit",
            repository_url=target.repository_url,
            provider=target.provider.value,
            findings=result.total_count,
        )
        return result

    async def store(self, target: ScanTarget, result: ScanResult, ttl: Optional[float] = None) -> None:
        """
        Write a result with a TTL.

        Args:
            target: Cache key source
            result: Result to store
            ttl: Lifetime in seconds (default_ttl if None); fractions are kept
                to the millisecond

        Raises:
            CacheWriteError: If Redis rejected the write
        """
        key = cache_key(target)
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        payload = result.model_dump_json()
        try:
            await self.redis.set(key, payload, px=max(1, int(ttl * 1000)))
        except RedisError as e:
            raise CacheWriteError(detail={"key": key, "reason": str(e)}) from e

        self.logger.debug(
            "cache_stored",
            repository_url=target.repository_url,
            provider=target.provider.value,
            ttl=ttl,
            size=len(payload),
        )

    async def set(self, target: ScanTarget, result: ScanResult, ttl: Optional[float] = None) -> bool:
        """Write a result; returns False (and logs) instead of raising"""
        try:
            await self.store(target, result, ttl)
        except CacheWriteError as e:
            self.errors += 1
            self.logger.error(
                "cache_write_failed",
                repository_url=target.repository_url,
                provider=target.provider.value,
                **e.detail,
            )
            return False
        return True

    async def delete(self, target: ScanTarget) -> bool:
        """Remove one entry; True if something was deleted"""
        key = cache_key(target)
        try:
            deleted = await self.redis.delete(key)
        except RedisError as e:
            self.errors += 1
            self.logger.error("cache_delete_failed", key=key, error=str(e))
            return False

        self.logger.debug("cache_deleted", key=key, deleted=deleted > 0)
        return deleted > 0

    async def invalidate(self, repository_url: str) -> int:
        """
        Remove the entries of a repository under every provider.

        Returns:
            Number of keys removed (0 when nothing matched or Redis failed)
        """
        pattern = f"{KEY_PREFIX}:*:{fingerprint(repository_url.strip())}"
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
            if not keys:
                return 0
            deleted = await self.redis.delete(*keys)
        except RedisError as e:
            self.errors += 1
            self.logger.error("cache_invalidate_failed", repository_url=repository_url, error=str(e))
            return 0

        self.logger.info("cache_invalidated", repository_url=repository_url, deleted_keys=deleted)
        return deleted

    async def exists(self, target: ScanTarget) -> bool:
        try:
            return await self.redis.exists(cache_key(target)) == 1
        except RedisError as e:
            self.logger.error("cache_exists_failed", error=str(e))
            return False

    async def ttl(self, target: ScanTarget) -> float:
        """
        Seconds until the entry expires.

        Returns:
            Remaining lifetime, -1 for no expiry, -2 when absent or on error
        """
        try:
            remaining = await self.redis.pttl(cache_key(target))
        except RedisError as e:
            self.logger.error("cache_ttl_failed", error=str(e))
            return -2
        return remaining / 1000 if remaining >= 0 else remaining

    async def clear(self) -> int:
        """Remove every scan entry; returns the number of keys deleted"""
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{KEY_PREFIX}:*", count=500)]
            if not keys:
                return 0
            deleted = await self.redis.delete(*keys)
        except RedisError as e:
            self.errors += 1
            self.logger.error("cache_clear_failed", error=str(e))
            return 0

        self.logger.info("cache_cleared", deleted_keys=deleted)
        return deleted

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            self.logger.error("redis_health_check_failed", error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """
        Cache statistics for the health endpoint.

        Returns:
            Dictionary with scan key count, Redis memory, server hit rate and
            this process's hit/miss/error counters
        """
        stats: Dict[str, Any] = {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "scan_keys": 0,
            "memory_used": "unknown",
            "hit_rate": None,
        }
        try:
            stats["scan_keys"] = len(
                [key async for key in self.redis.scan_iter(match=f"{KEY_PREFIX}:*", count=500)]
            )
            memory = await self.redis.info("memory")
            server = await self.redis.info("stats")
        except RedisError as e:
            self.logger.error("cache_stats_failed", error=str(e))
            return stats

        stats["memory_used"] = memory.get("used_memory_human", "unknown")
        hits = int(server.get("keyspace_hits", 0) or 0)
        misses = int(server.get("keyspace_misses", 0) or 0)
        if hits + misses:
            stats["hit_rate"] = round(hits / (hits + misses) * 100, 2)
        return stats

    def __repr__(self) -> str:
        return f"ScanCache(hits={self.hits}, misses={self.misses}, errors={self.errors})"
