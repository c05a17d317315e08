"""
LeakGuard Service - Builds and owns every component for one process.

Both the HTTP server and the CLI go through this, so a scan started from the
command line uses exactly the same cache, gate and limits as one started over
the API.

Usage:
    service = LeakGuardService.from_settings(load_settings())
    outcome = await service.orchestrator.scan(target)
    await service.close()
"""

from typing import Any, Dict, Optional

import structlog
from redis.asyncio import Redis

from ..scanners.process_runner import ProcessRunner
from ..scanners.trufflehog import TruffleHogScanner
from ..storage.cache import ScanCache
from ..storage.redis_client import create_redis
from ..storage.repository import RedisScanRecordStore, ScanRecordStore
from .background import BackgroundTasks
from .concurrency import ConcurrencyGate
from .config import Settings
from .orchestrator import ScanOrchestrator
from .rate_limiter import SlidingWindowRateLimiter, build_rate_limiters


class LeakGuardService:
    """
    Component container.

    Example:
        >>> service = LeakGuardService.from_settings(settings)
        >>> service.gate.get_stats()["max_concurrent_scans"]
        3
    """

    def __init__(
        self,
        settings: Settings,
        redis: Redis,
        store: Optional[ScanRecordStore] = None,
        scanner: Optional[TruffleHogScanner] = None,
    ):
        """
        Wire the components together.

        Args:
            settings: Validated settings
            redis: Shared client for the cache, the limiters and the record store
            store: Record store (Redis-backed if None)
            scanner: Scanner adapter (built from ``settings.scanner`` if None)
        """
        self.settings = settings
        self.redis = redis

        self.scanner = scanner or TruffleHogScanner(
            binary=settings.scanner.binary,
            runner=ProcessRunner(max_buffer_bytes=settings.scanner.max_buffer_bytes),
            timeout=settings.scanner.timeout,
            version_timeout=settings.scanner.version_timeout,
        )
        self.gate = ConcurrencyGate(settings.scanner.max_concurrent_scans)
        self.cache = ScanCache(redis, default_ttl=settings.cache.ttl)
        self.store = store or RedisScanRecordStore(redis)
        self.background = BackgroundTasks()

        self.orchestrator = ScanOrchestrator(
            scanner=self.scanner,
            gate=self.gate,
            cache=self.cache,
            store=self.store,
            background=self.background,
            cache_ttl=settings.cache.ttl,
        )

        limiters = build_rate_limiters(redis, settings)
        self.general_limiter: SlidingWindowRateLimiter = limiters[0]
        self.scan_limiter: SlidingWindowRateLimiter = limiters[1]

        self.logger = structlog.get_logger(__name__)
        self.logger.info(
            "service_initialized",
            binary=settings.scanner.binary,
            max_concurrent_scans=settings.scanner.max_concurrent_scans,
            scan_timeout=settings.scanner.timeout,
            cache_ttl=settings.cache.ttl,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LeakGuardService":
        return cls(settings, create_redis(settings.cache.redis_url))

    async def close(self):
        """Finish background work, then drop the Redis connections"""
        await self.orchestrator.drain()
        await self.redis.aclose()
        self.logger.info("service_closed")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "scanner": repr(self.scanner),
            "gate": self.gate.get_stats(),
            "cache": repr(self.cache),
            "rate_limits": {
                "general": self.general_limiter.get_stats(),
                "scan": self.scan_limiter.get_stats(),
            },
        }
