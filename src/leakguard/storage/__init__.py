"""
Storage module - Redis-backed cache and scan records.
"""

from .cache import ScanCache, cache_key, fingerprint
from .redis_client import create_redis
from .repository import (
    HistoryPage,
    HistoryQuery,
    RedisScanRecordStore,
    ScanRecord,
    ScanRecordStore,
)


__all__ = [
    "create_redis",
    # Cache
    "ScanCache",
    "cache_key",
    "fingerprint",
    # Scan records
    "ScanRecord",
    "ScanRecordStore",
    "RedisScanRecordStore",
    "HistoryQuery",
    "HistoryPage",
]
