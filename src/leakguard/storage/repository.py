"""
Scan record store - persistence of completed scans.

The orchestrator only needs ``create_record`` (called fire-and-forget after a
scan); the other operations back the history, lookup and delete endpoints.

RedisScanRecordStore layout:
    scan_record:{id}   JSON of a ScanRecord
    scan_records       sorted set of record ids scored by creation time (ms)
"""

import math
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..scanners.models import Provider, ScanResult


RECORD_PREFIX = "scan_record"
INDEX_KEY = "scan_records"


class ScanRecord(BaseModel):
    """A persisted scan"""

    model_config = ConfigDict(frozen=True)

    id: str
    repository_url: str
    provider: Provider
    result: ScanResult
    created_at: datetime


class HistoryQuery(BaseModel):
    """Filters and paging for scan history"""
    repository_url: Optional[str] = None
    provider: Optional[Provider] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: Literal["created_at", "repository_url"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class HistoryPage(BaseModel):
    data: List[ScanRecord]
    page: int
    limit: int
    total: int
    pages: int


class ScanRecordStore(ABC):
    """Persistence collaborator used by the orchestrator"""

    @abstractmethod
    async def create_record(self, result: ScanResult) -> ScanRecord:
        """Persist a completed scan"""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ScanRecord]:
        """Fetch one record, None if it does not exist"""

    @abstractmethod
    async def latest(self, repository_url: str, provider: Provider) -> Optional[ScanRecord]:
        """Most recent record for a repository"""

    @abstractmethod
    async def history(self, query: HistoryQuery) -> HistoryPage:
        """Filtered, sorted and paginated records"""

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Remove one record; True if it existed"""

    @abstractmethod
    async def health_check(self) -> bool:
        """True if the backing store is reachable"""


class RedisScanRecordStore(ScanRecordStore):
    """
    Scan records kept in the same Redis as the cache.

    Errors from Redis propagate; the orchestrator decides which calls are
    best-effort.
    """

    def __init__(self, redis: Redis):
        self.redis = redis
        self.logger = structlog.get_logger(__name__)

    @staticmethod
    def _key(record_id: str) -> str:
        return f"{RECORD_PREFIX}:{record_id}"

    async def create_record(self, result: ScanResult) -> ScanRecord:
        record = ScanRecord(
            id=uuid.uuid4().hex,
            repository_url=result.target.repository_url,
            provider=result.target.provider,
            result=result,
            created_at=datetime.now(timezone.utc),
        )
        score = int(record.created_at.timestamp() * 1000)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(record.id), record.model_dump_json())
            pipe.zadd(INDEX_KEY, {record.id: score})
            await pipe.execute()

        self.logger.info(
            "scan_record_created",
            id=record.id,
            repository_url=record.repository_url,
            provider=record.provider.value,
            findings=result.total_count,
        )
        return record

    async def get(self, record_id: str) -> Optional[ScanRecord]:
        data = await self.redis.get(self._key(record_id))
        if data is None:
            return None
        return ScanRecord.model_validate_json(data)

    async def _all_records(self) -> List[ScanRecord]:
        """Every record, oldest first (skips ids whose payload vanished)"""
        ids = await self.redis.zrange(INDEX_KEY, 0, -1)
        if not ids:
            return []

        payloads = await self.redis.mget([self._key(record_id) for record_id in ids])
        records = []
        for record_id, data in zip(ids, payloads):
            if data is None:
                continue
            try:
                records.append(ScanRecord.model_validate_json(data))
            except ValidationError:
                self.logger.warning("scan_record_corrupt", id=record_id)
        return records

    async def latest(self, repository_url: str, provider: Provider) -> Optional[ScanRecord]:
        page = await self.history(
            HistoryQuery(repository_url=repository_url, provider=provider, limit=1)
        )
        return page.data[0] if page.data else None

    async def history(self, query: HistoryQuery) -> HistoryPage:
        records = await self._all_records()

        if query.repository_url:
            records = [r for r in records if r.repository_url == query.repository_url]
        if query.provider:
            records = [r for r in records if r.provider == query.provider]

        reverse = query.sort_order == "desc"
        if query.sort_by == "repository_url":
            records.sort(key=lambda r: (r.repository_url, r.created_at), reverse=reverse)
        else:
            records.sort(key=lambda r: r.created_at, reverse=reverse)

        total = len(records)
        offset = (query.page - 1) * query.limit

        self.logger.debug("scan_history_retrieved", total=total, page=query.page, limit=query.limit)
        return HistoryPage(
            data=records[offset:offset + query.limit],
            page=query.page,
            limit=query.limit,
            total=total,
            pages=math.ceil(total / query.limit) if total else 0,
        )

    async def delete(self, record_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(record_id))
            pipe.zrem(INDEX_KEY, record_id)
            deleted, _ = await pipe.execute()

        if deleted:
            self.logger.info("scan_record_deleted", id=record_id)
        return deleted > 0

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            self.logger.error("record_store_health_check_failed", error=str(e))
            return False
