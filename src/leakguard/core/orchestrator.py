"""
Scan Orchestrator - Central coordinator for one secret-scan request.

Ties the components together for each request:

    CACHE_CHECK --hit--> DONE
    CACHE_CHECK --miss--> GATE_ACQUIRE -> RUNNING -> PARSING -> STORING -> DONE

with FAILED reachable from the availability check and from RUNNING, and
REJECTED from GATE_ACQUIRE when every scan slot is taken. Each transition is
published to subscribed observers.

A successful scan is returned as soon as the result is built; writing it to
the cache and persisting the scan record run as background tasks whose
failures are reported on the background error channel instead of failing the
request.

Design Pattern: Facade + Observer
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from ..errors import (
    ConcurrencyExceededError,
    InvalidTargetError,
    LeakGuardError,
    ScannerUnavailableError,
    ScanNotFoundError,
)
from ..scanners.models import Provider, ScanResult, ScanTarget
from ..scanners.trufflehog import TruffleHogScanner
from ..storage.cache import ScanCache
from ..storage.repository import HistoryPage, HistoryQuery, ScanRecord, ScanRecordStore
from .background import BackgroundTasks
from .concurrency import ConcurrencyGate


class ScanState(Enum):
    """Per-request scan state"""
    CACHE_CHECK = "cache_check"
    GATE_ACQUIRE = "gate_acquire"
    RUNNING = "running"
    PARSING = "parsing"
    STORING = "storing"
    DONE = "done"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATES = (ScanState.DONE, ScanState.FAILED, ScanState.REJECTED)


@dataclass
class ScanTask:
    """Tracks one scan request through its states"""
    task_id: str
    target: ScanTarget
    state: ScanState = ScanState.CACHE_CHECK
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class ScanOutcome:
    """What a caller gets back from ``ScanOrchestrator.scan``"""
    result: ScanResult
    cached: bool
    task: ScanTask


@dataclass
class HealthReport:
    status: str  # healthy, degraded or unhealthy
    services: Dict[str, bool]
    scanner_version: Optional[str] = None
    concurrency: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "services": {
                name: "up" if up else "down" for name, up in self.services.items()
            },
            "scanner_version": self.scanner_version,
            "concurrency": self.concurrency,
            "timestamp": self.checked_at.isoformat(),
        }


Observer = Callable[[str, Dict[str, Any]], None]


class ScanOrchestrator:
    """
    Cache-first, gate-bounded scan coordinator.

    Responsibilities:
    1. Serve cached results without touching the scanner
    2. Check the scanner and hold a concurrency permit around each run
    3. Schedule the cache write and record persistence off the request path
    4. Answer history, lookup, invalidation and health queries

    Example:
        >>> orchestrator = ScanOrchestrator(scanner, gate, cache, store)
        >>> outcome = await orchestrator.scan(ScanTarget(repository_url=url))
        >>> outcome.cached, outcome.result.total_count
        (False, 2)
    """

    def __init__(
        self,
        scanner: TruffleHogScanner,
        gate: ConcurrencyGate,
        cache: ScanCache,
        store: ScanRecordStore,
        background: Optional[BackgroundTasks] = None,
        cache_ttl: Optional[float] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            scanner: TruffleHog adapter
            gate: Concurrency gate shared by every request
            cache: Result cache
            store: Scan record store
            background: Background task tracker (a new one if None)
            cache_ttl: TTL for new cache entries (the cache default if None)
        """
        self.scanner = scanner
        self.gate = gate
        self.cache = cache
        self.store = store
        self.background = background or BackgroundTasks()
        self.cache_ttl = cache_ttl

        # State tracking (in-flight requests only)
        self.tasks: Dict[str, ScanTask] = {}

        # Statistics
        self.completed = 0
        self.cache_hits = 0
        self.failed = 0
        self.rejected = 0

        self.logger = structlog.get_logger(__name__)

        # Observer pattern - callbacks
        self.observers: List[Observer] = []

    def subscribe(self, observer: Observer):
        """
        Subscribe to scan state changes (Observer pattern).

        Args:
            observer: Called with (event, data)
        """
        self.observers.append(observer)
        self.logger.info("observer_subscribed", observer=getattr(observer, "__name__", repr(observer)))

    def _notify_observers(self, event: str, data: Dict[str, Any]):
        """Notify all observers of an event"""
        for observer in self.observers:
            try:
                observer(event, data)
            except Exception as e:
                self.logger.error(
                    "observer_error",
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=str(e),
                )

    def _transition(self, task: ScanTask, state: ScanState, error: Optional[str] = None):
        task.state = state
        if state in TERMINAL_STATES:
            task.completed_at = datetime.now(timezone.utc)
            task.error = error
            self.tasks.pop(task.task_id, None)

        self._notify_observers(
            "scan_state_changed",
            {
                "task_id": task.task_id,
                "state": state.value,
                "repository_url": task.target.repository_url,
                "error": error,
            },
        )

    @staticmethod
    def build_target(repository_url: str, provider: Optional[str] = None) -> ScanTarget:
        """
        Validate user input into a ScanTarget.

        Args:
            repository_url: URL as received from the client
            provider: Provider name; detected from the host if None

        Raises:
            InvalidTargetError: If the URL or provider is unusable
        """
        try:
            resolved = Provider(provider) if provider else Provider.detect(repository_url.strip())
            return ScanTarget(repository_url=repository_url, provider=resolved)
        except ValidationError as e:
            reasons = [err["msg"] for err in e.errors()]
            raise InvalidTargetError(
                f"Invalid repository URL: {'; '.join(reasons)}",
                detail={"reasons": reasons},
            ) from e
        except ValueError as e:
            raise InvalidTargetError(f"Unknown provider: {provider}") from e

    async def scan(self, target: ScanTarget) -> ScanOutcome:
        """
        Scan a repository, serving a cached result when one exists.

        Whatever is raised, the request ends in a terminal state and leaves
        ``tasks``; a cancelled or unexpectedly failing scan counts as failed.

        Returns:
            ScanOutcome with ``cached=True`` for a cache hit

        Raises:
            ScannerUnavailableError: If the scanner cannot be run
            ConcurrencyExceededError: If every scan slot is taken
            ScanTimeoutError, ScanProcessError, OutputLimitExceededError,
            RepositoryNotFoundError, PermissionDeniedError: From the scanner
        """
        task = ScanTask(task_id=uuid.uuid4().hex, target=target)
        self.tasks[task.task_id] = task
        log = self.logger.bind(
            task_id=task.task_id,
            repository_url=target.repository_url,
            provider=target.provider.value,
        )

        try:
            return await self._run(task, log)
        except BaseException as e:
            if task.state not in TERMINAL_STATES:
                self.failed += 1
                if isinstance(e, asyncio.CancelledError):
                    log.warning("scan_cancelled", state=task.state.value)
                    self._transition(task, ScanState.FAILED, error="cancelled")
                else:
                    log.error(
                        "scan_failed_unexpectedly",
                        state=task.state.value,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    self._transition(task, ScanState.FAILED, error=LeakGuardError.kind)
            raise

    async def _run(self, task: ScanTask, log) -> ScanOutcome:
        """State machine body of ``scan``"""
        target = task.target

        self._transition(task, ScanState.CACHE_CHECK)
        cached = await self.cache.get(target)
        if cached is not None:
            self.cache_hits += 1
            log.info("scan_served_from_cache", findings=cached.total_count)
            self._transition(task, ScanState.DONE)
            return ScanOutcome(result=cached, cached=True, task=task)

        if not await self.scanner.is_available():
            self.failed += 1
            log.error("scanner_unavailable")
            self._transition(task, ScanState.FAILED, error=ScannerUnavailableError.kind)
            raise ScannerUnavailableError()

        self._transition(task, ScanState.GATE_ACQUIRE)
        try:
            permit = self.gate.acquire()
        except ConcurrencyExceededError:
            self.rejected += 1
            self._transition(task, ScanState.REJECTED, error=ConcurrencyExceededError.kind)
            raise

        try:
            self._transition(task, ScanState.RUNNING)
            log.info("scan_started", permit_id=permit.permit_id)
            try:
                run = await self.scanner.scan(target)
            except LeakGuardError as e:
                self.failed += 1
                log.error("scan_failed", error_kind=e.kind, error=e.message)
                self._transition(task, ScanState.FAILED, error=e.kind)
                raise
        finally:
            self.gate.release(permit)

        self._transition(task, ScanState.PARSING)
        result = ScanResult.build(target, run.findings, run.duration_ms)

        self._transition(task, ScanState.STORING)
        self.background.spawn(
            self.cache.store(target, result, self.cache_ttl),
            name=f"cache_store:{task.task_id}",
        )
        self.background.spawn(
            self.store.create_record(result),
            name=f"record_create:{task.task_id}",
        )

        self.completed += 1
        log.info(
            "scan_complete",
            findings=result.total_count,
            verified=result.verified_count,
            malformed_lines=run.malformed_lines,
            duration_ms=result.duration_ms,
        )
        self._transition(task, ScanState.DONE)
        return ScanOutcome(result=result, cached=False, task=task)

    async def invalidate_repository(self, repository_url: str) -> int:
        """Drop every cached result for a repository; returns keys removed"""
        deleted = await self.cache.invalidate(repository_url)
        self._notify_observers(
            "cache_invalidated",
            {"repository_url": repository_url, "deleted_keys": deleted},
        )
        return deleted

    async def get_scan(self, record_id: str) -> ScanRecord:
        """
        Raises:
            ScanNotFoundError: If no record has this id
        """
        record = await self.store.get(record_id)
        if record is None:
            raise ScanNotFoundError(detail={"id": record_id})
        return record

    async def history(self, query: HistoryQuery) -> HistoryPage:
        return await self.store.history(query)

    async def delete_scan(self, record_id: str) -> bool:
        """
        Delete a scan record and evict its cached result.

        Raises:
            ScanNotFoundError: If no record has this id
        """
        record = await self.get_scan(record_id)
        deleted = await self.store.delete(record_id)
        if not deleted:
            raise ScanNotFoundError(detail={"id": record_id})

        target = ScanTarget(repository_url=record.repository_url, provider=record.provider)
        await self.cache.delete(target)

        self.logger.info("scan_deleted", id=record_id, repository_url=record.repository_url)
        return True

    async def health(self) -> HealthReport:
        """
        Check scanner, cache and record store together.

        ``healthy`` when all three are up, ``degraded`` when two are,
        ``unhealthy`` otherwise.
        """
        version, cache_up, store_up = await asyncio.gather(
            self.scanner.version(),
            self.cache.health_check(),
            self.store.health_check(),
        )
        services = {
            "scanner": version is not None,
            "cache": cache_up,
            "store": store_up,
        }

        up = sum(services.values())
        if up == len(services):
            status = "healthy"
        elif up == len(services) - 1:
            status = "degraded"
        else:
            status = "unhealthy"

        if status != "healthy":
            self.logger.warning("health_check_degraded", status=status, services=services)

        return HealthReport(
            status=status,
            services=services,
            scanner_version=version,
            concurrency=self.gate.get_stats(),
        )

    async def stats(self) -> Dict[str, Any]:
        return {
            "scans": {
                "completed": self.completed,
                "cache_hits": self.cache_hits,
                "failed": self.failed,
                "rejected": self.rejected,
                "in_flight": len(self.tasks),
            },
            "concurrency": self.gate.get_stats(),
            "cache": await self.cache.get_stats(),
            "background": {
                "pending": self.background.pending,
                "errors": len(self.background.errors),
            },
        }

    async def drain(self):
        """Wait for pending cache writes and record persistence"""
        await self.background.drain()

    def get_status(self) -> Dict[str, Any]:
        """
        Get current orchestrator status.

        Returns:
            Status dictionary
        """
        return {
            "in_flight": {
                task_id: {
                    "repository_url": task.target.repository_url,
                    "state": task.state.value,
                }
                for task_id, task in self.tasks.items()
            },
            "background_pending": self.background.pending,
            "concurrency": self.gate.get_stats(),
        }
