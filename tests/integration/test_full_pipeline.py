"""
Integration test for the full scanning pipeline.

Runs the real service wiring end-to-end:
1. Orchestrator (cache check, availability check, concurrency gate)
2. TruffleHogScanner + ProcessRunner against a fake ``trufflehog`` script
3. ScanCache and the scan record store on fakeredis

Run with: pytest tests/integration/test_full_pipeline.py -v
"""

import asyncio

import pytest

from leakguard.core.config import Settings
from leakguard.core.orchestrator import ScanOrchestrator
from leakguard.core.service import LeakGuardService
from leakguard.errors import ConcurrencyExceededError, ScannerUnavailableError, ScanTimeoutError
from leakguard.storage.repository import HistoryQuery


TEST_REPO = "https://github.com/octo/demo"


def make_service(redis, binary, timeout=10.0, max_concurrent=3) -> LeakGuardService:
    settings = Settings.model_validate(
        {
            "scanner": {
                "binary": str(binary),
                "timeout": timeout,
                "max_concurrent_scans": max_concurrent,
            },
            "cache": {"ttl": 60},
        }
    )
    return LeakGuardService(settings, redis)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_full_scanning_pipeline(redis, fake_trufflehog):
    """Scan, persist, then serve the second request from the cache"""
    service = make_service(redis, fake_trufflehog())
    orchestrator = service.orchestrator
    target = ScanOrchestrator.build_target(TEST_REPO)

    # Phase 1: fresh scan
    first = await orchestrator.scan(target)
    await orchestrator.drain()

    assert first.cached is False
    assert first.result.total_count == 3
    assert first.result.verified_count == 1
    assert first.result.summary()["by_detector"] == {"AWS": 1, "Github": 1, "Slack": 1}

    # Phase 2: persisted record
    page = await orchestrator.history(HistoryQuery(repository_url=TEST_REPO))
    assert page.total == 1
    assert page.data[0].result == first.result

    # Phase 3: cache hit, scanner no longer needed
    service.scanner.binary = "/nonexistent/trufflehog"
    second = await orchestrator.scan(target)

    assert second.cached is True
    assert second.result == first.result

    # Phase 4: invalidation sends the next request back to the scanner
    assert await orchestrator.invalidate_repository(TEST_REPO) == 1
    with pytest.raises(ScannerUnavailableError):
        await orchestrator.scan(target)

    stats = await orchestrator.stats()
    assert stats["scans"] == {
        "completed": 1,
        "cache_hits": 1,
        "failed": 1,
        "rejected": 0,
        "in_flight": 0,
    }
    assert service.gate.active == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_one_scan_over_capacity_is_rejected(redis, fake_trufflehog):
    """With three slots, the fourth simultaneous scan is turned away"""
    service = make_service(redis, fake_trufflehog(sleep=2), max_concurrent=3)
    orchestrator = service.orchestrator
    targets = [ScanOrchestrator.build_target(f"https://github.com/octo/repo{i}") for i in range(4)]

    results = await asyncio.gather(
        *(orchestrator.scan(t) for t in targets),
        return_exceptions=True,
    )
    await orchestrator.drain()

    rejected = [r for r in results if isinstance(r, ConcurrencyExceededError)]
    completed = [r for r in results if not isinstance(r, Exception)]
    assert len(rejected) == 1
    assert len(completed) == 3
    assert service.gate.active == 0
    assert service.gate.total_rejected == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_timeout_returns_the_permit(redis, fake_trufflehog):
    """A hung scan is killed and its slot becomes free again"""
    service = make_service(redis, fake_trufflehog(sleep=30), timeout=0.5, max_concurrent=1)
    target = ScanOrchestrator.build_target(TEST_REPO)

    with pytest.raises(ScanTimeoutError):
        await service.orchestrator.scan(target)

    assert service.gate.active == 0
    assert await service.cache.get(target) is None
    assert (await service.orchestrator.history(HistoryQuery())).total == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_health_with_fake_scanner(redis, fake_trufflehog):
    """Test health with fake scanner"""
    service = make_service(redis, fake_trufflehog())

    report = await service.orchestrator.health()

    assert report.status == "healthy"
    assert report.scanner_version == "trufflehog 3.63.0"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_health_without_scanner(redis, tmp_path):
    """Test health without scanner"""
    service = make_service(redis, tmp_path / "missing")

    report = await service.orchestrator.health()

    assert report.status == "degraded"
    assert report.to_dict()["services"]["scanner"] == "down"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
