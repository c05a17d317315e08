"""
Core module - Central orchestration and coordination.

This package contains the components that decide whether, when and how a
scan runs: the orchestrator, the concurrency gate, the rate limiters and
the background task tracker.
"""

from .background import BackgroundTasks
from .concurrency import ConcurrencyGate, Permit
from .config import Settings, load_settings
from .orchestrator import HealthReport, ScanOrchestrator, ScanOutcome, ScanState, ScanTask
from .rate_limiter import (
    RateLimitConfig,
    RateLimitDecision,
    SlidingWindowRateLimiter,
    build_rate_limiters,
)
from .service import LeakGuardService


__all__ = [
    # Orchestration
    "ScanOrchestrator",
    "ScanOutcome",
    "ScanState",
    "ScanTask",
    "HealthReport",
    "BackgroundTasks",
    # Admission control
    "ConcurrencyGate",
    "Permit",
    "SlidingWindowRateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    "build_rate_limiters",
    # Wiring
    "Settings",
    "load_settings",
    "LeakGuardService",
]
