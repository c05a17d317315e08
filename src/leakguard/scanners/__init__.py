"""
Scanner module - running TruffleHog and decoding what it prints.

- ProcessRunner: bounded, deadline-enforced subprocess execution
- ResultParser: tolerant JSON-lines decoding into Finding objects
- TruffleHogScanner: command building, availability check, error mapping
"""

from .models import (
    Finding,
    Provider,
    ScanResult,
    ScanTarget,
)
from .process_runner import (
    ProcessOutputLimitError,
    ProcessResult,
    ProcessRunner,
    ProcessRunnerError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from .result_parser import ParseOutcome, ResultParser
from .trufflehog import ScannerRun, TruffleHogScanner


__all__ = [
    # Data model
    "Finding",
    "Provider",
    "ScanResult",
    "ScanTarget",
    # Process execution
    "ProcessRunner",
    "ProcessResult",
    "ProcessRunnerError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProcessOutputLimitError",
    # Output parsing
    "ResultParser",
    "ParseOutcome",
    # TruffleHog
    "TruffleHogScanner",
    "ScannerRun",
]
