"""
TruffleHog Scanner - Secret detection in remote Git repositories.

Wraps the ``trufflehog`` binary: picks the subcommand for the repository
host, runs it through the ProcessRunner with a deadline, streams stdout into
the ResultParser, and turns every way the process can fail into a typed
LeakGuard error right here, so nothing downstream has to inspect messages.

Command shapes:
    trufflehog github --repo=<url> --json --no-verification --concurrency=1
    trufflehog gitlab --repo=<url> --json --no-verification --concurrency=1
    trufflehog git <url> --json --no-verification --concurrency=1
"""

import shutil
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ..errors import (
    LeakGuardError,
    OutputLimitExceededError,
    PermissionDeniedError,
    RepositoryNotFoundError,
    ScannerUnavailableError,
    ScanProcessError,
    ScanTimeoutError,
)
from .models import Finding, ScanTarget, host_matches
from .process_runner import (
    ProcessOutputLimitError,
    ProcessRunner,
    ProcessRunnerError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from .result_parser import ResultParser


STDERR_EXCERPT_CHARS = 1000

# Host -> TruffleHog subcommand taking --repo=<url>; anything else uses `git <url>`
REPO_SUBCOMMANDS = {
    "github.com": "github",
    "gitlab.com": "gitlab",
}

# Lowercased stderr fragments TruffleHog/git print for these failures
NOT_FOUND_MARKERS = (
    "repository not found",
    "404 not found",
    "does not exist",
)
PERMISSION_MARKERS = (
    "permission denied",
    "access denied",
    "authentication failed",
    "403 forbidden",
)


@dataclass
class ScannerRun:
    """Findings and process facts from one successful scanner run"""
    findings: List[Finding] = field(default_factory=list)
    malformed_lines: int = 0
    duration_ms: int = 0
    stderr_excerpt: str = ""


class TruffleHogScanner:
    """
    TruffleHog integration.

    Example:
        >>> scanner = TruffleHogScanner(binary="trufflehog", timeout=300)
        >>> if await scanner.is_available():
        ...     run = await scanner.scan(target)
    """

    FLAGS = ["--json", "--no-verification", "--concurrency=1"]

    def __init__(
        self,
        binary: str = "trufflehog",
        runner: Optional[ProcessRunner] = None,
        timeout: float = 300.0,
        version_timeout: float = 10.0,
    ):
        """
        Initialize the scanner.

        Args:
            binary: Path to the trufflehog binary (default: "trufflehog" in PATH)
            runner: Shared ProcessRunner (a default one is created if None)
            timeout: Wall-clock deadline for each scan in seconds
            version_timeout: Deadline for the ``--version`` availability check
        """
        self.binary = binary
        self.runner = runner or ProcessRunner()
        self.timeout = timeout
        self.version_timeout = version_timeout

        self.logger = structlog.get_logger(__name__, scanner="trufflehog")

    def build_command(self, target: ScanTarget) -> List[str]:
        """
        Build the argument vector for ``target``.

        The URL is always a single argv element; ScanTarget has already
        rejected values that could be read as options.
        """
        host = target.host
        for domain, subcommand in REPO_SUBCOMMANDS.items():
            if host_matches(host, domain):
                return [self.binary, subcommand, f"--repo={target.repository_url}", *self.FLAGS]

        return [self.binary, "git", target.repository_url, *self.FLAGS]

    async def version(self) -> Optional[str]:
        """
        Check the binary with ``--version``.

        Returns:
            Version output, or None if the scanner cannot be run
        """
        if shutil.which(self.binary) is None:
            self.logger.warning(
                "trufflehog_not_found",
                path=self.binary,
                message="Install from https://github.com/trufflesecurity/trufflehog",
            )
            return None

        try:
            result = await self.runner.run([self.binary, "--version"], timeout=self.version_timeout)
        except ProcessRunnerError as e:
            self.logger.error("trufflehog_version_check_failed", path=self.binary, error=str(e))
            return None

        if result.exit_code != 0:
            self.logger.error(
                "trufflehog_version_check_failed",
                path=self.binary,
                exit_code=result.exit_code,
            )
            return None

        # Older releases print the version on stderr
        return (result.stdout or result.stderr).strip()

    async def is_available(self) -> bool:
        """Lightweight availability check, independent of any scan"""
        return await self.version() is not None

    async def scan(self, target: ScanTarget) -> ScannerRun:
        """
        Scan one repository.

        Args:
            target: Repository to scan

        Returns:
            ScannerRun with the decoded findings

        Raises:
            ScannerUnavailableError: If the binary could not be started
            ScanTimeoutError: If the process was killed at the deadline
            OutputLimitExceededError: If the process printed too much
            RepositoryNotFoundError: If the repository does not exist
            PermissionDeniedError: If the repository refused access
            ScanProcessError: For any other nonzero exit
        """
        argv = self.build_command(target)
        parser = ResultParser()

        self.logger.info(
            "trufflehog_scan_started",
            repository_url=target.repository_url,
            subcommand=argv[1],
        )

        try:
            result = await self.runner.run(argv, timeout=self.timeout, on_stdout_line=parser.feed)
        except ProcessTimeoutError as e:
            raise ScanTimeoutError(detail={"timeout": e.timeout}) from e
        except ProcessOutputLimitError as e:
            raise OutputLimitExceededError(detail={"limit_bytes": e.limit}) from e
        except ProcessSpawnError as e:
            if e.missing:
                raise ScannerUnavailableError(detail={"reason": str(e)}) from e
            raise ScanProcessError(exit_code=None, stderr_excerpt=str(e)) from e

        stderr_excerpt = result.stderr[:STDERR_EXCERPT_CHARS]
        if result.exit_code != 0:
            raise self.classify_failure(result.exit_code, result.stderr)

        if stderr_excerpt:
            self.logger.debug("trufflehog_stderr", stderr=stderr_excerpt)

        outcome = parser.outcome()
        self.logger.info(
            "trufflehog_scan_complete",
            repository_url=target.repository_url,
            findings=len(outcome.findings),
            malformed_lines=outcome.malformed_lines,
            duration_ms=result.duration_ms,
        )

        return ScannerRun(
            findings=outcome.findings,
            malformed_lines=outcome.malformed_lines,
            duration_ms=result.duration_ms,
            stderr_excerpt=stderr_excerpt,
        )

    def classify_failure(self, exit_code: int, stderr: str) -> LeakGuardError:
        """
        Map a nonzero exit to the error the user can act on.

        This is the only place scanner output text is inspected.
        """
        excerpt = stderr[:STDERR_EXCERPT_CHARS]
        lowered = stderr.lower()

        self.logger.error("trufflehog_exit_nonzero", exit_code=exit_code, stderr=excerpt)

        if any(marker in lowered for marker in NOT_FOUND_MARKERS):
            return RepositoryNotFoundError(detail={"exit_code": exit_code, "stderr": excerpt})
        if any(marker in lowered for marker in PERMISSION_MARKERS):
            return PermissionDeniedError(detail={"exit_code": exit_code, "stderr": excerpt})
        return ScanProcessError(exit_code=exit_code, stderr_excerpt=excerpt)

    def __repr__(self) -> str:
        return f"TruffleHogScanner(binary={self.binary}, timeout={self.timeout})"
