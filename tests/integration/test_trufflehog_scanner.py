"""
Integration tests for TruffleHogScanner with a fake ``trufflehog`` binary.

Run with: pytest tests/integration/test_trufflehog_scanner.py -v
"""

import json

import pytest

from leakguard.errors import (
    OutputLimitExceededError,
    PermissionDeniedError,
    RepositoryNotFoundError,
    ScannerUnavailableError,
    ScanProcessError,
    ScanTimeoutError,
)
from leakguard.scanners.models import Provider, ScanTarget
from leakguard.scanners.process_runner import ProcessRunner
from leakguard.scanners.trufflehog import TruffleHogScanner


FLAGS = ["--json", "--no-verification", "--concurrency=1"]


def target(url: str, provider: Provider = Provider.OTHER) -> ScanTarget:
    return ScanTarget(repository_url=url, provider=provider)


class TestBuildCommand:
    """Test suite for argv construction"""

    def test_github_host(self):
        """Test github host"""
        argv = TruffleHogScanner().build_command(target("https://github.com/octo/demo"))

        assert argv == ["trufflehog", "github", "--repo=https://github.com/octo/demo", *FLAGS]

    def test_gitlab_subdomain(self):
        """Test gitlab subdomain"""
        argv = TruffleHogScanner().build_command(target("https://www.gitlab.com/grp/proj"))

        assert argv[:2] == ["trufflehog", "gitlab"]

    @pytest.mark.parametrize(
        "url",
        [
            "https://bitbucket.org/team/repo",
            "https://git.example.org/github.com/mirror",
            "https://github.com.evil.example/repo",
        ],
    )
    def test_other_hosts_use_git_mode(self, url):
        """Test other hosts use git mode"""
        argv = TruffleHogScanner(binary="/opt/th").build_command(target(url))

        assert argv == ["/opt/th", "git", url, *FLAGS]

    def test_provider_label_does_not_pick_subcommand(self):
        """The subcommand follows the URL host, not the claimed provider"""
        argv = TruffleHogScanner().build_command(
            target("https://git.example.org/repo", Provider.GITHUB)
        )

        assert argv[1] == "git"


@pytest.mark.integration
class TestTruffleHogScanner:
    """Test suite for scanning through the fake binary"""

    @pytest.mark.asyncio
    async def test_scan_returns_findings(self, fake_trufflehog):
        """Test scan returns findings"""
        binary = fake_trufflehog()
        scanner = TruffleHogScanner(binary=str(binary), timeout=10)

        run = await scanner.scan(target("https://github.com/octo/demo", Provider.GITHUB))

        assert len(run.findings) == 3
        assert sum(1 for f in run.findings if f.verified) == 1
        assert run.malformed_lines == 0

        argv = json.loads(binary.with_name("trufflehog.argv").read_text())
        assert argv[1:] == ["github", "--repo=https://github.com/octo/demo", *FLAGS]

    @pytest.mark.asyncio
    async def test_scan_tolerates_malformed_lines(self, fake_trufflehog, finding_lines):
        """Test scan tolerates malformed lines"""
        binary = fake_trufflehog(lines=[finding_lines[0], "{oops", "", finding_lines[1]])
        scanner = TruffleHogScanner(binary=str(binary), timeout=10)

        run = await scanner.scan(target("https://example.com/repo.git"))

        assert len(run.findings) == 2
        assert run.malformed_lines == 1

    @pytest.mark.asyncio
    async def test_scan_without_findings(self, fake_trufflehog):
        """Test scan without findings"""
        scanner = TruffleHogScanner(binary=str(fake_trufflehog(lines=[])), timeout=10)

        run = await scanner.scan(target("https://example.com/repo.git"))

        assert run.findings == []

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, fake_trufflehog):
        """Test nonzero exit"""
        binary = fake_trufflehog(lines=[], exit_code=2, stderr="fatal: unexpected disconnect")
        scanner = TruffleHogScanner(binary=str(binary), timeout=10)

        with pytest.raises(ScanProcessError) as exc_info:
            await scanner.scan(target("https://example.com/repo.git"))

        assert exc_info.value.exit_code == 2
        assert "unexpected disconnect" in exc_info.value.stderr_excerpt

    @pytest.mark.asyncio
    async def test_repository_not_found(self, fake_trufflehog):
        """Test repository not found"""
        binary = fake_trufflehog(lines=[], exit_code=1, stderr="remote: Repository not found.")
        scanner = TruffleHogScanner(binary=str(binary), timeout=10)

        with pytest.raises(RepositoryNotFoundError):
            await scanner.scan(target("https://github.com/octo/missing"))

    @pytest.mark.asyncio
    async def test_permission_denied(self, fake_trufflehog):
        """Test permission denied"""
        binary = fake_trufflehog(lines=[], exit_code=128, stderr="git@host: Permission denied (publickey).")
        scanner = TruffleHogScanner(binary=str(binary), timeout=10)

        with pytest.raises(PermissionDeniedError):
            await scanner.scan(target("ssh://git@example.com/private.git"))

    @pytest.mark.asyncio
    async def test_timeout(self, fake_trufflehog):
        """Test timeout"""
        scanner = TruffleHogScanner(binary=str(fake_trufflehog(sleep=30)), timeout=0.5)

        with pytest.raises(ScanTimeoutError):
            await scanner.scan(target("https://example.com/repo.git"))

    @pytest.mark.asyncio
    async def test_output_limit(self, fake_trufflehog, finding_lines):
        """Test output limit"""
        binary = fake_trufflehog(lines=finding_lines * 20)
        scanner = TruffleHogScanner(
            binary=str(binary),
            runner=ProcessRunner(max_buffer_bytes=2048),
            timeout=10,
        )

        with pytest.raises(OutputLimitExceededError):
            await scanner.scan(target("https://example.com/repo.git"))

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        """Test missing binary"""
        scanner = TruffleHogScanner(binary=str(tmp_path / "trufflehog"), timeout=10)

        with pytest.raises(ScannerUnavailableError):
            await scanner.scan(target("https://example.com/repo.git"))

    @pytest.mark.asyncio
    async def test_version_and_availability(self, fake_trufflehog):
        """Test version and availability come from --version"""
        scanner = TruffleHogScanner(binary=str(fake_trufflehog()))

        assert await scanner.version() == "trufflehog 3.63.0"
        assert await scanner.is_available() is True

    @pytest.mark.asyncio
    async def test_version_of_missing_binary(self, tmp_path):
        """Test a missing binary reports no version and is unavailable"""
        scanner = TruffleHogScanner(binary=str(tmp_path / "absent"))

        assert await scanner.version() is None
        assert await scanner.is_available() is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
