"""
Scan data model - targets, findings and results.

These are the structures every other component passes around. They are
immutable pydantic models so that a ScanResult can be written to the cache
with ``model_dump_json()`` and read back with ``model_validate_json()``
without any hand-written (de)serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ALLOWED_SCHEMES = ("http", "https", "ssh", "git")

PROVIDER_DOMAINS = {
    "github.com": "github",
    "gitlab.com": "gitlab",
    "bitbucket.org": "bitbucket",
}


def host_matches(host: str, domain: str) -> bool:
    """True if ``host`` is ``domain`` or one of its subdomains"""
    return host == domain or host.endswith(f".{domain}")


class Provider(str, Enum):
    """Hosting providers a repository can be registered under"""
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    OTHER = "other"

    @classmethod
    def detect(cls, repository_url: str) -> "Provider":
        """Guess the provider from the URL host (OTHER when unknown)"""
        host = (urlparse(repository_url).hostname or "").lower()
        for domain, name in PROVIDER_DOMAINS.items():
            if host_matches(host, domain):
                return cls(name)
        return cls.OTHER


class ScanTarget(BaseModel):
    """
    A repository to scan.

    The URL ends up as a single argv element of the scanner process, so it is
    validated here: it must be an absolute URL with a known scheme and a host,
    and can never look like a command-line option.
    """

    model_config = ConfigDict(frozen=True)

    repository_url: str
    provider: Provider = Provider.OTHER

    @field_validator("repository_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        if not value or value.startswith("-"):
            raise ValueError("repository URL must not be empty or start with '-'")
        if any(ch.isspace() for ch in value):
            raise ValueError("repository URL must not contain whitespace")

        parsed = urlparse(value)
        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            raise ValueError(
                f"repository URL scheme must be one of {', '.join(ALLOWED_SCHEMES)}"
            )
        if not parsed.hostname:
            raise ValueError("repository URL must include a host")
        return value

    @property
    def host(self) -> str:
        return (urlparse(self.repository_url).hostname or "").lower()


class Finding(BaseModel):
    """
    One secret detected by TruffleHog.

    Field names are the snake_case form of TruffleHog's JSON keys; use
    ``Finding.from_trufflehog()`` to build one from a raw output object.
    """

    model_config = ConfigDict(frozen=True)

    source_name: str = ""
    detector_name: str = ""
    decoder_name: str = ""
    verified: bool = False
    raw: str = ""
    raw_v2: str = ""
    redacted: str = ""
    extra_data: Dict[str, Any] = Field(default_factory=dict)

    # Source location and numeric identifiers
    source_id: Optional[int] = None
    source_type: Optional[int] = None
    detector_type: Optional[int] = None
    source_metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_trufflehog(cls, data: Dict[str, Any]) -> "Finding":
        """
        Build a Finding from one decoded TruffleHog JSON object.

        Null or missing fields fall back to the defaults (``verified=False``,
        empty strings, empty maps).

        Raises:
            pydantic.ValidationError: If a present field has an unusable type
        """
        fields = {
            "source_name": data.get("SourceName"),
            "detector_name": data.get("DetectorName"),
            "decoder_name": data.get("DecoderName"),
            "verified": data.get("Verified"),
            "raw": data.get("Raw"),
            "raw_v2": data.get("RawV2"),
            "redacted": data.get("Redacted"),
            "extra_data": data.get("ExtraData"),
            "source_id": data.get("SourceID"),
            "source_type": data.get("SourceType"),
            "detector_type": data.get("DetectorType"),
            "source_metadata": data.get("SourceMetadata"),
        }
        return cls.model_validate({k: v for k, v in fields.items() if v is not None})

    @property
    def git_metadata(self) -> Dict[str, Any]:
        data = self.source_metadata.get("Data") or {}
        git = data.get("Git") if isinstance(data, dict) else None
        return git if isinstance(git, dict) else {}

    @property
    def commit(self) -> Optional[str]:
        return self.git_metadata.get("commit")

    @property
    def file(self) -> Optional[str]:
        return self.git_metadata.get("file")

    @property
    def line(self) -> Optional[int]:
        return self.git_metadata.get("line")


class ScanResult(BaseModel):
    """
    Outcome of one completed scan.

    ``total_count`` and ``verified_count`` are checked against ``findings``
    on construction, so a result read back from the cache cannot disagree
    with itself.
    """

    model_config = ConfigDict(frozen=True)

    target: ScanTarget
    findings: List[Finding] = Field(default_factory=list)
    total_count: int = 0
    verified_count: int = 0
    duration_ms: int = 0
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_counts(self) -> "ScanResult":
        if self.total_count != len(self.findings):
            raise ValueError("total_count does not match the number of findings")
        verified = sum(1 for f in self.findings if f.verified)
        if self.verified_count != verified:
            raise ValueError("verified_count does not match verified findings")
        return self

    @classmethod
    def build(
        cls,
        target: ScanTarget,
        findings: Sequence[Finding],
        duration_ms: int,
        completed_at: Optional[datetime] = None,
    ) -> "ScanResult":
        """Create a result, deriving the counts from ``findings``"""
        return cls(
            target=target,
            findings=list(findings),
            total_count=len(findings),
            verified_count=sum(1 for f in findings if f.verified),
            duration_ms=duration_ms,
            completed_at=completed_at or datetime.now(timezone.utc),
        )

    def summary(self) -> Dict[str, Any]:
        """Counts grouped by detector, for logs and the CLI"""
        by_detector: Dict[str, int] = {}
        for finding in self.findings:
            name = finding.detector_name or "unknown"
            by_detector[name] = by_detector.get(name, 0) + 1
        return {
            "repository_url": self.target.repository_url,
            "provider": self.target.provider.value,
            "total": self.total_count,
            "verified": self.verified_count,
            "duration_ms": self.duration_ms,
            "by_detector": by_detector,
        }
