"""
Error taxonomy shared by every LeakGuard component.

Each error carries a stable machine-readable ``kind``, the HTTP status the API
answers with, and a human message. Diagnostic detail (stderr excerpts, exit
codes) is kept separately and only rendered when diagnostic mode is on.

Errors marked *absorbed* never reach a caller: the component that raises them
also catches them and degrades (cache miss, fail-open admission, dropped line).
"""

from typing import Any, Dict, Optional


class LeakGuardError(Exception):
    """Base exception for all LeakGuard errors"""

    kind = "internal_error"
    status = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, detail: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(self.message)

    def to_dict(self, diagnostic: bool = False) -> Dict[str, Any]:
        """
        Render the error for a client.

        Args:
            diagnostic: Include internal detail (stderr, exit codes)

        Returns:
            Dictionary with ``code`` and ``message`` (and ``details``)
        """
        payload: Dict[str, Any] = {"code": self.kind, "message": self.message}
        if diagnostic and self.detail:
            payload["details"] = self.detail
        return payload


class InvalidTargetError(LeakGuardError):
    """Raised when a repository URL cannot be scanned safely"""

    kind = "invalid_target"
    status = 400
    default_message = "Invalid repository URL"


class InvalidRequestError(LeakGuardError):
    """Raised when a request body or query parameter is malformed"""

    kind = "validation_error"
    status = 400
    default_message = "Validation failed"


class ScannerUnavailableError(LeakGuardError):
    """Raised when the TruffleHog binary is missing or not runnable"""

    kind = "scanner_unavailable"
    status = 503
    default_message = "Secret scanner is not available. Please ensure it is properly installed."


class ConcurrencyExceededError(LeakGuardError):
    """Raised when every scan slot is taken (retriable by the user)"""

    kind = "concurrency_exceeded"
    status = 503
    default_message = "Maximum concurrent scans reached. Please try again later."


class ScanTimeoutError(LeakGuardError):
    """Raised when the scanner was killed for exceeding its deadline"""

    kind = "scan_timeout"
    status = 504
    default_message = "Scan timed out. Repository may be too large or network is slow."


class ScanProcessError(LeakGuardError):
    """Raised when the scanner exits with a nonzero code"""

    kind = "scan_process_failed"
    status = 502
    default_message = "Secret scanner failed while scanning the repository."

    def __init__(
        self,
        exit_code: Optional[int],
        stderr_excerpt: str = "",
        message: Optional[str] = None,
    ):
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt
        super().__init__(
            message,
            detail={"exit_code": exit_code, "stderr": stderr_excerpt},
        )


class OutputLimitExceededError(LeakGuardError):
    """Raised when the scanner produced more output than the buffer allows"""

    kind = "scan_output_too_large"
    status = 502
    default_message = "Scanner output exceeded the maximum buffer size."


class PermissionDeniedError(LeakGuardError):
    """Raised when the repository refuses access"""

    kind = "permission_denied"
    status = 403
    default_message = "Access denied to repository. Please check repository permissions."


class RepositoryNotFoundError(LeakGuardError):
    """Raised when the repository does not exist or is private"""

    kind = "repository_not_found"
    status = 404
    default_message = "Repository not found or is private."


class ScanNotFoundError(LeakGuardError):
    """Raised when a stored scan record does not exist"""

    kind = "scan_not_found"
    status = 404
    default_message = "Scan not found"


class RateLimitExceededError(LeakGuardError):
    """Raised when a client exhausted its sliding window"""

    kind = "rate_limit_exceeded"
    status = 429
    default_message = "Too many requests, please try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, detail={"retry_after": retry_after})


# Absorbed errors


class ParseLineError(LeakGuardError):
    """A single scanner output line could not be decoded (absorbed)"""

    kind = "parse_line_error"
    default_message = "Failed to parse scanner output line"

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(
            f"Line {line_number}: {reason}",
            detail={"line_number": line_number, "reason": reason},
        )


class CacheReadError(LeakGuardError):
    """Cache backend could not be read (absorbed as a miss)"""

    kind = "cache_read_error"
    default_message = "Failed to read scan result from cache"


class CacheWriteError(LeakGuardError):
    """Cache backend could not be written (absorbed, result not cached)"""

    kind = "cache_write_error"
    default_message = "Failed to write scan result to cache"


class RateLimiterBackendError(LeakGuardError):
    """Rate limit store failed (absorbed, request admitted)"""

    kind = "rate_limiter_backend_error"
    default_message = "Rate limiter backend unavailable"
