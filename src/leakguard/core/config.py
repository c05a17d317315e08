"""
Settings - YAML file plus LEAKGUARD_* environment overrides.

Loading order:
1. Built-in defaults (the model field defaults below)
2. Optional YAML file (``--config`` on the CLI)
3. Environment variables, which always win

Example:
    >>> settings = load_settings("leakguard.yaml")
    >>> settings.scanner.max_concurrent_scans
    3
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field


class ScannerSettings(BaseModel):
    """TruffleHog process settings"""
    binary: str = "trufflehog"
    timeout: float = Field(default=300.0, gt=0)  # Wall-clock deadline per scan (seconds)
    version_timeout: float = Field(default=10.0, gt=0)
    max_concurrent_scans: int = Field(default=3, ge=1)
    max_buffer_bytes: int = Field(default=50 * 1024 * 1024, ge=1024)


class CacheSettings(BaseModel):
    """Redis connection and result TTL"""
    redis_url: str = "redis://localhost:6379/0"
    ttl: float = Field(default=86400.0, gt=0)  # Seconds


class WindowSettings(BaseModel):
    """One sliding window"""
    window_ms: int = Field(gt=0)
    max_requests: int = Field(ge=1)


class RateLimitSettings(BaseModel):
    """General endpoint limiter and the stricter scan limiter"""
    general: WindowSettings = Field(
        default_factory=lambda: WindowSettings(window_ms=15 * 60 * 1000, max_requests=100)
    )
    scan: WindowSettings = Field(
        default_factory=lambda: WindowSettings(window_ms=5 * 60 * 1000, max_requests=10)
    )


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    api_prefix: str = "/api/v1"
    diagnostic_errors: bool = False


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = False


class Settings(BaseModel):
    """Top-level LeakGuard settings"""
    scanner: ScannerSettings = Field(default_factory=ScannerSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Environment variable -> (section path, field)
ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "LEAKGUARD_TRUFFLEHOG_BINARY": (("scanner",), "binary"),
    "LEAKGUARD_SCAN_TIMEOUT": (("scanner",), "timeout"),
    "LEAKGUARD_MAX_CONCURRENT_SCANS": (("scanner",), "max_concurrent_scans"),
    "LEAKGUARD_MAX_BUFFER_BYTES": (("scanner",), "max_buffer_bytes"),
    "LEAKGUARD_REDIS_URL": (("cache",), "redis_url"),
    "LEAKGUARD_CACHE_TTL": (("cache",), "ttl"),
    "LEAKGUARD_RATE_LIMIT_WINDOW_MS": (("rate_limit", "general"), "window_ms"),
    "LEAKGUARD_RATE_LIMIT_MAX_REQUESTS": (("rate_limit", "general"), "max_requests"),
    "LEAKGUARD_SCAN_RATE_LIMIT_WINDOW_MS": (("rate_limit", "scan"), "window_ms"),
    "LEAKGUARD_SCAN_RATE_LIMIT_MAX_REQUESTS": (("rate_limit", "scan"), "max_requests"),
    "LEAKGUARD_HOST": (("server",), "host"),
    "LEAKGUARD_PORT": (("server",), "port"),
    "LEAKGUARD_DIAGNOSTIC_ERRORS": (("server",), "diagnostic_errors"),
    "LEAKGUARD_LOG_LEVEL": (("logging",), "level"),
    "LEAKGUARD_LOG_JSON": (("logging",), "json_logs"),
}


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` onto ``base``"""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        elif isinstance(current, dict) and value is None:
            # An empty YAML section keeps its defaults
            continue
        else:
            merged[key] = value
    return merged


def _apply_env(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    for name, (path, field) in ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        section = data
        for part in path:
            section = section.setdefault(part, {})
        # pydantic coerces the string to the field type
        section[field] = value
    return data


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build settings from an optional YAML file and the environment.

    Args:
        path: YAML file with any subset of the settings sections
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated Settings

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        pydantic.ValidationError: If a value has the wrong type or range
    """
    data: Dict[str, Any] = {}
    if path is not None:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        data = loaded

    # Partial sections keep the defaults of the fields they omit
    data = _merge(Settings().model_dump(), data)
    data = _apply_env(data, os.environ if environ is None else environ)
    return Settings.model_validate(data)
