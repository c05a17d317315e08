"""
HTTP API - thin aiohttp layer over the ScanOrchestrator.

Every response is an envelope:

    {"success": true,  "data": ..., "timestamp": "..."}
    {"success": false, "error": {"code": ..., "message": ...}, "timestamp": "..."}

Routes (prefix from ``settings.server.api_prefix``, default ``/api/v1``):
    POST   {prefix}/scan          body {"repoUrl": ..., "provider": ...}
    GET    {prefix}/scan/{id}
    DELETE {prefix}/scan/{id}
    GET    {prefix}/history       ?repoUrl&provider&page&limit&sortBy&sortOrder
    GET    {prefix}/stats
    DELETE {prefix}/cache         ?repoUrl
    GET    /health
    GET    /health/live
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from aiohttp import web
from pydantic import ValidationError

from .. import __version__
from ..errors import (
    InvalidRequestError,
    LeakGuardError,
    RateLimitExceededError,
)
from ..core.config import Settings
from ..core.orchestrator import ScanOrchestrator
from ..core.rate_limiter import SlidingWindowRateLimiter
from ..core.service import LeakGuardService
from ..storage.repository import HistoryQuery


Limiters = Tuple[SlidingWindowRateLimiter, SlidingWindowRateLimiter]

SETTINGS_KEY = web.AppKey("settings", Settings)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", ScanOrchestrator)
LIMITERS_KEY = web.AppKey("limiters", tuple)
STARTED_AT_KEY = web.AppKey("started_at", float)

# Liveness checks must answer even for a client that is being throttled
RATE_LIMIT_EXEMPT = ("/health/live",)

# Request slot holding the general limiter decision
RATE_LIMIT_DECISION = "rate_limit_decision"

# Query parameter -> HistoryQuery field
HISTORY_PARAMS = {
    "repoUrl": "repository_url",
    "provider": "provider",
    "page": "page",
    "limit": "limit",
    "sortBy": "sort_by",
    "sortOrder": "sort_order",
}

logger = structlog.get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success(data: Any, status: int = 200, **extra: Any) -> web.Response:
    return web.json_response(
        {"success": True, "data": data, **extra, "timestamp": _timestamp()},
        status=status,
    )


def failure(
    status: int,
    error: Dict[str, Any],
    headers: Optional[Mapping[str, str]] = None,
) -> web.Response:
    return web.json_response(
        {"success": False, "error": error, "timestamp": _timestamp()},
        status=status,
        headers=headers,
    )


def client_key(request: web.Request) -> str:
    """Rate-limit identity of the caller"""
    return request.remote or "unknown"


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn exceptions into error envelopes"""
    diagnostic = request.app[SETTINGS_KEY].server.diagnostic_errors
    try:
        return await handler(request)
    except RateLimitExceededError as e:
        response = failure(e.status, e.to_dict(diagnostic), headers={"Retry-After": str(e.retry_after)})
    except LeakGuardError as e:
        log = logger.error if e.status >= 500 else logger.warning
        log(
            "request_failed",
            method=request.method,
            path=request.path,
            client=client_key(request),
            status=e.status,
            error_kind=e.kind,
        )
        response = failure(e.status, e.to_dict(diagnostic))
    except web.HTTPException as e:
        if e.status < 400:
            raise
        code = "route_not_found" if e.status == 404 else "http_error"
        response = failure(e.status, {"code": code, "message": e.reason})
    except Exception:
        logger.exception("unhandled_request_error", method=request.method, path=request.path)
        response = failure(500, LeakGuardError().to_dict())

    # Error envelopes report the general window like any other response
    decision = request.get(RATE_LIMIT_DECISION)
    if decision is not None:
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)
    return response


@web.middleware
async def rate_limit_middleware(request: web.Request, handler):
    """General sliding-window limit for every route"""
    if request.path in RATE_LIMIT_EXEMPT:
        return await handler(request)

    general, _ = request.app[LIMITERS_KEY]
    decision = await general.admit(client_key(request))
    if not decision.allowed:
        error = RateLimitExceededError(decision.retry_after)
        diagnostic = request.app[SETTINGS_KEY].server.diagnostic_errors
        return failure(
            error.status,
            error.to_dict(diagnostic),
            headers={**decision.headers(), "Retry-After": str(decision.retry_after)},
        )

    request[RATE_LIMIT_DECISION] = decision
    response = await handler(request)
    response.headers.update(decision.headers())
    return response


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise InvalidRequestError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _history_query(params: Mapping[str, str]) -> HistoryQuery:
    fields = {name: params[param] for param, name in HISTORY_PARAMS.items() if param in params}
    if fields.get("sort_by") == "repo_url":
        fields["sort_by"] = "repository_url"

    try:
        return HistoryQuery.model_validate(fields)
    except ValidationError as e:
        reasons = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise InvalidRequestError(
            f"Validation failed: {'; '.join(reasons)}",
            detail={"reasons": reasons},
        ) from e


async def scan_repository(request: web.Request) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    _, scan_limiter = request.app[LIMITERS_KEY]

    decision = await scan_limiter.admit(client_key(request))
    if not decision.allowed:
        raise RateLimitExceededError(
            decision.retry_after,
            message="Too many scan requests, please try again later",
        )

    body = await _json_body(request)
    repo_url = body.get("repoUrl")
    provider = body.get("provider")
    if not isinstance(repo_url, str) or not repo_url.strip():
        raise InvalidRequestError("repoUrl is required")
    if provider is not None and not isinstance(provider, str):
        raise InvalidRequestError("provider must be a string")

    target = orchestrator.build_target(repo_url, provider)
    logger.info(
        "scan_request_received",
        repository_url=target.repository_url,
        provider=target.provider.value,
        client=client_key(request),
    )

    outcome = await orchestrator.scan(target)
    data = outcome.result.model_dump(mode="json")
    data["cached"] = outcome.cached
    data["summary"] = outcome.result.summary()
    return success(data)


async def get_scan(request: web.Request) -> web.Response:
    record = await request.app[ORCHESTRATOR_KEY].get_scan(request.match_info["scan_id"])
    return success(record.model_dump(mode="json"))


async def delete_scan(request: web.Request) -> web.Response:
    scan_id = request.match_info["scan_id"]
    await request.app[ORCHESTRATOR_KEY].delete_scan(scan_id)
    return success({"id": scan_id, "deleted": True})


async def scan_history(request: web.Request) -> web.Response:
    query = _history_query(request.query)
    page = await request.app[ORCHESTRATOR_KEY].history(query)
    return success(
        [record.model_dump(mode="json") for record in page.data],
        pagination={
            "page": page.page,
            "limit": page.limit,
            "total": page.total,
            "pages": page.pages,
        },
    )


async def invalidate_cache(request: web.Request) -> web.Response:
    repo_url = request.query.get("repoUrl", "").strip()
    if not repo_url:
        raise InvalidRequestError("Repository URL is required")

    deleted = await request.app[ORCHESTRATOR_KEY].invalidate_repository(repo_url)
    return success({"deletedKeys": deleted})


async def service_stats(request: web.Request) -> web.Response:
    return success(await request.app[ORCHESTRATOR_KEY].stats())


async def health(request: web.Request) -> web.Response:
    report = await request.app[ORCHESTRATOR_KEY].health()
    unhealthy = report.status == "unhealthy"
    return web.json_response(
        {
            "success": not unhealthy,
            "data": {**report.to_dict(), "version": __version__},
            "timestamp": _timestamp(),
        },
        status=503 if unhealthy else 200,
    )


async def liveness(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": "alive",
            "uptime": round(time.monotonic() - request.app[STARTED_AT_KEY], 3),
            "timestamp": _timestamp(),
        }
    )


async def index(request: web.Request) -> web.Response:
    prefix = request.app[SETTINGS_KEY].server.api_prefix
    return web.json_response(
        {"name": "LeakGuard", "version": __version__, "api": prefix, "health": "/health"}
    )


def create_app(
    settings: Settings,
    orchestrator: ScanOrchestrator,
    limiters: Limiters,
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: Server settings (prefix, diagnostic errors)
        orchestrator: Scan coordinator shared by every request
        limiters: (general_limiter, scan_limiter)
    """
    app = web.Application(middlewares=[error_middleware, rate_limit_middleware])
    app[SETTINGS_KEY] = settings
    app[ORCHESTRATOR_KEY] = orchestrator
    app[LIMITERS_KEY] = limiters
    app[STARTED_AT_KEY] = time.monotonic()

    prefix = settings.server.api_prefix.rstrip("/")
    app.router.add_get("/", index)
    app.router.add_post(f"{prefix}/scan", scan_repository)
    app.router.add_get(f"{prefix}/scan/{{scan_id}}", get_scan)
    app.router.add_delete(f"{prefix}/scan/{{scan_id}}", delete_scan)
    app.router.add_get(f"{prefix}/history", scan_history)
    app.router.add_get(f"{prefix}/stats", service_stats)
    app.router.add_delete(f"{prefix}/cache", invalidate_cache)
    app.router.add_get("/health", health)
    app.router.add_get("/health/live", liveness)
    return app


async def build_app(settings: Settings) -> web.Application:
    """Create the service and its application inside the running loop"""
    service = LeakGuardService.from_settings(settings)
    app = create_app(
        settings,
        service.orchestrator,
        (service.general_limiter, service.scan_limiter),
    )

    async def _close_service(_: web.Application):
        await service.close()

    app.on_cleanup.append(_close_service)
    return app


def run_server(settings: Settings, host: Optional[str] = None, port: Optional[int] = None):
    """Serve the API until interrupted"""
    host = host or settings.server.host
    port = port or settings.server.port
    logger.info("server_starting", host=host, port=port, api_prefix=settings.server.api_prefix)
    web.run_app(build_app(settings), host=host, port=port, print=None)
