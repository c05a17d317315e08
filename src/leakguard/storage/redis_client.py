"""
Redis connection factory shared by the cache, the rate limiters and the
scan-record store.
"""

import structlog
from redis.asyncio import Redis


logger = structlog.get_logger(__name__)


def create_redis(url: str) -> Redis:
    """
    Create an asyncio Redis client.

    Connections are opened lazily on first command, so this never blocks and
    never fails for an unreachable server; callers see RedisError on use.
    Responses are decoded to ``str``.
    """
    client = Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )
    logger.info("redis_client_created", url=_redact(url))
    return client


def _redact(url: str) -> str:
    """Hide the password part of a redis:// URL"""
    scheme, sep, rest = url.partition("://")
    if "@" not in rest:
        return url
    credentials, _, host = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}{sep}{user}:***@{host}"
