"""
Redis client singleton for the auto-explain session registry.

Provides the shared Redis connection used by:
- ``RedisSessionRegistry`` (one-active-session-per-document lock)
- Health checks (``GET /health``)

The module-level ``_redis_client`` is lazily initialised on first call to
``get_redis_client()`` and reused for the lifetime of the process.  The
connection URL comes from ``REDIS_URL`` via :func:`get_settings`.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from backend.services.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class RedisHealthStatus(BaseModel):
    """Health-check result for the Redis connection."""

    connected: bool = Field(
        ..., description="True if a PING was successful"
    )
    ping_ms: float = Field(
        default=0.0, description="Round-trip PING latency in milliseconds"
    )
    info: Dict[str, Any] = Field(
        default_factory=dict,
        description="Subset of Redis INFO useful for diagnostics",
    )
    error: Optional[str] = Field(
        default=None,
        description="Error message when connected is False",
    )


# =============================================================================
# Singleton Client
# =============================================================================

_redis_client: Optional[Any] = None  # typed as Any to allow lazy import


def get_redis_client() -> Any:
    """
    Get or create the Redis client singleton (``decode_responses=True``).

    Raises
    ------
    redis.exceptions.ConnectionError
        If Redis is unreachable *and* there is no prior cached client.
    ImportError
        If the ``redis`` package is not installed.
    """
    global _redis_client
    if _redis_client is None:
        # Lazy import so the in-memory registry never pays for redis
        from redis import Redis  # type: ignore[import-untyped]

        _redis_client = Redis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        logger.info("Redis client initialised (url=%s)", _redis_url_safe())
    return _redis_client


def reset_redis_client() -> None:
    """
    Reset the singleton (useful in tests or connection-recovery scenarios).

    If the existing client has an open connection pool it is closed first.
    """
    global _redis_client
    if _redis_client is not None:
        try:
            _redis_client.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing Redis client: %s", exc)
    _redis_client = None
    logger.debug("Redis client singleton reset")


# =============================================================================
# Health Check
# =============================================================================

async def check_redis_health() -> RedisHealthStatus:
    """
    Check the Redis connection and return a structured health report.

    The underlying ``redis-py`` calls are synchronous, so they are wrapped
    with ``asyncio.to_thread()`` to avoid blocking the event loop.
    """
    try:
        client = get_redis_client()

        start = time.monotonic()
        pong: bool = await asyncio.to_thread(client.ping)
        elapsed_ms = (time.monotonic() - start) * 1000.0

        if not pong:
            return RedisHealthStatus(
                connected=False,
                ping_ms=elapsed_ms,
                error="PING returned False",
            )

        raw_info: Dict[str, Any] = await asyncio.to_thread(
            client.info, section="server"
        )
        info_subset: Dict[str, Any] = {
            "redis_version": raw_info.get("redis_version", "unknown"),
            "uptime_in_seconds": raw_info.get("uptime_in_seconds", -1),
            "connected_clients": raw_info.get("connected_clients", -1),
        }

        return RedisHealthStatus(
            connected=True,
            ping_ms=round(elapsed_ms, 2),
            info=info_subset,
        )

    except Exception as exc:
        logger.warning(
            "Redis health check failed: %s", exc, exc_info=True
        )
        return RedisHealthStatus(
            connected=False,
            error=str(exc),
        )


# =============================================================================
# Helpers
# =============================================================================

def _redis_url_safe() -> str:
    """
    Return the Redis URL with password masked for safe logging.

    ``redis://:secret@host:6379/0`` becomes ``redis://*****@host:6379/0``.
    """
    url = get_settings().redis_url
    if "@" in url:
        prefix_end = url.index("://") + 3
        at_pos = url.index("@")
        url = url[:prefix_end] + "*****" + url[at_pos:]
    return url
