"""
Tests for the Redis client singleton and health check.

All tests use mocking so no live Redis instance is required.
Run with:  pytest tests/test_redis_client.py -v

``get_redis_client()`` imports ``redis.Redis`` lazily, so the class is
patched at the source package.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import backend.services.redis_client as redis_client
from backend.services.config import reset_settings


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fresh settings and no cached client around every test."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_settings()
    redis_client._redis_client = None
    yield
    redis_client._redis_client = None
    reset_settings()


@pytest.fixture()
def healthy_redis() -> MagicMock:
    instance = MagicMock()
    instance.ping.return_value = True
    instance.info.return_value = {
        "redis_version": "7.2.4",
        "uptime_in_seconds": 600,
        "connected_clients": 2,
        "used_memory_human": "1.20M",
    }
    return instance


# =============================================================================
# Singleton
# =============================================================================

class TestGetRedisClient:
    """Tests for ``get_redis_client()``."""

    def test_returns_same_instance(self, healthy_redis: MagicMock) -> None:
        mock_cls = MagicMock()
        mock_cls.from_url.return_value = healthy_redis

        with patch("redis.Redis", mock_cls):
            first = redis_client.get_redis_client()
            second = redis_client.get_redis_client()

        assert first is second
        mock_cls.from_url.assert_called_once()

    def test_uses_configured_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REDIS_URL", "redis://cache.internal:6380/2")
        reset_settings()
        mock_cls = MagicMock()

        with patch("redis.Redis", mock_cls):
            redis_client.get_redis_client()

        args, kwargs = mock_cls.from_url.call_args
        assert args[0] == "redis://cache.internal:6380/2"
        assert kwargs["decode_responses"] is True

    def test_reset_closes_and_clears(self) -> None:
        old, new = MagicMock(), MagicMock()
        mock_cls = MagicMock()
        mock_cls.from_url.side_effect = [old, new]

        with patch("redis.Redis", mock_cls):
            first = redis_client.get_redis_client()
            redis_client.reset_redis_client()
            second = redis_client.get_redis_client()

        assert first is old
        assert second is new
        old.close.assert_called_once()

    def test_reset_tolerates_close_failure(self) -> None:
        broken = MagicMock()
        broken.close.side_effect = OSError("socket already gone")
        redis_client._redis_client = broken

        redis_client.reset_redis_client()

        assert redis_client._redis_client is None


# =============================================================================
# Health check
# =============================================================================

class TestCheckRedisHealth:
    """Tests for ``check_redis_health()``."""

    @pytest.mark.asyncio
    async def test_healthy(self, healthy_redis: MagicMock) -> None:
        redis_client._redis_client = healthy_redis

        status = await redis_client.check_redis_health()

        assert status.connected is True
        assert status.ping_ms >= 0.0
        assert status.info == {
            "redis_version": "7.2.4",
            "uptime_in_seconds": 600,
            "connected_clients": 2,
        }

    @pytest.mark.asyncio
    async def test_connection_refused(self) -> None:
        client = MagicMock()
        client.ping.side_effect = ConnectionError("Connection refused")
        redis_client._redis_client = client

        status = await redis_client.check_redis_health()

        assert status.connected is False
        assert "Connection refused" in status.error

    @pytest.mark.asyncio
    async def test_ping_false(self) -> None:
        client = MagicMock()
        client.ping.return_value = False
        redis_client._redis_client = client

        status = await redis_client.check_redis_health()

        assert status.connected is False
        assert status.error == "PING returned False"


# =============================================================================
# URL masking
# =============================================================================

class TestRedisUrlSafe:
    def test_masks_password(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REDIS_URL", "redis://:supersecret@redis.internal:6379/0")
        reset_settings()

        masked = redis_client._redis_url_safe()

        assert "supersecret" not in masked
        assert masked == "redis://*****@redis.internal:6379/0"

    def test_no_password_unchanged(self) -> None:
        assert redis_client._redis_url_safe() == "redis://localhost:6379/0"
