"""
Session Registry
================

Enforces "at most one active generation session per document".

The only operation that matters for correctness is :meth:`try_acquire`: an
atomic check-and-set keyed by ``(owner_id, document_id)``.  Two concurrent
``start_session`` calls for the same key race on it and exactly one wins.

Backends:
- ``InMemorySessionRegistry``: a dict guarded by a ``threading.Lock``
  (single process).
- ``RedisSessionRegistry``: ``SET key value NX EX lease`` (multi-process),
  with compare-and-delete / compare-and-expire Lua scripts for release and
  lease renewal.  A claim left behind by a crashed process expires on its own.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)


REDIS_KEY_PREFIX = "auto-explain:active-session:"
DEFAULT_LEASE_SECONDS = 900

# Delete the key only if it still holds our session id
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

# Push the expiry out only if the key still holds our session id
_REFRESH_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("EXPIRE", KEYS[1], ARGV[2])
end
return 0
"""


class RegistryKey(NamedTuple):
    """Scope of the one-active-session lock."""
    owner_id: str
    document_id: str

    def as_string(self) -> str:
        return f"{self.owner_id}:{self.document_id}"


class SessionRegistry(ABC):
    """Interface for the active-session lock."""

    @abstractmethod
    async def try_acquire(self, key: RegistryKey, session_id: str) -> bool:
        """Atomically claim ``key`` for ``session_id``.  False if already held."""

    @abstractmethod
    async def release(self, key: RegistryKey, session_id: str) -> bool:
        """Release ``key`` if ``session_id`` still holds it."""

    @abstractmethod
    async def refresh(self, key: RegistryKey, session_id: str) -> bool:
        """Renew the claim on ``key``.  False if ``session_id`` no longer holds it."""

    @abstractmethod
    async def get_holder(self, key: RegistryKey) -> Optional[str]:
        """Return the session id holding ``key``, if any."""


class InMemorySessionRegistry(SessionRegistry):
    """Process-local registry.  Claims never expire."""

    def __init__(self) -> None:
        self._holders: Dict[RegistryKey, str] = {}
        self._lock = threading.Lock()

    async def try_acquire(self, key: RegistryKey, session_id: str) -> bool:
        with self._lock:
            if key in self._holders:
                return False
            self._holders[key] = session_id
            return True

    async def release(self, key: RegistryKey, session_id: str) -> bool:
        with self._lock:
            if self._holders.get(key) != session_id:
                return False
            del self._holders[key]
            return True

    async def refresh(self, key: RegistryKey, session_id: str) -> bool:
        with self._lock:
            return self._holders.get(key) == session_id

    async def get_holder(self, key: RegistryKey) -> Optional[str]:
        with self._lock:
            return self._holders.get(key)

    def __len__(self) -> int:
        return len(self._holders)


class RedisSessionRegistry(SessionRegistry):
    """
    Registry shared by every API process through Redis.

    Args:
        client: A ``redis.Redis`` client with ``decode_responses=True``.
            Defaults to the :func:`get_redis_client` singleton.
        lease_seconds: Expiry of a claim.  The session manager renews it on
            every window update and page result.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> None:
        if client is None:
            from backend.services.redis_client import get_redis_client
            client = get_redis_client()
        self._client = client
        self._lease_seconds = lease_seconds

    @property
    def lease_seconds(self) -> int:
        return self._lease_seconds

    @staticmethod
    def _redis_key(key: RegistryKey) -> str:
        return REDIS_KEY_PREFIX + key.as_string()

    async def try_acquire(self, key: RegistryKey, session_id: str) -> bool:
        acquired = await asyncio.to_thread(
            self._client.set,
            self._redis_key(key),
            session_id,
            nx=True,
            ex=self._lease_seconds,
        )
        return bool(acquired)

    async def release(self, key: RegistryKey, session_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._client.eval, _RELEASE_SCRIPT, 1, self._redis_key(key), session_id
        )
        return bool(deleted)

    async def refresh(self, key: RegistryKey, session_id: str) -> bool:
        renewed = await asyncio.to_thread(
            self._client.eval,
            _REFRESH_SCRIPT,
            1,
            self._redis_key(key),
            session_id,
            self._lease_seconds,
        )
        return bool(renewed)

    async def get_holder(self, key: RegistryKey) -> Optional[str]:
        return await asyncio.to_thread(self._client.get, self._redis_key(key))


def create_registry(
    backend: str = "memory",
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> SessionRegistry:
    """Build the registry for the configured backend name."""
    if backend == "redis":
        logger.info("Using Redis session registry (lease %ds)", lease_seconds)
        return RedisSessionRegistry(lease_seconds=lease_seconds)
    return InMemorySessionRegistry()
