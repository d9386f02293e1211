"""Per-store mutual exclusion for lifecycle operations.

Only one of reconnect/delete may run for a store at a time. A lock records
who holds it (``operation`` plus an opaque ``token``) and when it expires;
an expired lock is treated as released so a crashed process cannot keep a
store locked forever.

Two implementations share the ``LockService`` interface:

- ``InMemoryLockService`` for single-process deployments and tests
- ``RedisLockService`` (``SET NX PX`` + compare-and-delete) for deployments
  with several workers
"""

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import redis.asyncio as redis_async
import structlog

from storerag.common.errors import LockConflict

logger = structlog.get_logger("coordination.locks")

DEFAULT_LOCK_TTL = 300.0


@dataclass
class LockInfo:
    """A held lock."""
    store_id: str
    operation: str
    reason: str
    token: str
    acquired_at: float
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LockService(ABC):
    """Exclusive per-store locks."""

    @abstractmethod
    async def acquire(
        self,
        store_id: str,
        operation: str,
        reason: str = "",
        ttl_seconds: Optional[float] = None,
    ) -> LockInfo:
        """Take the lock or raise ``LockConflict`` immediately."""

    @abstractmethod
    async def release(self, store_id: str, token: str) -> bool:
        """Release a lock held with ``token``; returns False if not held by it."""

    @abstractmethod
    async def get(self, store_id: str) -> Optional[LockInfo]:
        """Current unexpired lock for the store, if any."""

    @abstractmethod
    async def force_release(self, store_id: str) -> bool:
        """Operator escape hatch: drop the lock regardless of holder."""

    @abstractmethod
    async def list_locks(self) -> List[LockInfo]:
        """All unexpired locks."""

    async def is_locked(self, store_id: str) -> bool:
        return await self.get(store_id) is not None

    @staticmethod
    def _new_lock(store_id: str, operation: str, reason: str, ttl_seconds: Optional[float]) -> LockInfo:
        now = time.time()
        return LockInfo(
            store_id=store_id,
            operation=operation,
            reason=reason or operation,
            token=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + (ttl_seconds if ttl_seconds is not None else DEFAULT_LOCK_TTL),
        )


class InMemoryLockService(LockService):
    """Dict-backed lock service."""

    def __init__(self):
        self._locks: Dict[str, LockInfo] = {}
        self._mutex = asyncio.Lock()

    def _current(self, store_id: str) -> Optional[LockInfo]:
        lock = self._locks.get(store_id)
        if lock is not None and lock.expired:
            logger.warning("Expired lock cleared", store_id=store_id, operation=lock.operation)
            del self._locks[store_id]
            return None
        return lock

    async def acquire(
        self,
        store_id: str,
        operation: str,
        reason: str = "",
        ttl_seconds: Optional[float] = None,
    ) -> LockInfo:
        async with self._mutex:
            held = self._current(store_id)
            if held is not None:
                logger.info("Lock conflict", store_id=store_id, operation=operation, held_by=held.operation)
                raise LockConflict(store_id, held)
            lock = self._new_lock(store_id, operation, reason, ttl_seconds)
            self._locks[store_id] = lock
        logger.info("Lock acquired", store_id=store_id, operation=operation)
        return lock

    async def release(self, store_id: str, token: str) -> bool:
        async with self._mutex:
            held = self._locks.get(store_id)
            if held is None or held.token != token:
                logger.warning("Release ignored, lock not held by caller", store_id=store_id)
                return False
            del self._locks[store_id]
        logger.info("Lock released", store_id=store_id, operation=held.operation)
        return True

    async def get(self, store_id: str) -> Optional[LockInfo]:
        return self._current(store_id)

    async def force_release(self, store_id: str) -> bool:
        async with self._mutex:
            held = self._locks.pop(store_id, None)
        if held is not None:
            logger.warning("Lock force-released", store_id=store_id, operation=held.operation)
        return held is not None

    async def list_locks(self) -> List[LockInfo]:
        locks = []
        for store_id in list(self._locks):
            lock = self._current(store_id)
            if lock is not None:
                locks.append(lock)
        return locks


_RELEASE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return 0
end
local decoded = cjson.decode(current)
if decoded['token'] == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisLockService(LockService):
    """Redis-backed lock service; expiry is enforced by key TTL."""

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "storerag:lock", client: Any = None):
        self.redis_client = client or redis_async.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    def _key(self, store_id: str) -> str:
        return f"{self.prefix}:{store_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[LockInfo]:
        if not raw:
            return None
        return LockInfo(**json.loads(raw))

    async def acquire(
        self,
        store_id: str,
        operation: str,
        reason: str = "",
        ttl_seconds: Optional[float] = None,
    ) -> LockInfo:
        lock = self._new_lock(store_id, operation, reason, ttl_seconds)
        ttl_ms = max(1, int((lock.expires_at - lock.acquired_at) * 1000))
        acquired = await self.redis_client.set(
            self._key(store_id), json.dumps(lock.to_dict()), nx=True, px=ttl_ms
        )
        if not acquired:
            held = await self.get(store_id)
            logger.info("Lock conflict", store_id=store_id, operation=operation,
                        held_by=held.operation if held else None)
            raise LockConflict(store_id, held)
        logger.info("Lock acquired", store_id=store_id, operation=operation)
        return lock

    async def release(self, store_id: str, token: str) -> bool:
        released = await self.redis_client.eval(_RELEASE_SCRIPT, 1, self._key(store_id), token)
        if not released:
            logger.warning("Release ignored, lock not held by caller", store_id=store_id)
            return False
        logger.info("Lock released", store_id=store_id)
        return True

    async def get(self, store_id: str) -> Optional[LockInfo]:
        return self._decode(await self.redis_client.get(self._key(store_id)))

    async def force_release(self, store_id: str) -> bool:
        removed = await self.redis_client.delete(self._key(store_id))
        if removed:
            logger.warning("Lock force-released", store_id=store_id)
        return bool(removed)

    async def list_locks(self) -> List[LockInfo]:
        locks = []
        async for key in self.redis_client.scan_iter(match=f"{self.prefix}:*"):
            lock = self._decode(await self.redis_client.get(key))
            if lock is not None:
                locks.append(lock)
        return locks

    async def close(self) -> None:
        await self.redis_client.aclose()
