"""Active-store set and the periodic resync loop.

``SchedulerService`` holds the ids of stores that should be resynced on an
interval. The lifecycle coordinator adds an id when a store becomes active
and removes it in the same step that clears the store's active flag;
otherwise the loop would recreate partitions for a deleted store.

``SyncScheduler`` is the loop. Each tick it walks the active set, skips
locked stores, and hands every store whose interval elapsed to the
``trigger`` callback (normally ``StoreLifecycleCoordinator.schedule_resync``).
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as redis_async
import structlog

from .locks import LockService

logger = structlog.get_logger("coordination.scheduler")


class SchedulerService(ABC):
    """Set of store ids eligible for periodic resync."""

    @abstractmethod
    async def add(self, store_id: str) -> None: ...

    @abstractmethod
    async def remove(self, store_id: str) -> bool: ...

    @abstractmethod
    async def list_active(self) -> List[str]: ...

    async def contains(self, store_id: str) -> bool:
        return store_id in await self.list_active()


class InMemorySchedulerService(SchedulerService):

    def __init__(self):
        self._active: Set[str] = set()

    async def add(self, store_id: str) -> None:
        self._active.add(store_id)
        logger.info("Store scheduled for sync", store_id=store_id)

    async def remove(self, store_id: str) -> bool:
        present = store_id in self._active
        self._active.discard(store_id)
        if present:
            logger.info("Store removed from sync schedule", store_id=store_id)
        return present

    async def list_active(self) -> List[str]:
        return sorted(self._active)

    async def contains(self, store_id: str) -> bool:
        return store_id in self._active


class RedisSchedulerService(SchedulerService):
    """Active set stored as a Redis set shared by all workers."""

    def __init__(self, redis_url: str = "redis://localhost:6379", key: str = "storerag:scheduler:active", client: Any = None):
        self.redis_client = client or redis_async.from_url(redis_url, decode_responses=True)
        self.key = key

    async def add(self, store_id: str) -> None:
        await self.redis_client.sadd(self.key, store_id)
        logger.info("Store scheduled for sync", store_id=store_id)

    async def remove(self, store_id: str) -> bool:
        removed = await self.redis_client.srem(self.key, store_id)
        if removed:
            logger.info("Store removed from sync schedule", store_id=store_id)
        return bool(removed)

    async def list_active(self) -> List[str]:
        return sorted(await self.redis_client.smembers(self.key))

    async def contains(self, store_id: str) -> bool:
        return bool(await self.redis_client.sismember(self.key, store_id))

    async def close(self) -> None:
        await self.redis_client.aclose()


class SyncScheduler:
    """Periodic loop that triggers resyncs for active, unlocked stores."""

    def __init__(
        self,
        scheduler: SchedulerService,
        locks: LockService,
        trigger: Callable[[str], Awaitable[Any]],
        interval_seconds: float = 1800.0,
        tick_seconds: float = 60.0,
    ):
        self.scheduler = scheduler
        self.locks = locks
        self.trigger = trigger
        self.interval_seconds = interval_seconds
        self.tick_seconds = tick_seconds
        self._last_triggered: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[float] = None) -> List[str]:
        """Run one tick; returns the store ids that were triggered.

        A store seen for the first time only starts its interval clock,
        since connect/reconnect just indexed it.
        """
        now = time.time() if now is None else now
        active = await self.scheduler.list_active()

        for gone in set(self._last_triggered) - set(active):
            del self._last_triggered[gone]

        triggered = []
        for store_id in active:
            last = self._last_triggered.get(store_id)
            if last is None:
                self._last_triggered[store_id] = now
                continue
            if now - last < self.interval_seconds:
                continue
            if await self.locks.is_locked(store_id):
                logger.info("Skipping locked store", store_id=store_id)
                continue

            self._last_triggered[store_id] = now
            try:
                await self.trigger(store_id)
                triggered.append(store_id)
            except Exception as e:
                logger.error("Failed to trigger scheduled sync", store_id=store_id, error=str(e))

        if triggered:
            logger.info("Scheduled syncs triggered", count=len(triggered))
        return triggered

    async def _loop(self) -> None:
        logger.info("Sync scheduler started", interval=self.interval_seconds, tick=self.tick_seconds)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Sync scheduler tick failed", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Sync scheduler stopped")
