"""Store lifecycle coordinator.

Drives connect, reconnect, delete, deactivate/reactivate and scheduled
resyncs for a store. Relational state (the store row) and vector state (six
partitions) have no foreign keys between them, so every procedure keeps
them consistent by:

- holding the per-store lock for reconnect and delete, released on every
  exit path including errors and job timeouts
- flipping the active flag and the scheduler's active set together
- writing only idempotent upserts keyed by deterministic chunk ids

Each public operation does its fast part inline and hands the slow part to
``BackgroundTaskQueue``; the returned ``LifecycleAck`` carries the job id.

States::

    Disconnected -> Connecting -> Active -> Reconnecting -> Active
                                 Active -> Deleting -> Disconnected
                                 Active <-> Inactive
"""

import asyncio
import time
from typing import Any, List, Optional

import structlog

from storerag.common.errors import (
    AuthError,
    EmbeddingFailure,
    InvalidPartitionFormat,
    InvalidTransition,
    LockConflict,
    LockedError,
    PlatformError,
    RateLimited,
    StoreNotFound,
)
from storerag.common.events import (
    BaseEvent,
    EventPublisher,
    StoreConnectedEvent,
    StoreDeletedEvent,
    StoreReconnectedEvent,
    StoreSyncedEvent,
    StoreSyncFailedEvent,
)
from storerag.common.logging import ServiceLogger
from storerag.common.metrics import MetricsCollector
from storerag.coordination.locks import LockInfo, LockService
from storerag.coordination.scheduler import SchedulerService
from storerag.coordination.tasks import BackgroundTaskQueue, Job
from storerag.indexer.document_indexer import DocumentIndexer, IndexReport
from storerag.integrations.platform import Credentials
from storerag.namespaces.registry import (
    ALL_CATEGORIES,
    PARTITION_PREFIX,
    generate_partition_key,
    list_partitions_for_store,
    parse_partition_key,
)
from storerag.vector_store.base import PartitionedVectorStore, VectorStoreError

from .models import LifecycleAck, Store, StoreState, StoreStatus, can_transition
from .repository import StoreRepository

logger = structlog.get_logger("lifecycle.coordinator")

# Failures a background pass records on the store instead of crashing the job.
SYNC_ERRORS = (asyncio.TimeoutError, EmbeddingFailure, VectorStoreError, PlatformError, RateLimited)


class StoreLifecycleCoordinator:
    """State machine for a store's connection and indexed data."""

    def __init__(
        self,
        repository: StoreRepository,
        vector_store: PartitionedVectorStore,
        indexer: DocumentIndexer,
        locks: LockService,
        scheduler: SchedulerService,
        tasks: BackgroundTaskQueue,
        publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        reconnect_lock_ttl: float = 600.0,
        delete_lock_ttl: float = 180.0,
        sync_lock_ttl: float = 120.0,
        task_timeout: float = 120.0,
    ):
        self.repository = repository
        self.vector_store = vector_store
        self.indexer = indexer
        self.locks = locks
        self.scheduler = scheduler
        self.tasks = tasks
        self.publisher = publisher
        self.metrics = metrics
        self.reconnect_lock_ttl = reconnect_lock_ttl
        self.delete_lock_ttl = delete_lock_ttl
        self.sync_lock_ttl = sync_lock_ttl
        self.task_timeout = task_timeout
        self._log = ServiceLogger("lifecycle.coordinator")

    @classmethod
    def from_config(cls, config: Any, **components: Any) -> "StoreLifecycleCoordinator":
        return cls(
            reconnect_lock_ttl=config.rag_reconnect_lock_ttl,
            delete_lock_ttl=config.rag_delete_lock_ttl,
            sync_lock_ttl=config.rag_sync_lock_ttl,
            task_timeout=config.rag_task_timeout,
            **components,
        )

    # Helpers

    async def _require_store(self, store_id: str) -> Store:
        store = await self.repository.get(store_id)
        if store is None:
            raise StoreNotFound(store_id)
        return store

    @staticmethod
    def _transition(store: Store, target: StoreState) -> None:
        if not can_transition(store.state, target):
            raise InvalidTransition(store.id, store.state.value, target.value)
        logger.info("Store state transition", store_id=store.id, from_state=store.state.value, to_state=target.value)
        store.state = target

    async def _acquire(self, store_id: str, operation: str, ttl: float) -> LockInfo:
        try:
            return await self.locks.acquire(store_id, operation, reason=f"{operation} in progress", ttl_seconds=ttl)
        except LockConflict:
            if self.metrics is not None:
                self.metrics.record_lock_conflict(operation)
            raise

    async def _release(self, lock: LockInfo) -> None:
        released = await self.locks.release(lock.store_id, lock.token)
        if not released:
            logger.warning("Lock was no longer held at release", store_id=lock.store_id, operation=lock.operation)

    async def _publish(self, event: BaseEvent) -> None:
        if self.publisher is not None:
            await self.publisher.publish_safely(event)

    def _record(self, operation: str, status: str, started: Optional[float] = None) -> None:
        if self.metrics is not None:
            duration = time.time() - started if started is not None else None
            self.metrics.record_lifecycle_operation(operation, status, duration)

    async def _credentials_for(self, store: Store) -> Credentials:
        credentials = await self.repository.get_credentials(store.credential_ref)
        if credentials is None:
            raise AuthError(f"No credentials stored for {store.id}")
        return credentials

    async def _submit(self, store_id: str, operation: str, factory) -> Job:
        return await self.tasks.submit(store_id, operation, factory, timeout=self.task_timeout)

    # Outcome bookkeeping for background passes

    async def _settle_after_pass(self, store: Store) -> None:
        """Leave transitional states once a background pass is over."""
        if store.state in (StoreState.CONNECTING, StoreState.RECONNECTING):
            self._transition(store, StoreState.ACTIVE)

    async def _record_sync_success(self, store_id: str, report: IndexReport, operation: str) -> None:
        store = await self.repository.get(store_id)
        if store is None or store.state == StoreState.DELETING:
            return
        store.last_sync_at = time.time()
        store.failed_entities = list(report.failed_ids)
        store.last_error = "; ".join(report.errors[:3]) if report.partial and report.errors else None
        store.needs_reconnection = False
        await self._settle_after_pass(store)
        await self.repository.update(store)
        await self._publish(
            StoreSyncedEvent(
                store_id=store_id,
                operation=operation,
                attempted=report.attempted,
                succeeded=report.succeeded,
                failed=report.failed,
                timed_out=report.timed_out,
            )
        )

    async def _record_sync_failure(self, store_id: str, operation: str, error: Exception) -> None:
        needs_reconnection = isinstance(error, AuthError)
        log = self._log.bind(store_id=store_id, operation=operation)
        if needs_reconnection:
            log.warning("Store needs reconnection", error=str(error))
        else:
            log.error("Background sync failed", error=str(error), error_type=type(error).__name__)

        store = await self.repository.get(store_id)
        if store is None or store.state == StoreState.DELETING:
            return
        store.last_error = f"{type(error).__name__}: {error}"
        store.needs_reconnection = store.needs_reconnection or needs_reconnection
        await self._settle_after_pass(store)
        await self.repository.update(store)
        await self._publish(
            StoreSyncFailedEvent(
                store_id=store_id,
                operation=operation,
                error=str(error),
                needs_reconnection=needs_reconnection,
            )
        )

    async def _record_interrupted(self, store_id: str, operation: str, error: BaseException, started: float) -> None:
        """Settle and record a pass that was cancelled or died on an unexpected error."""
        if isinstance(error, asyncio.CancelledError):
            error = asyncio.TimeoutError(f"{operation} job was cancelled or timed out")
        await self._record_sync_failure(store_id, operation, error)
        self._record(operation, "interrupted", started)

    # Connect

    async def connect(self, store_id: str, credentials: Credentials) -> LifecycleAck:
        """Register a store and index it in the background.

        Returns as soon as the row exists. A store that is already known is
        routed through ``reconnect`` with the new credentials; connect never
        raises, so a reconnect that cannot run is recorded on the store row
        and reported by ``get_status``.
        """
        existing = await self.repository.get(store_id)
        if existing is not None:
            return await self._connect_known(existing, credentials)

        started = time.time()
        credential_ref = await self.repository.save_credentials(store_id, credentials)
        store = Store(
            id=store_id,
            platform_store_id=credentials.platform_store_id,
            credential_ref=credential_ref,
            active=True,
            state=StoreState.CONNECTING,
        )
        await self.repository.create(store)
        await self.scheduler.add(store_id)

        job = await self._submit(store_id, "connect", lambda: self._run_initial_sync(store_id))
        self._log.bind(store_id=store_id).info("Store connected, initial sync queued", job_id=job.id)
        await self._publish(StoreConnectedEvent(store_id=store_id, platform_store_id=credentials.platform_store_id))
        self._record("connect", "accepted", started)
        return LifecycleAck(store_id=store_id, operation="connect", state=store.state.value, job_id=job.id)

    async def _connect_known(self, store: Store, credentials: Credentials) -> LifecycleAck:
        log = self._log.bind(store_id=store.id, operation="connect")
        try:
            return await self.reconnect(store.id, credentials)
        except (LockConflict, InvalidTransition, StoreNotFound) as e:
            log.info("Reconnect deferred", error=str(e))
            await self._defer_connect(store.id, credentials, e)
        except Exception as e:
            # reconnect already recorded the failure and queued a repair pass
            log.warning("Reconnect failed, recorded on store", error=str(e))

        current = await self.repository.get(store.id)
        state = current.state.value if current is not None else StoreState.DISCONNECTED.value
        self._record("connect", "deferred")
        return LifecycleAck(store_id=store.id, operation="connect", state=state)

    async def _defer_connect(self, store_id: str, credentials: Credentials, error: Exception) -> None:
        """Keep the new credentials for the next sync unless the store is going away."""
        store = await self.repository.get(store_id)
        if store is None or store.state == StoreState.DELETING:
            return
        store.credential_ref = await self.repository.save_credentials(store_id, credentials)
        store.platform_store_id = credentials.platform_store_id
        store.last_error = f"Connect deferred: {error}"
        await self.repository.update(store)

    async def _run_initial_sync(self, store_id: str) -> Optional[dict]:
        log = self._log.bind(store_id=store_id, operation="connect")
        store = await self.repository.get(store_id)
        if store is None or not store.active:
            log.info("Store gone before initial sync")
            return None

        started = time.time()
        try:
            credentials = await self._credentials_for(store)
            await self.indexer.initialize_partitions(store_id)
            report = await self.indexer.index_store_data(store_id, credentials)
        except LockedError:
            log.info("Initial sync superseded by a locked operation")
            self._record("connect", "superseded", started)
            return None
        except (AuthError,) + SYNC_ERRORS as e:
            await self._record_sync_failure(store_id, "connect", e)
            self._record("connect", "failed", started)
            return None
        except BaseException as e:
            await self._record_interrupted(store_id, "connect", e, started)
            raise

        await self._record_sync_success(store_id, report, "connect")
        self._record("connect", "partial" if report.partial else "succeeded", started)
        log.info("Initial sync complete", attempted=report.attempted, succeeded=report.succeeded, failed=report.failed)
        return report.to_dict()

    # Reconnect

    async def reconnect(self, store_id: str, credentials: Credentials) -> LifecycleAck:
        """Replace credentials and rebuild the store's partitions.

        Inline: lock, then swap every partition for a fresh placeholder. In
        the background: full index pass, then Active and lock release. Raises
        ``LockConflict`` immediately when another operation holds the lock.
        If the inline phase fails the store goes back to Active with the
        error recorded and a repair resync is queued.
        """
        store = await self._require_store(store_id)
        log = self._log.bind(store_id=store_id, operation="reconnect")
        started = time.time()
        lock = await self._acquire(store_id, "reconnect", self.reconnect_lock_ttl)

        try:
            self._transition(store, StoreState.RECONNECTING)
            store.credential_ref = await self.repository.save_credentials(store_id, credentials)
            store.platform_store_id = credentials.platform_store_id
            store.active = True
            store.needs_reconnection = False
            store.last_error = None
            await self.repository.update(store)
            await self.scheduler.add(store_id)

            await self.indexer.reseed_partitions(store_id, lock_token=lock.token)

            job = await self._submit(store_id, "reconnect", lambda: self._finish_reconnect(store_id, lock, started))
        except InvalidTransition:
            await self._release(lock)
            raise
        except Exception as e:
            log.error("Reconnect failed before indexing", error=str(e))
            await self._record_sync_failure(store_id, "reconnect", e)
            self._record("reconnect", "failed", started)
            await self._release(lock)
            await self.schedule_resync(store_id)
            raise
        except BaseException:
            await self._release(lock)
            raise

        log.info("Partitions reset, reindex queued", job_id=job.id)
        return LifecycleAck(store_id=store_id, operation="reconnect", state=store.state.value, job_id=job.id)

    async def _finish_reconnect(self, store_id: str, lock: LockInfo, started: float) -> Optional[dict]:
        log = self._log.bind(store_id=store_id, operation="reconnect")
        try:
            store = await self._require_store(store_id)
            credentials = await self._credentials_for(store)
            report = await self.indexer.index_store_data(store_id, credentials, lock_token=lock.token)
        except (AuthError, LockedError, StoreNotFound) + SYNC_ERRORS as e:
            await self._record_sync_failure(store_id, "reconnect", e)
            self._record("reconnect", "failed", started)
            return None
        except BaseException as e:
            await self._record_interrupted(store_id, "reconnect", e, started)
            raise
        else:
            await self._record_sync_success(store_id, report, "reconnect")
            await self._publish(StoreReconnectedEvent(store_id=store_id))
            self._record("reconnect", "partial" if report.partial else "succeeded", started)
            log.info("Reconnect complete", attempted=report.attempted, succeeded=report.succeeded, failed=report.failed)
            return report.to_dict()
        finally:
            await self._release(lock)

    # Delete

    async def delete(self, store_id: str) -> LifecycleAck:
        """Remove a store and all of its partitions.

        Inline: lock, mark Deleting, clear the active flag and drop the id
        from the scheduler. In the background: deactivate integrations, clear
        every partition, delete the row, release the lock.
        """
        store = await self._require_store(store_id)
        started = time.time()
        lock = await self._acquire(store_id, "delete", self.delete_lock_ttl)

        handed_off = False
        try:
            if store.state != StoreState.DELETING:
                self._transition(store, StoreState.DELETING)
            store.active = False
            await self.repository.update(store)
            await self.scheduler.remove(store_id)

            job = await self._submit(store_id, "delete", lambda: self._finish_delete(store_id, lock, started))
            handed_off = True
        finally:
            if not handed_off:
                await self._release(lock)

        self._log.bind(store_id=store_id, operation="delete").info("Store marked for deletion", job_id=job.id)
        return LifecycleAck(store_id=store_id, operation="delete", state=store.state.value, job_id=job.id)

    async def _finish_delete(self, store_id: str, lock: LockInfo, started: float) -> dict:
        log = self._log.bind(store_id=store_id, operation="delete")
        try:
            deactivated = await self.repository.deactivate_integrations(store_id)

            cleared: List[str] = []
            for key in list_partitions_for_store(store_id):
                await self.vector_store.delete_all_in_partition(key)
                cleared.append(key)

            store = await self.repository.get(store_id)
            if store is not None:
                self._transition(store, StoreState.DISCONNECTED)
            await self.repository.delete(store_id)
            await self.scheduler.remove(store_id)
        except Exception as e:
            log.error("Delete failed; store left in deleting state", error=str(e))
            await self._mark_error(store_id, e)
            self._record("delete", "failed", started)
            raise
        finally:
            await self._release(lock)

        await self._publish(StoreDeletedEvent(store_id=store_id, partitions_cleared=cleared))
        self._record("delete", "succeeded", started)
        log.info("Store deleted", integrations_deactivated=deactivated, partitions_cleared=len(cleared))
        return {"store_id": store_id, "partitions_cleared": cleared, "integrations_deactivated": deactivated}

    async def _mark_error(self, store_id: str, error: Exception) -> None:
        store = await self.repository.get(store_id)
        if store is not None:
            store.last_error = f"{type(error).__name__}: {error}"
            await self.repository.update(store)

    # Soft deactivation

    async def deactivate(self, store_id: str) -> LifecycleAck:
        """Stop syncing and serving a store while keeping its partitions."""
        store = await self._require_store(store_id)
        lock = await self._acquire(store_id, "deactivate", self.sync_lock_ttl)
        try:
            self._transition(store, StoreState.INACTIVE)
            store.active = False
            await self.repository.update(store)
            await self.scheduler.remove(store_id)
        finally:
            await self._release(lock)
        self._record("deactivate", "succeeded")
        self._log.bind(store_id=store_id).info("Store deactivated")
        return LifecycleAck(store_id=store_id, operation="deactivate", state=store.state.value)

    async def reactivate(self, store_id: str) -> LifecycleAck:
        """Resume a deactivated store and queue a resync."""
        store = await self._require_store(store_id)
        lock = await self._acquire(store_id, "reactivate", self.sync_lock_ttl)
        try:
            self._transition(store, StoreState.ACTIVE)
            store.active = True
            await self.repository.update(store)
            await self.scheduler.add(store_id)
        finally:
            await self._release(lock)
        job = await self.schedule_resync(store_id)
        self._record("reactivate", "succeeded")
        return LifecycleAck(store_id=store_id, operation="reactivate", state=store.state.value, job_id=job.id)

    # Scheduled resync

    async def schedule_resync(self, store_id: str) -> Job:
        """Queue a resync; used by ``SyncScheduler`` and the manual endpoint."""
        return await self._submit(store_id, "resync", lambda: self.resync(store_id))

    async def resync(self, store_id: str) -> Optional[dict]:
        """Re-index an active store in place, retrying previously failed entities.

        A scheduled id without an active row is removed from the scheduler
        rather than synced.
        """
        log = self._log.bind(store_id=store_id, operation="resync")
        store = await self.repository.get(store_id)
        if store is None or not store.active:
            await self.scheduler.remove(store_id)
            log.warning("Dropped scheduled sync for inactive or missing store")
            return None

        started = time.time()
        try:
            credentials = await self._credentials_for(store)
            await self.indexer.initialize_partitions(store_id)
            report = await self.indexer.index_store_data(
                store_id, credentials, previously_failed=store.failed_entities
            )
        except LockedError:
            log.info("Resync skipped, store is locked")
            self._record("resync", "superseded", started)
            return None
        except (AuthError,) + SYNC_ERRORS as e:
            await self._record_sync_failure(store_id, "resync", e)
            self._record("resync", "failed", started)
            return None
        except BaseException as e:
            await self._record_interrupted(store_id, "resync", e, started)
            raise

        await self._record_sync_success(store_id, report, "resync")
        self._record("resync", "partial" if report.partial else "succeeded", started)
        if report.recovered_ids:
            log.info("Previously failed entities recovered", count=len(report.recovered_ids))
        return report.to_dict()

    # Status and operator tooling

    async def get_status(self, store_id: str) -> StoreStatus:
        store = await self._require_store(store_id)
        counts = {}
        for category in ALL_CATEGORIES:
            info = await self.vector_store.describe_partition(generate_partition_key(store_id, category))
            counts[category.value] = info.vector_count
        lock = await self.locks.get(store_id)
        return StoreStatus(
            store_id=store_id,
            state=store.state.value,
            active=store.active,
            last_sync_at=store.last_sync_at,
            partition_counts=counts,
            locked=lock is not None,
            lock_operation=lock.operation if lock else None,
            needs_reconnection=store.needs_reconnection,
            last_error=store.last_error,
            failed_entities=len(store.failed_entities),
            scheduled=await self.scheduler.contains(store_id),
        )

    async def force_unlock(self, store_id: str) -> bool:
        """Drop a stuck lock; a store stuck in Reconnecting goes back to Active."""
        released = await self.locks.force_release(store_id)
        store = await self.repository.get(store_id)
        if store is not None and store.state == StoreState.RECONNECTING:
            self._transition(store, StoreState.ACTIVE)
            store.last_error = "Reconnect interrupted; lock force-released"
            await self.repository.update(store)
        self._log.bind(store_id=store_id).warning("Force unlock", released=released)
        return released

    async def find_orphaned_partitions(self) -> List[str]:
        """Partitions whose store row is gone, plus malformed keys."""
        orphans = []
        known = {}
        for key in await self.vector_store.list_partitions(PARTITION_PREFIX):
            try:
                store_id, _ = parse_partition_key(key)
            except InvalidPartitionFormat:
                orphans.append(key)
                continue
            if store_id not in known:
                known[store_id] = (
                    await self.repository.get(store_id) is not None or await self.locks.is_locked(store_id)
                )
            if not known[store_id]:
                orphans.append(key)
        return orphans

    async def purge_orphaned_partitions(self) -> List[str]:
        orphans = await self.find_orphaned_partitions()
        for key in orphans:
            await self.vector_store.delete_all_in_partition(key)
        if orphans:
            logger.warning("Purged orphaned partitions", count=len(orphans))
        return orphans

    async def reconcile_scheduler(self) -> List[str]:
        """Remove scheduled ids that have no active store row."""
        removed = []
        for store_id in await self.scheduler.list_active():
            store = await self.repository.get(store_id)
            if store is None or not store.active:
                await self.scheduler.remove(store_id)
                removed.append(store_id)
        if removed:
            logger.warning("Removed stale scheduler entries", store_ids=removed)
        return removed
