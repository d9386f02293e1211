"""Tests for store connect, reconnect, delete and resync procedures."""

import pytest

from storerag.common.errors import EmbeddingFailure, InvalidTransition, LockConflict, StoreNotFound
from storerag.coordination.tasks import JobStatus
from storerag.indexer.document_indexer import DocumentIndexer
from storerag.integrations.platform import Credentials
from storerag.lifecycle.coordinator import StoreLifecycleCoordinator
from storerag.lifecycle.models import StoreState
from storerag.namespaces.registry import Category, generate_partition_key, list_partitions_for_store
from storerag.vector_store.base import DocumentChunk

from tests.fakes import FakePlatform


async def connect_and_wait(coordinator, tasks, store_id, credentials):
    ack = await coordinator.connect(store_id, credentials)
    await tasks.wait(ack.job_id, timeout=10)
    return ack


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_acknowledges_then_indexes(self, coordinator, tasks, scheduler, credentials):
        ack = await coordinator.connect("s1", credentials)
        assert ack.acknowledged
        assert ack.state == StoreState.CONNECTING.value
        assert await scheduler.contains("s1")

        await tasks.wait(ack.job_id, timeout=10)
        status = await coordinator.get_status("s1")
        assert status.state == StoreState.ACTIVE.value
        assert status.last_sync_at is not None
        assert status.partition_counts[Category.CATALOG.value] == 3
        assert all(count >= 1 for count in status.partition_counts.values())
        assert not status.locked

    @pytest.mark.asyncio
    async def test_connect_existing_store_reconnects(self, coordinator, tasks, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        ack = await coordinator.connect("s1", credentials)
        assert ack.operation == "reconnect"
        await tasks.wait(ack.job_id, timeout=10)

    @pytest.mark.asyncio
    async def test_auth_failure_flags_store(self, repository, vector_store, embedder, locks, scheduler, tasks, credentials):
        indexer = DocumentIndexer(vector_store, embedder, FakePlatform(auth_error=True), locks, index_timeout=10)
        coordinator = StoreLifecycleCoordinator(repository, vector_store, indexer, locks, scheduler, tasks)

        await connect_and_wait(coordinator, tasks, "s1", credentials)

        store = await repository.get("s1")
        assert store.needs_reconnection
        assert store.state == StoreState.ACTIVE
        assert "AuthError" in store.last_error


class TestReconnect:
    @pytest.mark.asyncio
    async def test_partitions_are_populated_when_reconnect_returns(self, coordinator, tasks, vector_store, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)

        ack = await coordinator.reconnect("s1", Credentials(platform_store_id="77", access_token="new-token"))

        for key in list_partitions_for_store("s1"):
            info = await vector_store.describe_partition(key)
            assert info.exists and info.vector_count >= 1

        await tasks.wait(ack.job_id, timeout=10)
        status = await coordinator.get_status("s1")
        assert status.state == StoreState.ACTIVE.value
        assert not status.locked
        assert status.partition_counts[Category.CATALOG.value] == 3

    @pytest.mark.asyncio
    async def test_reconnect_clears_stale_vectors(self, coordinator, tasks, vector_store, embedder, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        key = generate_partition_key("s1", Category.CATALOG)
        stale = DocumentChunk(
            id="stale", partition_key=key, text="producto discontinuado",
            embedding=await embedder.embed("producto discontinuado"), metadata={},
        )
        await vector_store.upsert([stale])

        ack = await coordinator.reconnect("s1", credentials)
        await tasks.wait(ack.job_id, timeout=10)

        assert await vector_store.delete_ids(key, ["stale"]) == 0

    @pytest.mark.asyncio
    async def test_concurrent_operation_is_rejected(self, coordinator, tasks, locks, metrics, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        await locks.acquire("s1", "delete")

        with pytest.raises(LockConflict):
            await coordinator.reconnect("s1", credentials)
        with pytest.raises(LockConflict):
            await coordinator.delete("s1")

        assert "store_lock_conflicts_total" in metrics.get_metrics()
        store = await coordinator.repository.get("s1")
        assert store.state == StoreState.ACTIVE

    @pytest.mark.asyncio
    async def test_reconnect_unknown_store(self, coordinator, credentials):
        with pytest.raises(StoreNotFound):
            await coordinator.reconnect("missing", credentials)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_every_partition(self, coordinator, tasks, vector_store, scheduler, locks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        repository.register_integration("s1", "whatsapp")

        ack = await coordinator.delete("s1")
        assert ack.state == StoreState.DELETING.value
        assert not await scheduler.contains("s1")

        job = await tasks.wait(ack.job_id, timeout=10)
        assert job.result["integrations_deactivated"] == 1

        for key in list_partitions_for_store("s1"):
            assert not (await vector_store.describe_partition(key)).exists
        assert await repository.get("s1") is None
        assert not await locks.is_locked("s1")
        assert not await scheduler.contains("s1")

    @pytest.mark.asyncio
    async def test_delete_during_initial_sync_wins(self, coordinator, tasks, vector_store, repository, credentials):
        connect_ack = await coordinator.connect("s1", credentials)
        delete_ack = await coordinator.delete("s1")

        await tasks.wait(connect_ack.job_id, timeout=10)
        await tasks.wait(delete_ack.job_id, timeout=10)

        assert await repository.get("s1") is None
        assert await vector_store.list_partitions("store-s1-") == []


class TestSoftDeactivation:
    @pytest.mark.asyncio
    async def test_deactivate_and_reactivate(self, coordinator, tasks, scheduler, vector_store, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)

        ack = await coordinator.deactivate("s1")
        assert ack.state == StoreState.INACTIVE.value
        assert not await scheduler.contains("s1")
        assert len(await vector_store.list_partitions("store-s1-")) == 6

        ack = await coordinator.reactivate("s1")
        assert ack.state == StoreState.ACTIVE.value
        assert await scheduler.contains("s1")
        await tasks.wait(ack.job_id, timeout=10)

    @pytest.mark.asyncio
    async def test_inactive_store_cannot_be_deactivated_twice(self, coordinator, tasks, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        await coordinator.deactivate("s1")
        with pytest.raises(InvalidTransition):
            await coordinator.deactivate("s1")


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_drops_store_without_active_row(self, coordinator, scheduler, vector_store):
        await scheduler.add("ghost")
        assert await coordinator.resync("ghost") is None
        assert not await scheduler.contains("ghost")
        assert await vector_store.list_partitions("store-ghost-") == []

    @pytest.mark.asyncio
    async def test_resync_retries_previously_failed_entities(self, coordinator, tasks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        store = await repository.get("s1")
        store.failed_entities = ["products:1001"]
        await repository.update(store)

        job = await tasks.wait((await coordinator.schedule_resync("s1")).id, timeout=10)

        assert job.result["recovered_ids"] == ["products:1001"]
        assert (await repository.get("s1")).failed_entities == []

    @pytest.mark.asyncio
    async def test_resync_skips_locked_store(self, coordinator, tasks, locks, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        await locks.acquire("s1", "reconnect")
        assert await coordinator.resync("s1") is None


class TestOperatorTools:
    @pytest.mark.asyncio
    async def test_orphaned_partitions_are_found_and_purged(self, coordinator, tasks, vector_store, embedder, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        orphan_key = generate_partition_key("gone", Category.ORDERS)
        chunk = DocumentChunk(
            id="o1", partition_key=orphan_key, text="pedido",
            embedding=await embedder.embed("pedido"), metadata={},
        )
        await vector_store.upsert([chunk])

        assert await coordinator.find_orphaned_partitions() == [orphan_key]
        assert await coordinator.purge_orphaned_partitions() == [orphan_key]
        assert await coordinator.find_orphaned_partitions() == []
        assert len(await vector_store.list_partitions("store-s1-")) == 6

    @pytest.mark.asyncio
    async def test_reconcile_scheduler(self, coordinator, tasks, scheduler, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        await scheduler.add("ghost")
        assert await coordinator.reconcile_scheduler() == ["ghost"]
        assert await scheduler.list_active() == ["s1"]

    @pytest.mark.asyncio
    async def test_force_unlock_recovers_stuck_reconnect(self, coordinator, tasks, locks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        store = await repository.get("s1")
        store.state = StoreState.RECONNECTING
        await repository.update(store)
        await locks.acquire("s1", "reconnect")

        assert await coordinator.force_unlock("s1")
        store = await repository.get("s1")
        assert store.state == StoreState.ACTIVE
        assert store.last_error
        assert not await locks.is_locked("s1")


class TestFailurePaths:
    @pytest.mark.asyncio
    async def test_reconnect_job_timeout_returns_store_to_active(self, coordinator, tasks, platform, locks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        platform.delay = 5
        coordinator.task_timeout = 0.3

        ack = await coordinator.reconnect("s1", credentials)
        job = await tasks.wait(ack.job_id, timeout=5)

        assert job.status == JobStatus.TIMED_OUT
        store = await repository.get("s1")
        assert store.state == StoreState.ACTIVE
        assert "TimeoutError" in store.last_error
        assert not await locks.is_locked("s1")

        platform.delay = 0
        delete_ack = await coordinator.delete("s1")
        await tasks.wait(delete_ack.job_id, timeout=10)
        assert await repository.get("s1") is None

    @pytest.mark.asyncio
    async def test_initial_sync_timeout_is_reported_in_status(self, coordinator, tasks, platform, credentials):
        platform.delay = 5
        coordinator.task_timeout = 0.3

        ack = await coordinator.connect("s1", credentials)
        job = await tasks.wait(ack.job_id, timeout=5)

        assert job.status == JobStatus.TIMED_OUT
        status = await coordinator.get_status("s1")
        assert status.state == StoreState.ACTIVE.value
        assert "TimeoutError" in status.last_error
        assert not status.locked

    @pytest.mark.asyncio
    async def test_connect_known_store_under_held_lock_is_deferred(self, coordinator, tasks, locks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        await locks.acquire("s1", "reconnect")

        ack = await coordinator.connect("s1", Credentials(platform_store_id="78", access_token="fresh-token"))

        assert ack.acknowledged
        assert ack.operation == "connect"
        assert ack.job_id is None
        assert ack.state == StoreState.ACTIVE.value
        store = await repository.get("s1")
        assert store.last_error.startswith("Connect deferred")
        assert store.platform_store_id == "78"
        saved = await repository.get_credentials(store.credential_ref)
        assert saved.access_token == "fresh-token"

    @pytest.mark.asyncio
    async def test_connect_during_delete_does_not_revive_store(self, coordinator, tasks, repository, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        delete_ack = await coordinator.delete("s1")

        ack = await coordinator.connect("s1", credentials)
        assert ack.acknowledged
        assert ack.job_id is None

        await tasks.wait(delete_ack.job_id, timeout=10)
        assert await repository.get("s1") is None

    @pytest.mark.asyncio
    async def test_reconnect_with_embedder_down_keeps_partitions(self, coordinator, tasks, embedder, locks, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        embedder.down = True

        with pytest.raises(EmbeddingFailure):
            await coordinator.reconnect("s1", credentials)

        status = await coordinator.get_status("s1")
        assert status.state == StoreState.ACTIVE.value
        assert status.partition_counts[Category.CATALOG.value] == 3
        assert all(count >= 1 for count in status.partition_counts.values())
        assert not await locks.is_locked("s1")
        assert "embedding service down" in status.last_error

        await tasks.join()
        assert tasks.jobs_for_store("s1")[-1].operation == "resync"

    @pytest.mark.asyncio
    async def test_connect_with_embedder_down_is_acknowledged(self, coordinator, tasks, embedder, credentials):
        await connect_and_wait(coordinator, tasks, "s1", credentials)
        embedder.down = True

        ack = await coordinator.connect("s1", credentials)

        assert ack.acknowledged
        assert ack.job_id is None
        await tasks.join()
        status = await coordinator.get_status("s1")
        assert status.state == StoreState.ACTIVE.value
        assert status.partition_counts[Category.CATALOG.value] == 3
        assert not status.locked
