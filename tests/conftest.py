"""Shared fixtures for store RAG tests."""

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from storerag.common.metrics import MetricsCollector
from storerag.coordination.locks import InMemoryLockService
from storerag.coordination.scheduler import InMemorySchedulerService
from storerag.coordination.tasks import BackgroundTaskQueue
from storerag.indexer.document_indexer import DocumentIndexer
from storerag.integrations.platform import Credentials
from storerag.lifecycle.coordinator import StoreLifecycleCoordinator
from storerag.lifecycle.repository import InMemoryStoreRepository
from storerag.router.query_router import QueryRouter
from storerag.vector_store.memory import InMemoryVectorStore

from tests.fakes import DIMENSION, FakeEmbedder, FakeGenerator, FakePlatform, sample_store_data


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(platform_store_id="77", access_token="token-abc")


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("test", registry=CollectorRegistry())


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore(vector_dimension=DIMENSION)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def locks() -> InMemoryLockService:
    return InMemoryLockService()


@pytest.fixture
def scheduler() -> InMemorySchedulerService:
    return InMemorySchedulerService()


@pytest.fixture
def repository() -> InMemoryStoreRepository:
    return InMemoryStoreRepository()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform(sample_store_data())


@pytest.fixture
def indexer(vector_store, embedder, platform, locks, metrics) -> DocumentIndexer:
    return DocumentIndexer(
        vector_store=vector_store,
        embedder=embedder,
        platform=platform,
        locks=locks,
        index_timeout=10,
        partition_init_timeout=5,
        upsert_batch_size=20,
        metrics=metrics,
    )


@pytest_asyncio.fixture
async def tasks(metrics):
    queue = BackgroundTaskQueue(workers=2, default_timeout=10, metrics=metrics)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def coordinator(repository, vector_store, indexer, locks, scheduler, tasks, metrics) -> StoreLifecycleCoordinator:
    return StoreLifecycleCoordinator(
        repository=repository,
        vector_store=vector_store,
        indexer=indexer,
        locks=locks,
        scheduler=scheduler,
        tasks=tasks,
        metrics=metrics,
        task_timeout=10,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def query_router(vector_store, embedder, generator, locks, metrics) -> QueryRouter:
    return QueryRouter(
        vector_store=vector_store,
        embedder=embedder,
        generator=generator,
        locks=locks,
        metrics=metrics,
    )
