"""Component wiring for the store RAG service.

``ServiceRuntime`` builds every collaborator from ``ServiceConfig`` (memory,
Redis or Postgres backends) and owns their startup and shutdown. Tests pass
ready-made components as keyword overrides.
"""

from contextlib import suppress
from typing import Any, Optional

import structlog

from storerag.common.config import ServiceConfig
from storerag.common.events import EventPublisher, create_event_publisher
from storerag.common.metrics import MetricsCollector, get_metrics_collector
from storerag.coordination.locks import InMemoryLockService, LockService, RedisLockService
from storerag.coordination.scheduler import (
    InMemorySchedulerService,
    RedisSchedulerService,
    SchedulerService,
    SyncScheduler,
)
from storerag.coordination.tasks import BackgroundTaskQueue
from storerag.indexer.document_indexer import DocumentIndexer
from storerag.integrations.capabilities import Embedder, Generator, HttpEmbeddingClient, HttpGenerationClient
from storerag.integrations.platform import StorePlatformClient, TiendaNubeClient
from storerag.lifecycle.coordinator import StoreLifecycleCoordinator
from storerag.lifecycle.repository import InMemoryStoreRepository, PgStoreRepository, StoreRepository
from storerag.router.query_router import QueryRouter
from storerag.vector_store.base import PartitionedVectorStore
from storerag.vector_store.factory import create_vector_store_from_config

logger = structlog.get_logger("service.runtime")


class ServiceRuntime:
    """Owns the coordinator, router and their shared backends.

    Parameters
    - config: ``ServiceConfig`` selecting backends and tuning knobs
    - overrides: optional pre-built components (``vector_store``, ``locks``,
      ``scheduler``, ``repository``, ``embedder``, ``generator``,
      ``platform``, ``publisher``, ``metrics``)
    """

    def __init__(self, config: Optional[ServiceConfig] = None, **overrides: Any):
        self.config = config or ServiceConfig()
        c = self.config

        self.metrics: MetricsCollector = overrides.get("metrics") or get_metrics_collector(c.rag_service_name)
        self.vector_store: PartitionedVectorStore = overrides.get("vector_store") or create_vector_store_from_config(c)
        self.locks: LockService = overrides.get("locks") or self._create_locks()
        self.scheduler: SchedulerService = overrides.get("scheduler") or self._create_scheduler()
        self.repository: StoreRepository = overrides.get("repository") or self._create_repository()
        self.embedder: Embedder = overrides.get("embedder") or HttpEmbeddingClient(
            c.rag_embedding_service_url,
            timeout=c.rag_capability_timeout,
            max_attempts=c.rag_capability_max_attempts,
        )
        self.generator: Generator = overrides.get("generator") or HttpGenerationClient(
            c.rag_generation_service_url,
            fallback_text=c.rag_fallback_response,
            timeout=c.rag_capability_timeout,
            max_attempts=c.rag_capability_max_attempts,
        )
        self.platform: StorePlatformClient = overrides.get("platform") or TiendaNubeClient(
            base_url=c.rag_platform_api_url,
            user_agent=c.rag_platform_user_agent,
            timeout=c.rag_platform_timeout,
        )
        self.publisher: Optional[EventPublisher] = overrides.get("publisher")
        if self.publisher is None and c.rag_events_enabled:
            self.publisher = create_event_publisher(c.rag_redis_url, c.rag_events_channel_prefix)

        self.tasks = BackgroundTaskQueue(
            workers=c.rag_task_workers,
            default_timeout=c.rag_task_timeout,
            metrics=self.metrics,
        )
        self.indexer = DocumentIndexer.from_config(
            c,
            vector_store=self.vector_store,
            embedder=self.embedder,
            platform=self.platform,
            locks=self.locks,
            metrics=self.metrics,
        )
        self.coordinator = StoreLifecycleCoordinator.from_config(
            c,
            repository=self.repository,
            vector_store=self.vector_store,
            indexer=self.indexer,
            locks=self.locks,
            scheduler=self.scheduler,
            tasks=self.tasks,
            publisher=self.publisher,
            metrics=self.metrics,
        )
        self.router = QueryRouter.from_config(
            c,
            vector_store=self.vector_store,
            embedder=self.embedder,
            generator=self.generator,
            locks=self.locks,
            metrics=self.metrics,
        )
        self.sync_scheduler = SyncScheduler(
            scheduler=self.scheduler,
            locks=self.locks,
            trigger=self.coordinator.schedule_resync,
            interval_seconds=c.rag_sync_interval,
            tick_seconds=c.rag_scheduler_tick,
        )

    def _create_locks(self) -> LockService:
        if self.config.rag_coordination_backend == "redis":
            return RedisLockService(self.config.rag_redis_url)
        return InMemoryLockService()

    def _create_scheduler(self) -> SchedulerService:
        if self.config.rag_coordination_backend == "redis":
            return RedisSchedulerService(self.config.rag_redis_url)
        return InMemorySchedulerService()

    def _create_repository(self) -> StoreRepository:
        if self.config.rag_repository_backend == "postgres":
            return PgStoreRepository(self.config.rag_database_dsn)
        return InMemoryStoreRepository()

    async def initialize(self, start_scheduler: bool = True) -> None:
        """Prepare schemas and start background workers."""
        for component in (self.vector_store, self.repository):
            ensure_schema = getattr(component, "ensure_schema", None)
            if ensure_schema is not None:
                await ensure_schema()

        await self.tasks.start()
        removed = await self.coordinator.reconcile_scheduler()
        if removed:
            logger.warning("Scheduler had stale entries at startup", store_ids=removed)
        if start_scheduler:
            self.sync_scheduler.start()
        logger.info(
            "Runtime initialized",
            vector_backend=self.config.rag_vector_backend,
            coordination_backend=self.config.rag_coordination_backend,
            repository_backend=self.config.rag_repository_backend,
        )

    async def health_check(self) -> bool:
        vector_ok = await self.vector_store.health_check()
        repository_ok = await self.repository.health_check()
        return vector_ok and repository_ok

    async def cleanup(self) -> None:
        """Stop workers and close every backend."""
        await self.sync_scheduler.stop()
        await self.tasks.stop()
        for component in (
            self.platform,
            self.embedder,
            self.generator,
            self.publisher,
            self.locks,
            self.scheduler,
            self.repository,
            self.vector_store,
        ):
            close = getattr(component, "close", None)
            if close is None:
                continue
            with suppress(Exception):
                await close()
        logger.info("Runtime cleaned up")
