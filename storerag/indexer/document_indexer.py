"""Document indexer: seeds partitions and indexes a store's entities.

Indexing pass
- Fetch profile, catalog, orders and customers through the platform client
- Normalize each entity into one chunk and embed it
- Upsert chunks in batches by deterministic id (reruns overwrite)
- Derive one analytics summary chunk from the orders
- Drop the placeholder from every partition that received real chunks
- Skip entities older than their category's retention window and prune
  each partition to its ``CATEGORY_POLICIES`` limits

Failure semantics
- One entity failing to normalize, embed or upsert is counted and skipped;
  the pass continues and reports ``{attempted, succeeded, failed, errors}``
- ``AuthError``/``NeedsReconnection`` propagate: nothing else can succeed
- The pass runs under a wall-clock budget; when it runs out the pass stops
  with ``timed_out=True`` and everything already written stays valid
- Before every write the store lock is checked. A lock held by anyone other
  than the caller (``lock_token``) aborts the pass with ``LockedError``
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
import structlog

from storerag.common.errors import EmbeddingFailure, LockedError, PlatformError, RateLimited
from storerag.common.logging import log_performance
from storerag.common.metrics import MetricsCollector
from storerag.coordination.locks import LockService
from storerag.integrations.capabilities import Embedder
from storerag.integrations.platform import Credentials, StorePlatformClient
from storerag.namespaces.registry import (
    ALL_CATEGORIES,
    CATEGORY_POLICIES,
    Category,
    generate_partition_key,
    retention_cutoff,
)
from storerag.vector_store.base import DocumentChunk, PartitionedVectorStore, VectorStoreError

from .normalizer import (
    ENTITY_CATEGORIES,
    NormalizedEntity,
    PLACEHOLDER_ENTITY_TYPE,
    normalize_entity,
    normalize_sales_summary,
    parse_timestamp,
    placeholder_chunk_id,
    placeholder_text,
)

logger = structlog.get_logger("indexer.document_indexer")

ENTITY_TYPES = ("store", "products", "orders", "customers")


@dataclass
class IndexReport:
    """Outcome of one ``index_store_data`` pass."""
    store_id: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    recovered_ids: List[str] = field(default_factory=list)
    fetch_errors: Dict[str, str] = field(default_factory=dict)
    derived: int = 0
    skipped: int = 0
    pruned: int = 0
    timed_out: bool = False
    categories_with_data: Set[Category] = field(default_factory=set)
    duration_ms: float = 0.0
    max_errors: int = 10

    @property
    def partial(self) -> bool:
        return self.failed > 0 or bool(self.fetch_errors) or self.timed_out

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(message)

    def record_failure(self, entity_key: str, error: Any) -> None:
        self.failed += 1
        self.failed_ids.append(entity_key)
        self.add_error(f"{entity_key}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_id": self.store_id,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
            "failed_ids": list(self.failed_ids),
            "recovered_ids": list(self.recovered_ids),
            "fetch_errors": dict(self.fetch_errors),
            "derived": self.derived,
            "skipped": self.skipped,
            "pruned": self.pruned,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
        }


class _Deadline:
    """Wall-clock budget shared by every await in a pass."""

    def __init__(self, seconds: float):
        self._loop = asyncio.get_running_loop()
        self._expires = self._loop.time() + seconds

    @property
    def remaining(self) -> float:
        return self._expires - self._loop.time()

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await within the remaining budget; raises ``asyncio.TimeoutError``."""
        return await asyncio.wait_for(awaitable, timeout=max(self.remaining, 0.0))


class DocumentIndexer:
    """Writes a store's documents into its six partitions."""

    def __init__(
        self,
        vector_store: PartitionedVectorStore,
        embedder: Embedder,
        platform: StorePlatformClient,
        locks: LockService,
        index_timeout: float = 45.0,
        partition_init_timeout: float = 15.0,
        upsert_batch_size: int = 50,
        page_size: int = 50,
        max_pages: int = 20,
        max_reported_errors: int = 10,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Parameters
        - vector_store: Partitioned store receiving chunks
        - embedder: Embedding capability
        - platform: Credential-gated platform client
        - locks: Checked before every write
        - index_timeout / partition_init_timeout: Wall-clock budgets in seconds
        - upsert_batch_size: Chunks per upsert call
        - page_size / max_pages: Platform pagination bounds
        - max_reported_errors: Cap on ``IndexReport.errors``
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.platform = platform
        self.locks = locks
        self.index_timeout = index_timeout
        self.partition_init_timeout = partition_init_timeout
        self.upsert_batch_size = max(1, upsert_batch_size)
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_reported_errors = max_reported_errors
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: Any, **components: Any) -> "DocumentIndexer":
        return cls(
            index_timeout=config.rag_index_timeout,
            partition_init_timeout=config.rag_partition_init_timeout,
            upsert_batch_size=config.rag_upsert_batch_size,
            page_size=config.rag_page_size,
            max_pages=config.rag_max_pages,
            max_reported_errors=config.rag_max_reported_errors,
            **components,
        )

    async def ensure_writable(self, store_id: str, lock_token: Optional[str] = None) -> None:
        """Raise ``LockedError`` if someone other than ``lock_token`` holds the lock."""
        lock = await self.locks.get(store_id)
        if lock is not None and lock.token != lock_token:
            raise LockedError(store_id, lock.reason)

    # Partition initialization

    async def initialize_partitions(self, store_id: str, lock_token: Optional[str] = None) -> int:
        """Seed every missing partition with a placeholder chunk.

        Idempotent: existing partitions are left alone and placeholder ids are
        deterministic. Returns how many partitions were created.
        """
        created = await asyncio.wait_for(
            self._initialize_partitions(store_id, lock_token),
            timeout=self.partition_init_timeout,
        )
        logger.info("Partitions initialized", store_id=store_id, created=created)
        return created

    async def _initialize_partitions(self, store_id: str, lock_token: Optional[str]) -> int:
        created = 0
        for category in ALL_CATEGORIES:
            key = generate_partition_key(store_id, category)
            info = await self.vector_store.describe_partition(key)
            if info.exists:
                continue
            chunk = await self._placeholder_chunk(store_id, category)
            await self.ensure_writable(store_id, lock_token)
            await self.vector_store.upsert([chunk])
            created += 1
        return created

    async def reseed_partitions(self, store_id: str, lock_token: Optional[str] = None) -> int:
        """Replace the contents of all six partitions with fresh placeholders.

        Every placeholder is embedded before anything is deleted, so an
        embedding failure leaves the existing partitions as they were.
        """
        chunks = await asyncio.wait_for(
            self._placeholder_chunks(store_id),
            timeout=self.partition_init_timeout,
        )
        for chunk in chunks:
            await self.ensure_writable(store_id, lock_token)
            await self.vector_store.delete_all_in_partition(chunk.partition_key)
            await self.vector_store.upsert([chunk])
        logger.info("Partitions reseeded", store_id=store_id, partitions=len(chunks))
        return len(chunks)

    async def _placeholder_chunks(self, store_id: str) -> List[DocumentChunk]:
        return [await self._placeholder_chunk(store_id, category) for category in ALL_CATEGORIES]

    async def _placeholder_chunk(self, store_id: str, category: Category) -> DocumentChunk:
        text = placeholder_text(store_id, category)
        embedding = await self.embedder.embed(text)
        return DocumentChunk(
            id=placeholder_chunk_id(category),
            partition_key=generate_partition_key(store_id, category),
            text=text,
            embedding=embedding,
            metadata={
                "store_id": store_id,
                "category": category.value,
                "entity_type": PLACEHOLDER_ENTITY_TYPE,
                "source_entity_id": f"placeholder-{store_id}-{category.value}",
                "source": "initialization",
                "timestamp": time.time(),
                "is_placeholder": True,
            },
        )

    async def enforce_retention(self, store_id: str, lock_token: Optional[str] = None) -> int:
        """Prune expired and overflowing chunks per ``CATEGORY_POLICIES``.

        A partition emptied by pruning gets its placeholder back. Returns how
        many chunks were removed.
        """
        now = time.time()
        removed = 0
        for category in ALL_CATEGORIES:
            await self.ensure_writable(store_id, lock_token)
            removed += await self.vector_store.prune_partition(
                generate_partition_key(store_id, category),
                older_than=retention_cutoff(category, now),
                keep_newest=CATEGORY_POLICIES[category].max_vectors,
            )
        if removed:
            await self.initialize_partitions(store_id, lock_token)
            logger.info("Retention enforced", store_id=store_id, removed=removed)
        return removed

    # Indexing

    async def index_store_data(
        self,
        store_id: str,
        credentials: Credentials,
        lock_token: Optional[str] = None,
        previously_failed: Iterable[str] = (),
    ) -> IndexReport:
        """Fetch, normalize, embed and upsert every entity of the store.

        ``previously_failed`` lists entity keys (``"products:42"``) that failed
        in an earlier pass; those that succeed now are listed in
        ``recovered_ids``.
        """
        report = IndexReport(store_id=store_id, max_errors=self.max_reported_errors)
        deadline = _Deadline(self.index_timeout)
        started = time.time()
        succeeded_keys: Set[str] = set()

        await self.ensure_writable(store_id, lock_token)

        orders: List[Dict[str, Any]] = []
        for entity_type in ENTITY_TYPES:
            if deadline.expired:
                report.timed_out = True
                break

            try:
                entities = await deadline.run(
                    self.platform.fetch_all(credentials, entity_type, self.page_size, self.max_pages)
                )
            except asyncio.TimeoutError:
                report.timed_out = True
                break
            except (PlatformError, RateLimited) as e:
                logger.warning("Entity fetch failed", store_id=store_id, entity_type=entity_type, error=str(e))
                report.fetch_errors[entity_type] = str(e)
                report.add_error(f"fetch {entity_type}: {e}")
                continue

            if entity_type == "orders":
                orders = self._retained_orders(entities)

            await self._index_entities(store_id, entity_type, entities, report, deadline, lock_token, succeeded_keys)
            if report.timed_out:
                break

        if orders and not report.timed_out:
            await self._index_sales_summary(store_id, orders, report, deadline, lock_token)

        await self._drop_placeholders(store_id, report.categories_with_data, lock_token)
        try:
            report.pruned = await self.enforce_retention(store_id, lock_token)
        except (asyncio.TimeoutError, EmbeddingFailure, VectorStoreError) as e:
            logger.warning("Retention not enforced", store_id=store_id, error=str(e))
            report.add_error(f"retention: {e}")

        previously_failed = set(previously_failed)
        report.recovered_ids = sorted(previously_failed & succeeded_keys)
        report.duration_ms = (time.time() - started) * 1000

        if report.failed:
            logger.warning(
                "Index pass finished with failures",
                store_id=store_id,
                failed=report.failed,
                sample_errors=report.errors[:3],
            )
        log_performance(
            "index_store_data",
            report.duration_ms,
            store_id=store_id,
            attempted=report.attempted,
            succeeded=report.succeeded,
            failed=report.failed,
            timed_out=report.timed_out,
        )
        if self.metrics is not None:
            outcome = "timeout" if report.timed_out else ("partial" if report.partial else "ok")
            self.metrics.record_index_pass(outcome, report.duration_ms / 1000)
        return report

    async def _index_entities(
        self,
        store_id: str,
        entity_type: str,
        entities: Sequence[Dict[str, Any]],
        report: IndexReport,
        deadline: _Deadline,
        lock_token: Optional[str],
        succeeded_keys: Set[str],
    ) -> None:
        category = ENTITY_CATEGORIES[entity_type]
        cutoff = retention_cutoff(category, time.time())
        failed_before = report.failed
        succeeded_before = report.succeeded

        for start in range(0, len(entities), self.upsert_batch_size):
            batch = entities[start:start + self.upsert_batch_size]
            pending: List[DocumentChunk] = []

            for entity in batch:
                if deadline.expired:
                    report.timed_out = True
                    break
                entity_key = f"{entity_type}:{entity.get('id')}"
                try:
                    normalized = normalize_entity(entity_type, entity)
                except ValueError as e:
                    report.attempted += 1
                    report.record_failure(entity_key, e)
                    continue
                if cutoff is not None and normalized.timestamp < cutoff:
                    report.skipped += 1
                    continue

                report.attempted += 1
                try:
                    embedding = await deadline.run(self.embedder.embed(normalized.text))
                except asyncio.TimeoutError:
                    report.record_failure(entity_key, "timed out")
                    report.timed_out = True
                    break
                except EmbeddingFailure as e:
                    report.record_failure(entity_key, e)
                    continue
                pending.append(self._chunk(store_id, normalized, embedding))

            if pending:
                written = await self._write(store_id, pending, report, lock_token)
                succeeded_keys.update(written)
            if report.timed_out:
                break

        if self.metrics is not None:
            self.metrics.record_indexed_entity(category.value, "succeeded", report.succeeded - succeeded_before)
            self.metrics.record_indexed_entity(category.value, "failed", report.failed - failed_before)

    @staticmethod
    def _retained_orders(orders: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        cutoff = retention_cutoff(Category.ORDERS, time.time())
        if cutoff is None:
            return list(orders)
        return [
            o for o in orders
            if isinstance(o, dict) and parse_timestamp(o.get("updated_at"), o.get("created_at")) >= cutoff
        ]

    async def _index_sales_summary(
        self,
        store_id: str,
        orders: Sequence[Dict[str, Any]],
        report: IndexReport,
        deadline: _Deadline,
        lock_token: Optional[str],
    ) -> None:
        summary = normalize_sales_summary(orders)
        if summary is None:
            return
        try:
            embedding = await deadline.run(self.embedder.embed(summary.text))
            chunk = self._chunk(store_id, summary, embedding)
            await self.ensure_writable(store_id, lock_token)
            await self.vector_store.upsert([chunk])
        except asyncio.TimeoutError:
            report.timed_out = True
            return
        except (EmbeddingFailure, VectorStoreError) as e:
            logger.warning("Sales summary not indexed", store_id=store_id, error=str(e))
            report.add_error(f"analytics summary: {e}")
            return
        report.derived += 1
        report.categories_with_data.add(Category.ANALYTICS)

    async def _write(
        self,
        store_id: str,
        chunks: List[DocumentChunk],
        report: IndexReport,
        lock_token: Optional[str],
    ) -> List[str]:
        """Upsert a batch, falling back to one-by-one so one bad chunk fails alone."""
        await self.ensure_writable(store_id, lock_token)
        try:
            await self.vector_store.upsert(chunks)
            written = chunks
        except VectorStoreError as e:
            logger.warning("Batch upsert failed, retrying chunks individually", store_id=store_id, error=str(e))
            written = []
            for chunk in chunks:
                await self.ensure_writable(store_id, lock_token)
                try:
                    await self.vector_store.upsert([chunk])
                except VectorStoreError as chunk_error:
                    report.record_failure(self._entity_key(chunk), chunk_error)
                    continue
                written.append(chunk)

        report.succeeded += len(written)
        for chunk in written:
            report.categories_with_data.add(Category(chunk.metadata["category"]))
        return [self._entity_key(chunk) for chunk in written]

    async def _drop_placeholders(self, store_id: str, categories: Set[Category], lock_token: Optional[str]) -> None:
        for category in sorted(categories, key=ALL_CATEGORIES.index):
            await self.ensure_writable(store_id, lock_token)
            await self.vector_store.delete_ids(
                generate_partition_key(store_id, category), [placeholder_chunk_id(category)]
            )

    @staticmethod
    def _entity_key(chunk: DocumentChunk) -> str:
        return f"{chunk.metadata.get('entity_type')}:{chunk.metadata.get('source_entity_id')}"

    @staticmethod
    def _chunk(store_id: str, normalized: NormalizedEntity, embedding: np.ndarray) -> DocumentChunk:
        metadata = {
            **normalized.metadata,
            "store_id": store_id,
            "category": normalized.category.value,
            "entity_type": normalized.entity_type,
            "source_entity_id": normalized.entity_id,
            "timestamp": normalized.timestamp,
            "is_placeholder": False,
        }
        return DocumentChunk(
            id=normalized.chunk_id,
            partition_key=generate_partition_key(store_id, normalized.category),
            text=normalized.text,
            embedding=embedding,
            metadata=metadata,
        )
