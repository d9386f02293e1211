"""In-memory partitioned vector store backed by numpy.

Suitable for single-process deployments and tests. Partitions are plain
dicts of ``id -> DocumentChunk``; an empty partition is dropped so that
``describe_partition`` reports it as nonexistent.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import structlog

from .base import (
    DocumentChunk,
    PartitionInfo,
    PartitionedVectorStore,
    SearchHit,
    VectorStoreQueryError,
    metadata_matches,
)

logger = structlog.get_logger("vector_store.memory")


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row, clipped to [0, 1]."""
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ query / denom, 0.0)
    return np.clip(scores, 0.0, 1.0)


class InMemoryVectorStore(PartitionedVectorStore):
    """Dictionary-backed implementation of ``PartitionedVectorStore``."""

    def __init__(self, vector_dimension: Optional[int] = None):
        self.vector_dimension = vector_dimension
        self._partitions: Dict[str, Dict[str, DocumentChunk]] = {}

    def _ensure_vector(self, vector: Any) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise VectorStoreQueryError("Vector must be one-dimensional")
        if self.vector_dimension is not None and array.shape[0] != self.vector_dimension:
            raise VectorStoreQueryError(
                f"Expected vector dimension {self.vector_dimension}, got {array.shape[0]}"
            )
        return array

    async def upsert(self, chunks: Sequence[DocumentChunk]) -> int:
        # Whole batch is validated before any chunk is written.
        prepared = []
        for chunk in chunks:
            prepared.append((chunk, self._ensure_vector(chunk.embedding)))

        for chunk, vector in prepared:
            stored = DocumentChunk(
                id=chunk.id,
                partition_key=chunk.partition_key,
                text=chunk.text,
                embedding=vector,
                metadata=dict(chunk.metadata),
            )
            self._partitions.setdefault(chunk.partition_key, {})[chunk.id] = stored

        logger.debug("Upserted chunks", count=len(prepared))
        return len(prepared)

    async def search(
        self,
        partition_keys: Sequence[str],
        query_embedding: np.ndarray,
        top_k: int = 5,
        score_threshold: float = 0.0,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        query = self._ensure_vector(query_embedding)

        candidates: List[DocumentChunk] = []
        for key in dict.fromkeys(partition_keys):
            for chunk in self._partitions.get(key, {}).values():
                if metadata_matches(chunk.metadata, metadata_filter):
                    candidates.append(chunk)

        if not candidates or top_k <= 0:
            return []

        matrix = np.vstack([c.embedding for c in candidates])
        scores = cosine_scores(query, matrix)

        hits = [
            SearchHit(chunk=chunk, score=float(score))
            for chunk, score in zip(candidates, scores)
            if score >= score_threshold
        ]
        hits.sort(key=lambda h: (h.score, h.chunk.timestamp), reverse=True)
        return hits[:top_k]

    async def delete_all_in_partition(self, partition_key: str) -> int:
        removed = self._partitions.pop(partition_key, None)
        count = len(removed) if removed else 0
        logger.info("Cleared partition", partition_key=partition_key, removed=count)
        return count

    async def delete_ids(self, partition_key: str, ids: Sequence[str]) -> int:
        partition = self._partitions.get(partition_key)
        if not partition:
            return 0
        removed = 0
        for chunk_id in ids:
            if partition.pop(chunk_id, None) is not None:
                removed += 1
        if not partition:
            del self._partitions[partition_key]
        return removed

    async def prune_partition(
        self,
        partition_key: str,
        older_than: Optional[float] = None,
        keep_newest: Optional[int] = None,
    ) -> int:
        partition = self._partitions.get(partition_key)
        if not partition:
            return 0
        real = sorted(
            (c for c in partition.values() if not c.is_placeholder),
            key=lambda c: (c.timestamp, c.id),
            reverse=True,
        )
        expired = {c.id for c in real if older_than is not None and c.timestamp < older_than}
        survivors = [c for c in real if c.id not in expired]
        doomed = list(expired)
        if keep_newest is not None:
            doomed.extend(c.id for c in survivors[max(keep_newest, 0):])
        return await self.delete_ids(partition_key, doomed)

    async def describe_partition(self, partition_key: str) -> PartitionInfo:
        count = len(self._partitions.get(partition_key, {}))
        return PartitionInfo(key=partition_key, exists=count > 0, vector_count=count)

    async def list_partitions(self, prefix: str = "") -> List[str]:
        return sorted(k for k, v in self._partitions.items() if v and k.startswith(prefix))

    async def health_check(self) -> bool:
        return True
