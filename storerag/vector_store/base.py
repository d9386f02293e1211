"""Base partitioned vector store interface.

Defines the abstract contract the indexer and router depend on, independent
of the backing implementation (in-memory, PgVector).

A partition exists exactly when it holds at least one vector. That is why
initialization seeds each partition with a placeholder chunk and why
``delete_all_in_partition`` makes ``describe_partition`` report
``exists=False``.

All methods are asynchronous.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np


@dataclass
class DocumentChunk:
    """A single embedded document inside one partition.

    ``metadata`` carries at least ``category``, ``source_entity_id``,
    ``entity_type``, ``timestamp`` (epoch seconds) and ``is_placeholder``.
    """
    id: str
    partition_key: str
    text: str
    embedding: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp(self) -> float:
        return float(self.metadata.get("timestamp") or 0.0)

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("is_placeholder", False))


@dataclass
class SearchHit:
    """A chunk returned by ``search`` with its cosine score in ``[0, 1]``."""
    chunk: DocumentChunk
    score: float


@dataclass
class PartitionInfo:
    """Result of ``describe_partition``."""
    key: str
    exists: bool
    vector_count: int


def metadata_matches(metadata: Dict[str, Any], metadata_filter: Optional[Dict[str, Any]]) -> bool:
    """Equality match on every key of ``metadata_filter``.

    A missing ``is_placeholder`` key counts as ``False``.
    """
    if not metadata_filter:
        return True
    for key, expected in metadata_filter.items():
        actual = metadata.get(key, False if key == "is_placeholder" else None)
        if actual != expected:
            return False
    return True


class VectorStoreError(Exception):
    """Base exception for vector store errors."""


class VectorStoreConnectionError(VectorStoreError):
    """Connection error for vector stores."""


class VectorStoreQueryError(VectorStoreError):
    """Query error for vector stores."""


class PartitionedVectorStore(ABC):
    """Abstract base class for partitioned vector stores.

    Implementations must make ``upsert`` idempotent by ``(partition_key, id)``
    and report cosine similarity clipped to ``[0, 1]``.
    """

    @abstractmethod
    async def upsert(self, chunks: Sequence[DocumentChunk]) -> int:
        """Write or overwrite chunks by id within each chunk's partition.

        Returns the number of chunks written.
        """

    @abstractmethod
    async def search(
        self,
        partition_keys: Sequence[str],
        query_embedding: np.ndarray,
        top_k: int = 5,
        score_threshold: float = 0.0,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        """Search across the given partitions and merge the results.

        Results are sorted by descending score; equal scores are ordered by
        most-recent ``timestamp``. Returns an empty list when nothing clears
        ``score_threshold``.
        """

    @abstractmethod
    async def delete_all_in_partition(self, partition_key: str) -> int:
        """Remove every vector in the partition; missing partitions are a no-op.

        Returns the number of vectors removed.
        """

    @abstractmethod
    async def delete_ids(self, partition_key: str, ids: Sequence[str]) -> int:
        """Remove specific chunk ids from one partition."""

    @abstractmethod
    async def prune_partition(
        self,
        partition_key: str,
        older_than: Optional[float] = None,
        keep_newest: Optional[int] = None,
    ) -> int:
        """Remove real chunks by age and count; placeholders are never pruned.

        ``older_than`` is an epoch cutoff on the chunk ``timestamp``;
        ``keep_newest`` caps how many real chunks survive, newest first.
        Returns the number of chunks removed.
        """

    @abstractmethod
    async def describe_partition(self, partition_key: str) -> PartitionInfo:
        """Report whether the partition exists and how many vectors it holds."""

    @abstractmethod
    async def list_partitions(self, prefix: str = "") -> List[str]:
        """List existing partition keys, optionally filtered by prefix."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the vector store is healthy."""

    async def close(self) -> None:
        """Release backend resources."""
