"""Partitioned vector storage."""

from .base import (
    DocumentChunk,
    PartitionInfo,
    PartitionedVectorStore,
    SearchHit,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreQueryError,
)
from .factory import BACKENDS, create_vector_store, create_vector_store_from_config
from .memory import InMemoryVectorStore

__all__ = [
    "BACKENDS",
    "DocumentChunk",
    "InMemoryVectorStore",
    "PartitionInfo",
    "PartitionedVectorStore",
    "SearchHit",
    "VectorStoreConnectionError",
    "VectorStoreError",
    "VectorStoreQueryError",
    "create_vector_store",
    "create_vector_store_from_config",
]
