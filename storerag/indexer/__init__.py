"""Entity normalization and partition indexing."""

from .document_indexer import DocumentIndexer, IndexReport
from .normalizer import chunk_id, normalize_entity, placeholder_chunk_id

__all__ = ["DocumentIndexer", "IndexReport", "chunk_id", "normalize_entity", "placeholder_chunk_id"]
