"""Backend selection for the partitioned vector store.

``memory`` serves tests and single-process development; ``pgvector`` is the
deployed backend. The runtime and CLI only ever call
``create_vector_store_from_config``.
"""

from typing import Any, Callable, Dict

import structlog

from .base import PartitionedVectorStore
from .memory import InMemoryVectorStore
from .pgvector import PgVectorStore

logger = structlog.get_logger("vector_store.factory")


def _memory(options: Dict[str, Any]) -> PartitionedVectorStore:
    return InMemoryVectorStore(vector_dimension=options.get("vector_dimension"))


def _pgvector(options: Dict[str, Any]) -> PartitionedVectorStore:
    if not options.get("dsn"):
        raise ValueError("pgvector backend needs a 'dsn'")
    return PgVectorStore(
        dsn=options["dsn"],
        pool_size=options.get("pool_size", 10),
        vector_dimension=options.get("vector_dimension", 384),
    )


BACKENDS: Dict[str, Callable[[Dict[str, Any]], PartitionedVectorStore]] = {
    "memory": _memory,
    "pgvector": _pgvector,
}


def create_vector_store(backend: str, options: Dict[str, Any]) -> PartitionedVectorStore:
    try:
        builder = BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unsupported vector store backend: {backend}") from None
    return builder(options)


def create_vector_store_from_config(config: Any) -> PartitionedVectorStore:
    """Build the vector store named by ``config.rag_vector_backend``."""
    store = create_vector_store(
        config.rag_vector_backend,
        {
            "dsn": config.rag_database_dsn,
            "pool_size": config.rag_database_pool_size,
            "vector_dimension": config.rag_vector_dimension,
        },
    )
    logger.info(
        "Vector store created",
        backend=config.rag_vector_backend,
        vector_dimension=config.rag_vector_dimension,
    )
    return store
