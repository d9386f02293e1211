"""PgVector implementation of the partitioned vector store.

Chunks live in a single ``partition_vectors`` table keyed by
``(partition_key, chunk_id)``. Cosine distance is computed with the ``<=>``
operator and converted to a similarity clipped to ``[0, 1]``.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from .base import (
    DocumentChunk,
    PartitionInfo,
    PartitionedVectorStore,
    SearchHit,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreQueryError,
)

logger = structlog.get_logger("vector_store.pgvector")

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;
CREATE TABLE IF NOT EXISTS partition_vectors (
    partition_key TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    content TEXT NOT NULL,
    embedding vector({dimension}) NOT NULL,
    meta JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    chunk_ts DOUBLE PRECISION NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (partition_key, chunk_id)
);
CREATE INDEX IF NOT EXISTS partition_vectors_partition_idx ON partition_vectors (partition_key);
"""

UPSERT_SQL = """
    INSERT INTO partition_vectors (partition_key, chunk_id, content, embedding, meta, chunk_ts)
    VALUES ($1, $2, $3, $4, $5::jsonb, $6)
    ON CONFLICT (partition_key, chunk_id)
    DO UPDATE SET
        content = EXCLUDED.content,
        embedding = EXCLUDED.embedding,
        meta = EXCLUDED.meta,
        chunk_ts = EXCLUDED.chunk_ts,
        updated_at = CURRENT_TIMESTAMP
"""

SEARCH_SQL = """
    SELECT partition_key, chunk_id, content, embedding, meta, chunk_ts,
           GREATEST(0, LEAST(1, 1 - (embedding <=> $1))) AS similarity
    FROM partition_vectors
    WHERE partition_key = ANY($2::text[])
      AND meta @> $3::jsonb
      AND 1 - (embedding <=> $1) >= $4
    ORDER BY similarity DESC, chunk_ts DESC
    LIMIT $5
"""

REAL_CHUNK = "NOT COALESCE((meta->>'is_placeholder')::boolean, false)"

PRUNE_OLDER_SQL = f"""
    DELETE FROM partition_vectors
    WHERE partition_key = $1 AND chunk_ts < $2 AND {REAL_CHUNK}
"""

PRUNE_OVERFLOW_SQL = f"""
    DELETE FROM partition_vectors
    WHERE partition_key = $1 AND chunk_id IN (
        SELECT chunk_id FROM partition_vectors
        WHERE partition_key = $1 AND {REAL_CHUNK}
        ORDER BY chunk_ts DESC, chunk_id DESC
        OFFSET $2
    )
"""


class PgVectorStore(PartitionedVectorStore):
    """PgVector implementation of ``PartitionedVectorStore``."""

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
        vector_dimension: int = 384,
    ):
        """Configure a PgVector-backed store.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - pool_size: Max size of asyncpg connection pool
        - max_queries: Queries per connection before recycling
        - command_timeout: Seconds to allow per DB command
        - vector_dimension: Dimensionality of the ``embedding`` column
        """
        self.dsn = dsn
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self.vector_dimension = vector_dimension
        self._pool: Optional[Pool] = None

    async def _init_connection(self, conn: Connection) -> None:
        await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or lazily create the connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    max_queries=self.max_queries,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created PgVector connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create PgVector connection pool", error=str(e))
                raise VectorStoreConnectionError(f"Failed to create connection pool: {e}")

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False
    ) -> Any:
        """Execute a query; failures are wrapped in ``VectorStoreQueryError``."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                if fetch_one:
                    return await conn.fetchrow(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except Exception as e:
            logger.error("Query execution failed", query=query.strip().split("\n")[0], error=str(e))
            raise VectorStoreQueryError(f"Query failed: {e}")

    async def ensure_schema(self) -> None:
        """Create the extension, table and index if missing.

        Runs on a plain connection: the pool's ``register_vector`` init needs
        the extension to exist already.
        """
        try:
            conn = await asyncpg.connect(self.dsn, timeout=self.command_timeout)
        except Exception as e:
            raise VectorStoreConnectionError(f"Failed to connect: {e}")
        try:
            await conn.execute(SCHEMA_SQL.format(dimension=int(self.vector_dimension)))
        except Exception as e:
            logger.error("Schema bootstrap failed", error=str(e))
            raise VectorStoreQueryError(f"Schema bootstrap failed: {e}")
        finally:
            await conn.close()

    def _ensure_vector_dimension(self, vector: Any) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise VectorStoreQueryError("Vector must be one-dimensional")
        if array.shape[0] != self.vector_dimension:
            raise VectorStoreQueryError(
                f"Expected vector dimension {self.vector_dimension}, got {array.shape[0]}"
            )
        return array

    async def upsert(self, chunks: Sequence[DocumentChunk]) -> int:
        if not chunks:
            return 0

        rows = [
            (
                chunk.partition_key,
                chunk.id,
                chunk.text,
                self._ensure_vector_dimension(chunk.embedding),
                json.dumps(chunk.metadata),
                chunk.timestamp,
            )
            for chunk in chunks
        ]

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(UPSERT_SQL, rows)
        except Exception as e:
            logger.error("Batch upsert failed", count=len(rows), error=str(e))
            raise VectorStoreQueryError(f"Batch upsert failed: {e}")

        logger.debug("Upserted chunks", count=len(rows))
        return len(rows)

    async def search(
        self,
        partition_keys: Sequence[str],
        query_embedding: np.ndarray,
        top_k: int = 5,
        score_threshold: float = 0.0,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        if not partition_keys or top_k <= 0:
            return []

        query_vector = self._ensure_vector_dimension(query_embedding)
        meta_filter = dict(metadata_filter or {})
        # Every chunk stores is_placeholder explicitly; containment also matches False.
        rows = await self._execute_query(
            SEARCH_SQL,
            query_vector,
            list(dict.fromkeys(partition_keys)),
            json.dumps(meta_filter),
            float(score_threshold),
            int(top_k),
            fetch=True,
        )

        hits = []
        for row in rows:
            meta = row["meta"]
            if isinstance(meta, str):
                meta = json.loads(meta)
            chunk = DocumentChunk(
                id=row["chunk_id"],
                partition_key=row["partition_key"],
                text=row["content"],
                embedding=np.asarray(row["embedding"], dtype=np.float32),
                metadata=meta or {},
            )
            hits.append(SearchHit(chunk=chunk, score=float(row["similarity"])))

        logger.debug("Vector search completed", partitions=len(partition_keys), results=len(hits))
        return hits

    async def delete_all_in_partition(self, partition_key: str) -> int:
        result = await self._execute_query(
            "DELETE FROM partition_vectors WHERE partition_key = $1", partition_key
        )
        removed = int(result.split()[-1]) if result else 0
        logger.info("Cleared partition", partition_key=partition_key, removed=removed)
        return removed

    async def delete_ids(self, partition_key: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        result = await self._execute_query(
            "DELETE FROM partition_vectors WHERE partition_key = $1 AND chunk_id = ANY($2::text[])",
            partition_key,
            list(ids),
        )
        return int(result.split()[-1]) if result else 0

    async def prune_partition(
        self,
        partition_key: str,
        older_than: Optional[float] = None,
        keep_newest: Optional[int] = None,
    ) -> int:
        removed = 0
        if older_than is not None:
            result = await self._execute_query(PRUNE_OLDER_SQL, partition_key, float(older_than))
            removed += int(result.split()[-1]) if result else 0
        if keep_newest is not None:
            result = await self._execute_query(PRUNE_OVERFLOW_SQL, partition_key, max(int(keep_newest), 0))
            removed += int(result.split()[-1]) if result else 0
        if removed:
            logger.info("Pruned partition", partition_key=partition_key, removed=removed)
        return removed

    async def describe_partition(self, partition_key: str) -> PartitionInfo:
        row = await self._execute_query(
            "SELECT COUNT(*) AS count FROM partition_vectors WHERE partition_key = $1",
            partition_key,
            fetch_one=True,
        )
        count = int(row["count"]) if row else 0
        return PartitionInfo(key=partition_key, exists=count > 0, vector_count=count)

    async def list_partitions(self, prefix: str = "") -> List[str]:
        rows = await self._execute_query(
            "SELECT DISTINCT partition_key FROM partition_vectors WHERE partition_key LIKE $1 ORDER BY 1",
            prefix.replace("%", r"\%").replace("_", r"\_") + "%",
            fetch=True,
        )
        return [row["partition_key"] for row in rows]

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_one=True)
            return True
        except (VectorStoreError, VectorStoreConnectionError) as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PgVector connection pool")
