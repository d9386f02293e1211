"""Persistence for store rows, credentials and channel integrations.

Partitions live only in the vector store; nothing here references them.
Keeping the two consistent is the lifecycle coordinator's job.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import asyncpg
import structlog
from asyncpg import Pool

from storerag.integrations.platform import Credentials

from .models import Store, StoreState

logger = structlog.get_logger("lifecycle.repository")


class StoreRepository(ABC):
    """Relational store state."""

    @abstractmethod
    async def create(self, store: Store) -> Store: ...

    @abstractmethod
    async def get(self, store_id: str) -> Optional[Store]: ...

    @abstractmethod
    async def update(self, store: Store) -> Store: ...

    @abstractmethod
    async def delete(self, store_id: str) -> bool:
        """Remove the store row and its credentials."""

    @abstractmethod
    async def list_stores(self, active_only: bool = False) -> List[Store]: ...

    @abstractmethod
    async def save_credentials(self, store_id: str, credentials: Credentials) -> str:
        """Persist credentials; returns the credential reference."""

    @abstractmethod
    async def get_credentials(self, credential_ref: str) -> Optional[Credentials]: ...

    @abstractmethod
    async def deactivate_integrations(self, store_id: str) -> int:
        """Disable messaging-channel integrations bound to the store."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        """Release backend resources."""


def credential_ref_for(store_id: str) -> str:
    return f"cred:{store_id}"


class InMemoryStoreRepository(StoreRepository):
    """Dict-backed repository for single-process deployments and tests."""

    def __init__(self):
        self._stores: Dict[str, Store] = {}
        self._credentials: Dict[str, Credentials] = {}
        self._integrations: Dict[str, Dict[str, bool]] = {}

    async def create(self, store: Store) -> Store:
        if store.id in self._stores:
            raise ValueError(f"Store {store.id} already exists")
        self._stores[store.id] = store
        return store

    async def get(self, store_id: str) -> Optional[Store]:
        return self._stores.get(store_id)

    async def update(self, store: Store) -> Store:
        store.touch()
        self._stores[store.id] = store
        return store

    async def delete(self, store_id: str) -> bool:
        store = self._stores.pop(store_id, None)
        if store is not None:
            self._credentials.pop(store.credential_ref, None)
        self._integrations.pop(store_id, None)
        return store is not None

    async def list_stores(self, active_only: bool = False) -> List[Store]:
        return [s for s in self._stores.values() if s.active or not active_only]

    async def save_credentials(self, store_id: str, credentials: Credentials) -> str:
        ref = credential_ref_for(store_id)
        self._credentials[ref] = credentials
        return ref

    async def get_credentials(self, credential_ref: str) -> Optional[Credentials]:
        return self._credentials.get(credential_ref)

    def register_integration(self, store_id: str, integration_id: str) -> None:
        self._integrations.setdefault(store_id, {})[integration_id] = True

    def integrations(self, store_id: str) -> Dict[str, bool]:
        return dict(self._integrations.get(store_id, {}))

    async def deactivate_integrations(self, store_id: str) -> int:
        bound = self._integrations.get(store_id, {})
        count = 0
        for integration_id, active in bound.items():
            if active:
                bound[integration_id] = False
                count += 1
        return count


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stores (
    id TEXT PRIMARY KEY,
    platform_store_id TEXT NOT NULL,
    credential_ref TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    state TEXT NOT NULL,
    last_sync_at DOUBLE PRECISION,
    needs_reconnection BOOLEAN NOT NULL DEFAULT FALSE,
    last_error TEXT,
    failed_entities JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS store_credentials (
    credential_ref TEXT PRIMARY KEY,
    store_id TEXT NOT NULL,
    payload JSONB NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS channel_integrations (
    id TEXT PRIMARY KEY,
    store_id TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);
"""

STORE_COLUMNS = (
    "id, platform_store_id, credential_ref, active, state, last_sync_at, "
    "needs_reconnection, last_error, failed_entities, created_at, updated_at"
)


class PgStoreRepository(StoreRepository):
    """asyncpg-backed repository."""

    def __init__(self, dsn: str, pool_size: int = 5, command_timeout: int = 30):
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=1, max_size=self.pool_size, command_timeout=self.command_timeout
            )
            logger.info("Created store repository pool", pool_size=self.pool_size)
        return self._pool

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    @staticmethod
    def _row_to_store(row: Any) -> Store:
        failed = row["failed_entities"]
        if isinstance(failed, str):
            failed = json.loads(failed)
        return Store(
            id=row["id"],
            platform_store_id=row["platform_store_id"],
            credential_ref=row["credential_ref"],
            active=row["active"],
            state=StoreState(row["state"]),
            last_sync_at=row["last_sync_at"],
            needs_reconnection=row["needs_reconnection"],
            last_error=row["last_error"],
            failed_entities=list(failed or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _store_args(store: Store) -> tuple:
        return (
            store.id,
            store.platform_store_id,
            store.credential_ref,
            store.active,
            store.state.value,
            store.last_sync_at,
            store.needs_reconnection,
            store.last_error,
            json.dumps(store.failed_entities),
            store.created_at,
            store.updated_at,
        )

    async def create(self, store: Store) -> Store:
        pool = await self._get_pool()
        try:
            await pool.execute(
                f"INSERT INTO stores ({STORE_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11)",
                *self._store_args(store),
            )
        except asyncpg.UniqueViolationError:
            raise ValueError(f"Store {store.id} already exists") from None
        return store

    async def get(self, store_id: str) -> Optional[Store]:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"SELECT {STORE_COLUMNS} FROM stores WHERE id = $1", store_id)
        return self._row_to_store(row) if row else None

    async def update(self, store: Store) -> Store:
        store.touch()
        pool = await self._get_pool()
        await pool.execute(
            """
            UPDATE stores SET platform_store_id = $2, credential_ref = $3, active = $4, state = $5,
                last_sync_at = $6, needs_reconnection = $7, last_error = $8,
                failed_entities = $9::jsonb, created_at = $10, updated_at = $11
            WHERE id = $1
            """,
            *self._store_args(store),
        )
        return store

    async def delete(self, store_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM store_credentials WHERE store_id = $1", store_id)
                await conn.execute("DELETE FROM channel_integrations WHERE store_id = $1", store_id)
                result = await conn.execute("DELETE FROM stores WHERE id = $1", store_id)
        return result.split()[-1] != "0"

    async def list_stores(self, active_only: bool = False) -> List[Store]:
        pool = await self._get_pool()
        query = f"SELECT {STORE_COLUMNS} FROM stores"
        if active_only:
            query += " WHERE active"
        rows = await pool.fetch(query + " ORDER BY id")
        return [self._row_to_store(row) for row in rows]

    async def save_credentials(self, store_id: str, credentials: Credentials) -> str:
        ref = credential_ref_for(store_id)
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO store_credentials (credential_ref, store_id, payload, updated_at)
            VALUES ($1, $2, $3::jsonb, $4)
            ON CONFLICT (credential_ref) DO UPDATE SET payload = EXCLUDED.payload, updated_at = EXCLUDED.updated_at
            """,
            ref,
            store_id,
            json.dumps(credentials.to_dict()),
            time.time(),
        )
        return ref

    async def get_credentials(self, credential_ref: str) -> Optional[Credentials]:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT payload FROM store_credentials WHERE credential_ref = $1", credential_ref)
        if not row:
            return None
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Credentials.from_dict(payload)

    async def deactivate_integrations(self, store_id: str) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            "UPDATE channel_integrations SET is_active = FALSE WHERE store_id = $1 AND is_active", store_id
        )
        return int(result.split()[-1])

    async def health_check(self) -> bool:
        try:
            pool = await self._get_pool()
            await pool.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("Repository health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
