"""
Database Module
===============
PostgreSQL-backed record store.

Every collection lives in one `records` table as JSONB documents:
- asyncpg connection pool owned by the store instance
- migrations run on first connect
- filters are pushed down to SQL for equality; everything else
  (membership, operator maps) is evaluated on the decoded rows

pip install asyncpg
"""

import os
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
import asyncpg

from schemas.errors import NotFound
from storage.record_store import Filters, Record, RecordStore, matches, collection_name

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONFIGURATION
# =============================================================================

class DatabaseConfig:
    """Database configuration from environment"""

    DATABASE_URL = os.getenv("DATABASE_URL", "")
    MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
    MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "10"))

    @property
    def enabled(self) -> bool:
        return bool(self.DATABASE_URL)


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS records (
        collection VARCHAR(64) NOT NULL,
        id VARCHAR(128) NOT NULL,
        data JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (collection, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection)",
    "CREATE INDEX IF NOT EXISTS idx_records_data ON records USING GIN (data)",
]


# =============================================================================
# RECORD STORE
# =============================================================================

class PostgresRecordStore(RecordStore):
    """asyncpg pool persisting each record as a JSONB row."""

    def __init__(self, config: Optional[DatabaseConfig] = None, pool: Optional[asyncpg.Pool] = None):
        self._config = config or DatabaseConfig()
        self._pool = pool

    async def initialize(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._config.DATABASE_URL,
                min_size=self._config.MIN_POOL_SIZE,
                max_size=self._config.MAX_POOL_SIZE,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_connect_failed", error=str(e))
            raise
        logger.info("database_pool_initialized")
        await self._run_migrations()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if self._pool is None:
            await self.initialize()
        async with self._pool.acquire() as conn:
            yield conn

    async def _run_migrations(self) -> None:
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)
        logger.info("database_migrations_complete")

    @staticmethod
    def _decode(row) -> Record:
        data = row["data"]
        return json.loads(data) if isinstance(data, str) else dict(data)

    async def create(self, collection, record: Record) -> Record:
        stored = dict(record)
        stored.setdefault("id", str(uuid.uuid4()))
        async with self.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO records (collection, id, data)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (collection, id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                collection_name(collection),
                stored["id"],
                json.dumps(stored),
            )
        return stored

    async def batch_create(self, collection, records: List[Record]) -> List[Record]:
        prepared = []
        for record in records:
            stored = dict(record)
            stored.setdefault("id", str(uuid.uuid4()))
            prepared.append(stored)
        async with self.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO records (collection, id, data)
                    VALUES ($1, $2, $3::jsonb)
                    ON CONFLICT (collection, id)
                    DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                    """,
                    [(collection_name(collection), r["id"], json.dumps(r)) for r in prepared],
                )
        return prepared

    async def read(self, collection, record_id: str) -> Optional[Record]:
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM records WHERE collection = $1 AND id = $2",
                collection_name(collection),
                record_id,
            )
        return self._decode(row) if row else None

    async def read_all(self, collection) -> List[Record]:
        async with self.acquire() as conn:
            rows = await conn.fetch(
                "SELECT data FROM records WHERE collection = $1 ORDER BY created_at",
                collection_name(collection),
            )
        return [self._decode(row) for row in rows]

    async def update(self, collection, record_id: str, changes: Record) -> Record:
        patch = {**changes, "id": record_id}
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE records
                SET data = data || $3::jsonb, updated_at = NOW()
                WHERE collection = $1 AND id = $2
                RETURNING data
                """,
                collection_name(collection),
                record_id,
                json.dumps(patch),
            )
        if row is None:
            raise NotFound(f"{collection_name(collection)} record {record_id} not found")
        return self._decode(row)

    async def delete(self, collection, record_id: str) -> bool:
        async with self.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM records WHERE collection = $1 AND id = $2",
                collection_name(collection),
                record_id,
            )
        return result.endswith(" 1")

    async def query(self, collection, filters: Optional[Filters] = None) -> List[Record]:
        equality: Dict[str, Any] = {
            k: (v.value if hasattr(v, "value") else v)
            for k, v in (filters or {}).items()
            if v is not None and not isinstance(v, (list, tuple, set, dict))
        }
        async with self.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT data FROM records
                WHERE collection = $1 AND data @> $2::jsonb
                ORDER BY created_at
                """,
                collection_name(collection),
                json.dumps(equality),
            )
        decoded = [self._decode(row) for row in rows]
        return [r for r in decoded if matches(r, filters)]
