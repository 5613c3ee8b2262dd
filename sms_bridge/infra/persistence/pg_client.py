# =============================================================================
# File: sms_bridge/infra/persistence/pg_client.py
# Description: AsyncPG pool helper owned by the worker and passed to the
#              Room Index repository
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import pathlib
from typing import Optional, Any, List

import asyncpg

from sms_bridge.config.reliability_config import ReliabilityConfigs, RetryConfig
from sms_bridge.infra.reliability.retry import retry_async

log = logging.getLogger("sms_bridge.infra.pg_client")

DEFAULT_SCHEMA_PATH = pathlib.Path(__file__).resolve().parents[2] / "database" / "room_index.sql"


class PgClient:
    """
    Thin wrapper around one asyncpg pool.

    Pool creation is retried; queries are not (the relay unit retries).
    """

    def __init__(
            self,
            dsn: str,
            min_size: int = 1,
            max_size: int = 10,
            command_timeout_sec: float = 10.0,
            retry_config: Optional[RetryConfig] = None,
    ):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout_sec
        self._retry_config = retry_config or ReliabilityConfigs.postgres_retry()
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool is not initialized")
        return self._pool

    async def init_pool(self) -> asyncpg.Pool:
        """Create the pool and verify it with a test query. Idempotent."""
        async with self._lock:
            if self._pool is not None and not self._pool.is_closing():
                return self._pool

            log.info(f"Initializing PostgreSQL pool (hidden DSN): {self._dsn.split('@')[-1]}")

            async def create_pool():
                pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    command_timeout=self._command_timeout,
                )
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
                return pool

            self._pool = await retry_async(
                create_pool,
                retry_config=self._retry_config,
                context="PostgreSQL pool initialization",
            )
            log.info(f"PostgreSQL pool ready. Min/Max size: {self._min_size}/{self._max_size}")
            return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("PostgreSQL pool closed")

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def execute_in_transaction(self, statements: List[tuple]) -> None:
        """Run (query, *args) tuples in one transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for query, *args in statements:
                    await conn.execute(query, *args)

    async def run_schema(self, path: Optional[pathlib.Path] = None) -> None:
        """Apply an idempotent schema file."""
        schema_path = pathlib.Path(path or DEFAULT_SCHEMA_PATH)
        sql = schema_path.read_text(encoding="utf-8")
        async with self.pool.acquire() as conn:
            await conn.execute(sql)
        log.info(f"Schema applied from {schema_path.name}")
