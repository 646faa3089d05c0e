"""
PostgreSQL Client Wrapper

Centralized asyncpg pool wrapper used by the delivery ledger repository.
Provides a consistent query API and connection-scoped transactions so that
a campaign status write and a set-based delivery update commit together.

Usage:
    from core.postgres_client import get_postgres_client

    db = await get_postgres_client("campaign_delivery_service")

    async with db.transaction():
        await db.execute("UPDATE ... WHERE campaign_id = $1", [campaign_id])
        rows = await db.query("UPDATE ... RETURNING *", [campaign_id])
"""

import contextvars
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config.infra_config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    asyncpg pool wrapper.

    Queries issued inside ``transaction()`` run on the transaction's
    connection; everything else borrows a pooled connection per call.
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self._pool: Optional[asyncpg.Pool] = None
        self._tx_conn: contextvars.ContextVar[Optional[asyncpg.Connection]] = contextvars.ContextVar(
            f"{service_name}_tx_conn", default=None
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OSError, asyncpg.CannotConnectNowError)),
        reraise=True,
    )
    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            dsn=self.config.postgres_dsn,
            min_size=self.config.postgres_pool_min_size,
            max_size=self.config.postgres_pool_max_size,
        )
        logger.info(
            f"PostgreSQL pool ready for {self.service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool not initialized. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as pooled:
            yield pooled

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed queries in one transaction"""
        if self._tx_conn.get() is not None:
            # Nested: join the outer transaction
            yield
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)

    async def health_check(self) -> bool:
        row = await self.query_row("SELECT 1 AS healthy")
        return row is not None

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return all rows"""
        async with self._connection() as conn:
            records = await conn.fetch(sql, *(params or []))
        return [dict(r) for r in records]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return a single row"""
        async with self._connection() as conn:
            record = await conn.fetchrow(sql, *(params or []))
        return dict(record) if record is not None else None

    async def query_value(self, sql: str, params: Optional[List[Any]] = None) -> Any:
        """Execute query and return the first column of the first row"""
        async with self._connection() as conn:
            return await conn.fetchval(sql, *(params or []))

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement and return the status tag"""
        async with self._connection() as conn:
            return await conn.execute(sql, *(params or []))

    async def execute_many(self, sql: str, params_list: List[List[Any]]) -> None:
        """Execute SQL statement with multiple parameter sets"""
        async with self._connection() as conn:
            await conn.executemany(sql, params_list)


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClientWrapper] = {}


async def get_postgres_client(
    service_name: str,
    config: Optional[InfraConfig] = None,
) -> PostgresClientWrapper:
    """Get or create the connected PostgreSQL client for a service"""
    if service_name not in _postgres_clients:
        client = PostgresClientWrapper(service_name=service_name, config=config)
        await client.connect()
        _postgres_clients[service_name] = client
    return _postgres_clients[service_name]


async def close_postgres_clients() -> None:
    for client in list(_postgres_clients.values()):
        await client.close()
    _postgres_clients.clear()


__all__ = [
    "PostgresClientWrapper",
    "get_postgres_client",
    "close_postgres_clients",
]
