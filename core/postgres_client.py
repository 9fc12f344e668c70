"""
PostgreSQL Client Wrapper

Centralized asyncpg pool wrapper giving every repository the same access
pattern: dict rows, positional ``$n`` parameters and explicit transactions.

Usage:
    from core.postgres_client import get_postgres_client

    db = await get_postgres_client("fulfillment_service")
    rows = await db.query("SELECT * FROM fulfillment.submissions WHERE vendor_id = $1", [vendor_id])

    async with db.transaction(isolation="read_committed") as conn:
        await conn.execute("UPDATE ...", ...)
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClient:
    """
    asyncpg pool wrapper.

    The pool is created lazily on first use so that constructing a repository
    never blocks or fails when the database is unreachable.
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        dsn: Optional[str] = None,
    ):
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.dsn = dsn or self.config.postgres_dsn
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(
            f"PostgreSQL client initialized for {service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def connect(self) -> asyncpg.Pool:
        """Create the connection pool if needed"""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.config.postgres_min_pool,
                max_size=self.config.postgres_max_pool,
                command_timeout=self.config.postgres_command_timeout,
            )
            logger.info(f"✅ PostgreSQL pool created for {self.service_name}")
        return self._pool

    async def health_check(self) -> Dict[str, Any]:
        """Check database health"""
        try:
            pool = await self.connect()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"healthy": True}
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, *(params or []))
        return dict(row) if row else None

    async def query_value(self, sql: str, params: Optional[List[Any]] = None) -> Any:
        """Execute query and return the first column of the first row"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            return await conn.fetchval(sql, *(params or []))

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement and return the command status"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            return await conn.execute(sql, *(params or []))

    @asynccontextmanager
    async def transaction(self, isolation: str = "read_committed") -> AsyncIterator[asyncpg.Connection]:
        """
        Run a block inside a single transaction.

        Args:
            isolation: asyncpg isolation level (read_committed, repeatable_read, serializable)

        Yields:
            The connection bound to the transaction
        """
        pool = await self.connect()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation=isolation):
                yield conn

    async def close(self):
        """Close the connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClient] = {}


async def get_postgres_client(
    service_name: str,
    config: Optional[InfraConfig] = None,
    dsn: Optional[str] = None,
) -> PostgresClient:
    """
    Get or create PostgreSQL client for a service.

    Args:
        service_name: Service name
        config: Optional infrastructure config override
        dsn: Optional DSN override

    Returns:
        PostgresClient instance
    """
    global _postgres_clients

    if service_name not in _postgres_clients:
        _postgres_clients[service_name] = PostgresClient(
            service_name=service_name,
            config=config,
            dsn=dsn,
        )

    return _postgres_clients[service_name]
