"""
PostgreSQL Client Wrapper

Centralized PostgreSQL access over an asyncpg connection pool.
Provides a consistent initialization pattern and dict-shaped results.

Usage:
    from core.postgres_client import PostgresClientWrapper

    db = PostgresClientWrapper("group_buy_service")
    await db.connect()

    # Execute queries
    rows = await db.query("SELECT * FROM group_buy.campaigns WHERE status = $1", ["active"])
"""

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import asyncpg

from core.config.infra_config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg pool.

    - Lazy pool creation on first use
    - Environment-driven configuration via InfraConfig
    - Queries take positional $n parameters as a list
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (defaults to InfraConfig.from_env())
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.host = self.config.postgres_host
        self.port = self.config.postgres_port
        self.database = self.config.postgres_db
        self._pool: Optional[asyncpg.Pool] = None
        self._bound: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"pg_conn_{service_name}", default=None
        )

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.config.postgres_user,
            password=self.config.postgres_password,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size,
            server_settings={"application_name": self.service_name},
        )
        logger.info(f"PostgreSQL pool created for {self.service_name}")

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            await self.connect()
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Run the block inside a transaction.

        While the block runs, query/query_row/execute issued from the same task
        use the transaction's connection. Nested calls open a savepoint on it.
        """
        bound = self._bound.get()
        if bound is not None:
            async with bound.transaction():
                yield bound
            return

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            token = self._bound.set(conn)
            try:
                async with conn.transaction():
                    yield conn
            finally:
                self._bound.reset(token)

    async def _executor(self) -> Union[asyncpg.Pool, asyncpg.Connection]:
        bound = self._bound.get()
        return bound if bound is not None else await self._get_pool()

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            row = await self.query_row("SELECT 1 AS healthy")
            return row is not None
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        executor = await self._executor()
        records = await executor.fetch(sql, *(params or []))
        return [dict(record) for record in records]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        executor = await self._executor()
        record = await executor.fetchrow(sql, *(params or []))
        return dict(record) if record is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> int:
        """Execute SQL statement and return the number of affected rows"""
        executor = await self._executor()
        status = await executor.execute(sql, *(params or []))
        # asyncpg returns a command tag such as "UPDATE 3"
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            return 0

    async def close(self):
        """Close connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")
