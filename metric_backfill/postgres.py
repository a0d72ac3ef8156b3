"""Read-only asyncpg pool wrapper for the relational source."""

from typing import Any

import asyncpg
import structlog

from metric_backfill.config import PostgresConfig

logger = structlog.get_logger(__name__)


class PostgresConnectionError(Exception):
    """Exception raised when the relational source cannot be reached."""

    pass


class PostgresSource:
    """Shared connection pool exposing `query(sql, params) -> list[dict]`."""

    def __init__(self, config: PostgresConfig) -> None:
        self.config = config
        self._pool: asyncpg.Pool | None = None

    async def __aenter__(self) -> "PostgresSource":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            logger.info(
                "Connecting to PostgreSQL",
                min_pool_size=self.config.min_pool_size,
                max_pool_size=self.config.max_pool_size,
            )
            self._pool = await asyncpg.create_pool(
                dsn=self.config.dsn,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise PostgresConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            try:
                await self._pool.close()
            except Exception as e:
                logger.warning("Error closing PostgreSQL pool", error=str(e))
            finally:
                self._pool = None

    async def query(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        """Run a parameterized (`$1`, `$2`, ...) read query."""
        if self._pool is None:
            raise PostgresConnectionError("Not connected to PostgreSQL")
        records = await self._pool.fetch(sql, *(params or []))
        return [dict(r) for r in records]
