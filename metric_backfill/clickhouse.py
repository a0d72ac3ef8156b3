"""ClickHouse HTTP client wrapper used for both the columnar source and the sink."""

import json as _json
from typing import Any

import httpx
import structlog

from metric_backfill.config import ClickHouseConfig

logger = structlog.get_logger(__name__)

_QUERY_SETTINGS = {
    # Keep UInt64/Int64 as JSON numbers instead of quoted strings.
    "output_format_json_quote_64bit_integers": 0,
}


class ClickHouseClientError(Exception):
    """Base exception for ClickHouse client errors."""

    pass


class ClickHouseConnectionError(ClickHouseClientError):
    """Exception raised when connection to ClickHouse fails."""

    pass


class ClickHouseQueryError(ClickHouseClientError):
    """Exception raised when ClickHouse rejects a query or insert."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClickHouseClient:
    """Thin async wrapper around the ClickHouse HTTP interface.

    Provides:
    - Health checks and connectivity validation
    - `query()` returning plain dict rows (JSONEachRow)
    - `insert()` of JSON rows with optional async-insert acceptance
    - Structured logging
    """

    def __init__(
        self,
        config: ClickHouseConfig,
        name: str = "clickhouse",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client wrapper.

        Args:
            config: Connection settings.
            name: Human-readable name for this endpoint (source/sink).
            transport: Optional httpx transport override.
        """
        self.config = config
        self.name = name
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._logger = logger.bind(clickhouse=name, url=config.url)

    async def __aenter__(self) -> "ClickHouseClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def connect(self) -> None:
        """Open the HTTP client and verify the server answers.

        Raises:
            ClickHouseConnectionError: If the connection or health check fails.
        """
        if self._http_client is not None:
            return

        try:
            self._logger.info("Connecting to ClickHouse")
            self._http_client = httpx.AsyncClient(
                base_url=self.config.url,
                timeout=httpx.Timeout(self.config.timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
                headers={
                    "X-ClickHouse-User": self.config.username,
                    "X-ClickHouse-Key": self.config.password,
                },
                transport=self._transport,
            )
            await self.health_check()
            self._logger.info("Successfully connected to ClickHouse")
        except Exception as e:
            self._logger.error("Failed to connect to ClickHouse", error=str(e))
            await self.close()
            raise ClickHouseConnectionError(
                f"Failed to connect to {self.name}: {e}"
            ) from e

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                self._logger.warning("Error closing HTTP client", error=str(e))
            finally:
                self._http_client = None
            self._logger.info("Closed connection to ClickHouse")

    async def health_check(self) -> None:
        """Run `SELECT 1` against the server.

        Raises:
            ClickHouseConnectionError: If the check fails.
        """
        try:
            rows = await self.query("SELECT 1 AS ok")
        except Exception as e:
            self._logger.error("Health check failed", error=str(e))
            raise ClickHouseConnectionError(
                f"Health check failed for {self.name}: {e}"
            ) from e
        self._logger.debug("Health check passed", rows=rows)

    async def _post(
        self, *, params: dict[str, Any], content: str | bytes
    ) -> httpx.Response:
        if self._http_client is None:
            raise ClickHouseConnectionError(f"Not connected to {self.name}")

        resp = await self._http_client.post(
            "/",
            params={"database": self.config.database, **params},
            content=content,
        )
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            excerpt = resp.text[:500]
            raise ClickHouseQueryError(
                f"ClickHouse {self.name} returned HTTP {resp.status_code}: {excerpt}",
                status_code=resp.status_code,
            ) from e
        return resp

    async def query(self, sql: str) -> list[dict[str, Any]]:
        """Run a read query and return its rows as dicts.

        The SQL is sent verbatim; callers interpolate values themselves.
        """
        statement = f"{sql.strip().rstrip(';')}\nFORMAT JSONEachRow"
        resp = await self._post(params=dict(_QUERY_SETTINGS), content=statement)
        rows: list[dict[str, Any]] = []
        for line in resp.text.splitlines():
            if line.strip():
                rows.append(_json.loads(line))
        return rows

    async def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        *,
        async_insert: bool = True,
    ) -> None:
        """Insert JSON rows into `table`.

        With `async_insert` the server acknowledges once the rows are in its
        ingestion buffer, without waiting for the flush to storage.
        """
        if not rows:
            return
        params: dict[str, Any] = {
            "query": f"INSERT INTO {table} FORMAT JSONEachRow",
            "date_time_input_format": "best_effort",
        }
        if async_insert:
            params["async_insert"] = 1
            params["wait_for_async_insert"] = 0
        body = "\n".join(_json.dumps(r, ensure_ascii=False) for r in rows)
        await self._post(params=params, content=body.encode("utf-8"))
        self._logger.debug("Inserted rows", table=table, rows=len(rows))
