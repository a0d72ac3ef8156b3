"""Flushes buffered metric events into the analytical sink."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from metric_backfill.batching import iter_ordered_chunks
from metric_backfill.retry import retryable
from metric_backfill.types import EntityMetricEvent

logger = structlog.get_logger(__name__)

DEFAULT_INSERT_BATCH_SIZE = 500


class SinkClient(Protocol):
    async def insert(
        self, table: str, rows: list[dict[str, Any]], *, async_insert: bool = True
    ) -> None: ...


class SinkWriter:
    """Chunks an event buffer and inserts every chunk concurrently.

    Inserts use the sink's async-insert mode: a chunk counts as written once the
    store has accepted it into its ingestion buffer. Admission control beyond
    chunking is left to the sink.
    """

    def __init__(
        self,
        client: SinkClient | None,
        table: str,
        *,
        insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
        max_request_bytes: int | None = None,
        dry_run: bool = False,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if insert_batch_size <= 0:
            raise ValueError(
                f"insert_batch_size must be positive; got {insert_batch_size}"
            )
        if client is None and not dry_run:
            raise ValueError("A sink client is required unless dry_run is enabled")
        self.client = client
        self.table = table
        self.insert_batch_size = insert_batch_size
        self.max_request_bytes = max_request_bytes
        self.dry_run = dry_run
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    async def flush(
        self, events: list[EntityMetricEvent], *, package: str | None = None
    ) -> int:
        """Write ``events`` to the sink and return how many were handed over."""
        log = logger.bind(package=package, table=self.table)
        if not events:
            return 0

        if self.dry_run:
            log.info(f"[DRY RUN] Would insert {len(events)} metrics")
            return len(events)

        rows = [e.to_row() for e in events]
        chunks = list(
            iter_ordered_chunks(
                rows,
                max_items=self.insert_batch_size,
                max_bytes=self.max_request_bytes,
            )
        )
        log.debug("Inserting metrics", metrics=len(rows), chunks=len(chunks))

        await asyncio.gather(
            *(self._insert_chunk(chunk, package=package) for chunk in chunks)
        )
        log.debug("Insert accepted", metrics=len(rows))
        return len(rows)

    async def _insert_chunk(
        self, chunk: list[dict[str, Any]], *, package: str | None
    ) -> None:
        assert self.client is not None
        client = self.client
        await retryable(
            lambda: client.insert(self.table, chunk, async_insert=True),
            self.retry_attempts,
            self.retry_delay,
            operation="sink insert",
            log_fields={"package": package, "rows": len(chunk)},
        )
