"""Shared pytest fixtures for the metric backfill tests."""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from metric_backfill.progress import ProgressTracker
from metric_backfill.types import QueryContext

TEST_CUTOFF = datetime(2025, 11, 20, tzinfo=UTC)
TEST_SINK_TABLE = "entityMetricEvents"


class StubPostgres:
    """Records parameterized queries and answers them from ``handler``."""

    def __init__(
        self, handler: Callable[[str, list[Any]], list[dict[str, Any]]] | None = None
    ) -> None:
        self.handler = handler
        self.calls: list[tuple[str, list[Any]]] = []

    async def query(
        self, sql: str, params: list[Any] | None = None
    ) -> list[dict[str, Any]]:
        self.calls.append((sql, list(params or [])))
        if self.handler is None:
            return []
        return self.handler(sql, list(params or []))


class StubClickHouse:
    """Records raw SQL and answers it from ``handler``."""

    def __init__(
        self, handler: Callable[[str], list[dict[str, Any]]] | None = None
    ) -> None:
        self.handler = handler
        self.calls: list[str] = []

    async def query(self, sql: str) -> list[dict[str, Any]]:
        self.calls.append(sql)
        if self.handler is None:
            return []
        return self.handler(sql)


class RecordingSinkClient:
    """Sink client that keeps every accepted insert in memory."""

    def __init__(self) -> None:
        self.inserts: list[tuple[str, list[dict[str, Any]]]] = []
        self.fail_next = 0
        self.insert_calls = 0

    async def insert(
        self, table: str, rows: list[dict[str, Any]], *, async_insert: bool = True
    ) -> None:
        assert async_insert
        self.insert_calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("simulated insert failure")
        self.inserts.append((table, list(rows)))

    @property
    def rows(self) -> list[dict[str, Any]]:
        return [row for _, chunk in self.inserts for row in chunk]


@pytest.fixture
def pg() -> StubPostgres:
    return StubPostgres()


@pytest.fixture
def ch() -> StubClickHouse:
    return StubClickHouse()


@pytest.fixture
def ctx(pg: StubPostgres, ch: StubClickHouse) -> QueryContext:
    """Query context wired to the stub sources."""
    return QueryContext(pg=pg, ch=ch, cutoff=TEST_CUTOFF)


@pytest.fixture
def sink_client() -> RecordingSinkClient:
    return RecordingSinkClient()


@pytest.fixture
def progress_file(tmp_path: Path) -> Path:
    return tmp_path / "progress.json"


@pytest.fixture
def tracker(progress_file: Path) -> ProgressTracker:
    return ProgressTracker(progress_file)
