"""Core types shared by the backfill engine and migration packages."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

Row = dict[str, Any]


class RelationalSource(Protocol):
    """Read-only, parameterized SQL source (PostgreSQL)."""

    async def query(self, sql: str, params: list[Any] | None = None) -> list[Row]: ...


class ColumnarSource(Protocol):
    """Read-only SQL source without bind parameters (ClickHouse)."""

    async def query(self, sql: str) -> list[Row]: ...


@dataclass(frozen=True, slots=True)
class BatchRange:
    """Closed, inclusive interval of ids or unix-epoch seconds."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"BatchRange start must be <= end; got [{self.start}, {self.end}]"
            )

    @property
    def is_empty(self) -> bool:
        return self.start == 0 and self.end == 0

    def __len__(self) -> int:
        return self.end - self.start + 1


EMPTY_RANGE = BatchRange(0, 0)


def _format_created_at(value: datetime) -> str:
    """ISO-8601 UTC with milliseconds, e.g. ``2025-06-01T00:00:00.000Z``.

    Naive values are taken as UTC. The explicit zone keeps the server's own
    timezone out of `best_effort` parsing.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


@dataclass(frozen=True, slots=True)
class EntityMetricEvent:
    """One metric increment for an entity, as written to the sink."""

    entity_type: str
    entity_id: int
    user_id: int
    metric_type: str
    metric_value: int | float
    created_at: datetime

    def to_row(self) -> Row:
        return {
            "entityType": self.entity_type,
            "entityId": int(self.entity_id),
            "userId": int(self.user_id),
            "metricType": self.metric_type,
            "metricValue": self.metric_value,
            "createdAt": _format_created_at(self.created_at),
        }


@dataclass(frozen=True, slots=True)
class QueryContext:
    """Shared clients and run-wide settings handed to every package callable."""

    pg: RelationalSource
    ch: ColumnarSource
    cutoff: datetime
    dry_run: bool = False

    @property
    def cutoff_epoch(self) -> int:
        return int(self.cutoff.timestamp())


Emit = Callable[[EntityMetricEvent | Iterable[EntityMetricEvent]], None]


@dataclass(frozen=True)
class MigrationPackage:
    """Range/query/processor bundle for one source entity or event type.

    Packages are plain values kept in a name-keyed mapping; the engine never
    subclasses them.
    """

    name: str
    range: Callable[[QueryContext], Awaitable[BatchRange]]
    query: Callable[[QueryContext, BatchRange], Awaitable[list[Row]]]
    processor: Callable[[QueryContext, list[Row], Emit], Awaitable[None]]
    query_batch_size: int = 1000
    description: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if self.query_batch_size <= 0:
            raise ValueError(
                f"query_batch_size must be positive; got {self.query_batch_size}"
            )


class MetricBuffer:
    """Append-only, batch-local collector behind the `emit` callback."""

    def __init__(self) -> None:
        self.events: list[EntityMetricEvent] = []

    def emit(self, metrics: EntityMetricEvent | Iterable[EntityMetricEvent]) -> None:
        if isinstance(metrics, EntityMetricEvent):
            self.events.append(metrics)
            return
        # Extend item by item; processors may pass generators.
        for metric in metrics:
            self.events.append(metric)

    def __len__(self) -> int:
        return len(self.events)
