"""Generic range resolvers used by migration packages.

Both resolvers return ``EMPTY_RANGE`` when the predicate matches nothing.
"""

from __future__ import annotations

from typing import Any

from metric_backfill.types import EMPTY_RANGE, BatchRange, QueryContext


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


async def id_range(
    ctx: QueryContext,
    table: str,
    where: str = "TRUE",
    params: list[Any] | None = None,
    *,
    id_column: str = '"id"',
) -> BatchRange:
    """Resolve ``[MIN(id), MAX(id)]`` of a PostgreSQL table under ``where``.

    ``table``, ``id_column`` and ``where`` are SQL fragments; values belong in
    ``params`` as ``$1``, ``$2``, ...
    """
    rows = await ctx.pg.query(
        f'SELECT MIN({id_column}) AS "start", MAX({id_column}) AS "end" '
        f"FROM {table} WHERE {where}",
        params,
    )
    if not rows:
        return EMPTY_RANGE
    start = _to_int(rows[0].get("start"))
    end = _to_int(rows[0].get("end"))
    if start is None or end is None:
        return EMPTY_RANGE
    return BatchRange(start, end)


async def timestamp_range(
    ctx: QueryContext,
    table: str,
    time_column: str,
    where: str = "1 = 1",
) -> BatchRange:
    """Resolve the unix-second bounds of ``time_column`` in a ClickHouse table.

    Batching on whole seconds keeps plans independent of the column's
    sub-second resolution.
    """
    rows = await ctx.ch.query(
        f"SELECT count() AS rows, "
        f"toUnixTimestamp(min({time_column})) AS min_ts, "
        f"toUnixTimestamp(max({time_column})) AS max_ts "
        f"FROM {table} WHERE {where}"
    )
    if not rows or not int(rows[0].get("rows") or 0):
        return EMPTY_RANGE
    start = _to_int(rows[0].get("min_ts"))
    end = _to_int(rows[0].get("max_ts"))
    if start is None or end is None:
        return EMPTY_RANGE
    return BatchRange(start, end)
