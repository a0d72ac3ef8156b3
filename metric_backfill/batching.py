"""Helpers for chunking sink inserts by both count and approximate payload size."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import Any


# Non-compact encoding slightly over-estimates the JSONEachRow body, which
# keeps chunks comfortably under the configured cap.
def approx_json_bytes(obj: Any) -> int:
    return len(json.dumps(obj, ensure_ascii=False))


def approx_json_each_row_bytes(
    rows: list[dict[str, Any]],
    *,
    approx_row_bytes: Callable[[dict[str, Any]], int] | None = None,
) -> int:
    """Approximate the body size of a JSONEachRow insert: one row per line."""
    if approx_row_bytes is None:
        approx_row_bytes = approx_json_bytes
    return sum(int(approx_row_bytes(r)) + 1 for r in rows)


def iter_ordered_chunks(
    rows: list[dict[str, Any]],
    *,
    max_items: int,
    max_bytes: int | None = None,
    approx_row_bytes: Callable[[dict[str, Any]], int] | None = None,
) -> Iterable[list[dict[str, Any]]]:
    """Yield ordered chunks constrained by max items and (approx) bytes.

    Preserves row order. A single row larger than `max_bytes` is yielded as a
    singleton chunk.
    """
    if max_items <= 0:
        raise ValueError(f"max_items must be positive; got {max_items}")
    if max_bytes is not None and max_bytes <= 0:
        raise ValueError(f"max_bytes must be positive; got {max_bytes}")

    if not rows:
        return

    if max_bytes is None:
        for i in range(0, len(rows), max_items):
            yield rows[i : i + max_items]
        return

    if approx_row_bytes is None:
        approx_row_bytes = approx_json_bytes

    chunk: list[dict[str, Any]] = []
    chunk_bytes = 0
    for row in rows:
        row_bytes = int(approx_row_bytes(row)) + 1
        if chunk and (
            len(chunk) >= max_items or chunk_bytes + row_bytes > max_bytes
        ):
            yield chunk
            chunk = []
            chunk_bytes = 0
        chunk.append(row)
        chunk_bytes += row_bytes

    if chunk:
        yield chunk
