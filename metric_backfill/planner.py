"""Deterministic slicing of a resolved range into fixed-width batches.

Resume state addresses batches by their index in this plan, so the output for a
given ``(start, end, width)`` must never depend on anything else.
"""

from __future__ import annotations

from collections.abc import Iterator

from metric_backfill.types import BatchRange

DEFAULT_QUERY_BATCH_SIZE = 1000


def count_batches(start: int, end: int, width: int) -> int:
    """Number of batches needed to cover every integer in ``[start, end]``."""
    if width <= 0:
        raise ValueError(f"width must be positive; got {width}")
    if start > end:
        raise ValueError(f"start must be <= end; got [{start}, {end}]")
    return -(-(end - start + 1) // width)


def iter_batches(
    start: int, end: int, width: int, *, offset: int = 0
) -> Iterator[tuple[int, BatchRange]]:
    """Yield ``(index, range)`` pairs lazily, beginning at batch ``offset``."""
    total = count_batches(start, end, width)
    for index in range(max(0, offset), total):
        lo = start + index * width
        hi = min(lo + width - 1, end)
        yield index, BatchRange(lo, hi)


def plan_batches(start: int, end: int, width: int) -> list[BatchRange]:
    """Slice ``[start, end]`` into closed, adjacent, non-overlapping ranges.

    Every range is ``width`` wide except the last, which is clipped to ``end``.

    >>> plan_batches(1, 2500, 1000)
    [BatchRange(start=1, end=1000), BatchRange(start=1001, end=2000), BatchRange(start=2001, end=2500)]
    """
    return [batch for _, batch in iter_batches(start, end, width)]
