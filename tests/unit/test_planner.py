from __future__ import annotations

import pytest

from metric_backfill.planner import count_batches, iter_batches, plan_batches
from metric_backfill.types import BatchRange


def test_plan_id_range_into_three_batches() -> None:
    assert plan_batches(1, 2500, 1000) == [
        BatchRange(1, 1000),
        BatchRange(1001, 2000),
        BatchRange(2001, 2500),
    ]


def test_plan_is_deterministic() -> None:
    assert plan_batches(17, 98_765, 333) == plan_batches(17, 98_765, 333)


@pytest.mark.parametrize(
    ("start", "end", "width"),
    [
        (1, 1000, 1000),
        (1, 1001, 1000),
        (0, 99, 7),
        (1_700_000_000, 1_700_010_000, 3600),
        (42, 42, 10),
    ],
)
def test_plan_covers_every_integer_exactly_once(start: int, end: int, width: int) -> None:
    batches = plan_batches(start, end, width)

    covered = [i for b in batches for i in range(b.start, b.end + 1)]
    assert covered == list(range(start, end + 1))
    assert len(batches) == count_batches(start, end, width)
    assert all(len(b) == width for b in batches[:-1])
    assert batches[-1].end == end


def test_single_point_range_is_one_batch() -> None:
    assert count_batches(5, 5, 10) == 1
    assert plan_batches(5, 5, 10) == [BatchRange(5, 5)]


def test_exactly_divisible_range_keeps_last_id() -> None:
    assert count_batches(1, 1000, 1000) == 1
    assert count_batches(1, 1001, 1000) == 2
    assert plan_batches(1, 1001, 1000)[-1] == BatchRange(1001, 1001)


def test_iter_batches_with_offset_keeps_plan_indexes() -> None:
    assert list(iter_batches(1, 2500, 1000, offset=2)) == [(2, BatchRange(2001, 2500))]
    assert list(iter_batches(1, 2500, 1000, offset=3)) == []
    assert list(iter_batches(1, 2500, 1000, offset=10)) == []


def test_count_batches_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError, match="width must be positive"):
        count_batches(1, 10, 0)
    with pytest.raises(ValueError, match="start must be <= end"):
        count_batches(10, 1, 5)
