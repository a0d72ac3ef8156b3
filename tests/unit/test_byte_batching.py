from __future__ import annotations

import pytest

from metric_backfill.batching import (
    approx_json_bytes,
    approx_json_each_row_bytes,
    iter_ordered_chunks,
)


def test_chunks_split_by_count_and_preserve_order() -> None:
    rows = [{"entityId": i} for i in range(1200)]

    chunks = list(iter_ordered_chunks(rows, max_items=500))

    assert [len(c) for c in chunks] == [500, 500, 200]
    assert [r["entityId"] for c in chunks for r in c] == list(range(1200))


def test_chunks_split_by_bytes_and_preserve_order() -> None:
    # Two rows that individually fit under the cap, but together exceed it.
    rows = [
        {"id": "a", "metricType": "x" * 200},
        {"id": "b", "metricType": "y" * 200},
        {"id": "c", "metricType": "z" * 200},
    ]
    one_row_bytes = approx_json_each_row_bytes(rows[:1])
    max_bytes = one_row_bytes + 10

    chunks = list(iter_ordered_chunks(rows, max_items=1000, max_bytes=max_bytes))

    assert [r["id"] for c in chunks for r in c] == ["a", "b", "c"]
    assert len(chunks) == 3
    for c in chunks:
        assert approx_json_each_row_bytes(c) <= max_bytes


def test_oversize_row_is_yielded_alone() -> None:
    rows = [{"id": "small"}, {"id": "big", "payload": "x" * 1000}, {"id": "tail"}]

    chunks = list(iter_ordered_chunks(rows, max_items=10, max_bytes=100))

    assert [[r["id"] for r in c] for c in chunks] == [["small"], ["big"], ["tail"]]


def test_each_row_bytes_counts_newlines() -> None:
    rows = [{"a": 1}, {"b": 2}]
    expected = approx_json_bytes(rows[0]) + approx_json_bytes(rows[1]) + 2
    assert approx_json_each_row_bytes(rows) == expected


def test_empty_input_yields_nothing() -> None:
    assert list(iter_ordered_chunks([], max_items=10, max_bytes=10)) == []


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError, match="max_items"):
        list(iter_ordered_chunks([{"a": 1}], max_items=0))
    with pytest.raises(ValueError, match="max_bytes"):
        list(iter_ordered_chunks([{"a": 1}], max_items=1, max_bytes=0))
