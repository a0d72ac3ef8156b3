from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from metric_backfill.progress import (
    RATE_WINDOW_SIZE,
    ProgressState,
    ProgressTracker,
    RateSample,
    _format_eta,
)


@pytest.mark.asyncio
async def test_load_progress_missing_file_is_empty(tracker: ProgressTracker) -> None:
    assert await tracker.load_progress() == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", ""])
async def test_load_progress_corrupt_file_is_empty(
    progress_file: Path, tracker: ProgressTracker, content: str
) -> None:
    progress_file.write_text(content)
    assert await tracker.load_progress() == {}


@pytest.mark.asyncio
async def test_load_progress_ignores_non_integer_values(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    progress_file.write_text(
        json.dumps({"comments": 4, "imageReactions": "7", "modelDownloads": True})
    )
    assert await tracker.load_progress() == {"comments": 4}


@pytest.mark.asyncio
async def test_load_progress_ignores_negative_indexes(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    progress_file.write_text(json.dumps({"comments": -2, "imageReactions": 0}))
    assert await tracker.load_progress() == {"imageReactions": 0}


@pytest.mark.asyncio
async def test_save_progress_keeps_other_packages(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    await tracker.save_progress("comments", 3)
    await tracker.save_progress("imageReactions", 9)
    await tracker.save_progress("comments", 4)

    assert json.loads(progress_file.read_text()) == {"comments": 4, "imageReactions": 9}
    assert not progress_file.with_name(progress_file.name + ".tmp").exists()


@pytest.mark.asyncio
async def test_concurrent_saves_leave_valid_json(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    await asyncio.gather(*(tracker.save_progress(f"pkg{i}", i) for i in range(50)))

    data = json.loads(progress_file.read_text())
    assert data == {f"pkg{i}": i for i in range(50)}


@pytest.mark.asyncio
async def test_concurrent_saves_for_one_package_keep_last_write(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    await asyncio.gather(*(tracker.save_progress("comments", i) for i in range(50)))

    assert json.loads(progress_file.read_text()) == {"comments": 49}


@pytest.mark.asyncio
async def test_save_progress_failure_is_logged_not_raised(tmp_path: Path) -> None:
    tracker = ProgressTracker(tmp_path / "missing-dir" / "progress.json")

    with capture_logs() as logs:
        await tracker.save_progress("comments", 2)

    assert any(entry["event"] == "Failed to save progress" for entry in logs)


@pytest.mark.asyncio
async def test_clear_progress_removes_file(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    await tracker.save_progress("comments", 1)
    assert progress_file.exists()

    await tracker.clear_progress()
    assert not progress_file.exists()

    # Clearing twice is fine.
    await tracker.clear_progress()


@pytest.mark.asyncio
async def test_out_of_order_batches_persist_low_water_mark(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    tracker.start("comments")
    tracker.set_total("comments", 3)

    await tracker.update_batch("comments", 2, 5)
    assert not progress_file.exists()

    await tracker.update_batch("comments", 0, 5)
    assert json.loads(progress_file.read_text()) == {"comments": 1}

    await tracker.update_batch("comments", 1, 5)
    assert json.loads(progress_file.read_text()) == {"comments": 3}

    state = tracker.state("comments")
    assert state is not None
    assert state.current == 3
    assert state.metrics_emitted == 15


@pytest.mark.asyncio
async def test_resumed_package_counts_from_resume_index(
    progress_file: Path, tracker: ProgressTracker
) -> None:
    tracker.start("comments")
    tracker.set_total("comments", 2, resume_index=4)

    await tracker.update_batch("comments", 4, 1)

    assert json.loads(progress_file.read_text()) == {"comments": 5}


def test_complete_and_error_drop_package_state(tracker: ProgressTracker) -> None:
    tracker.start("a")
    tracker.start("b")

    tracker.complete("a", 10)
    tracker.error("b", RuntimeError("boom"))

    assert tracker.state("a") is None
    assert tracker.state("b") is None


def test_rates_and_eta_use_sample_window() -> None:
    state = ProgressState(name="comments", total=10, current=4)
    state.samples.append(RateSample(seconds=2.0, batches=1, metrics=100))
    state.samples.append(RateSample(seconds=2.0, batches=1, metrics=100))

    assert state.metrics_per_second() == pytest.approx(50.0)
    assert state.batches_per_second() == pytest.approx(0.5)
    assert state.eta_seconds() == pytest.approx(12.0)


def test_eta_unknown_without_samples() -> None:
    state = ProgressState(name="comments", total=10)
    assert state.eta_seconds() is None
    assert state.metrics_per_second() == 0.0


def test_sample_window_is_bounded() -> None:
    state = ProgressState(name="comments", total=100)
    for i in range(RATE_WINDOW_SIZE + 5):
        state.record(i, 1)

    assert len(state.samples) == RATE_WINDOW_SIZE
    assert state.current == RATE_WINDOW_SIZE + 5
    assert state.resume_index == RATE_WINDOW_SIZE + 5


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(None, "unknown"), (5.9, "5s"), (65, "1m05s"), (3725, "1h02m05s")],
)
def test_format_eta(seconds: float | None, expected: str) -> None:
    assert _format_eta(seconds) == expected
