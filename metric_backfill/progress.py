"""Per-package progress accounting and the persisted resume file.

The resume file is a flat JSON object ``{package_name: resume_index}`` where
``resume_index`` is the number of leading plan batches that are known to be
complete. Batches finish out of order under concurrency, so the tracker keeps
the set of finished indexes and only ever persists the contiguous low-water
mark; a resumed run therefore never skips a batch that did not finish.
"""

from __future__ import annotations

import asyncio
import json as _json
import os
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

RATE_WINDOW_SIZE = 10


@dataclass(slots=True)
class RateSample:
    seconds: float
    batches: int
    metrics: int


@dataclass(slots=True)
class ProgressState:
    """In-memory progress of one running package."""

    name: str
    current: int = 0
    total: int = 0
    metrics_emitted: int = 0
    start_time: float = field(default_factory=time.monotonic)
    resume_index: int = 0
    last_update: float = field(default_factory=time.monotonic)
    samples: deque[RateSample] = field(
        default_factory=lambda: deque(maxlen=RATE_WINDOW_SIZE)
    )
    finished: set[int] = field(default_factory=set)

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.current)

    def metrics_per_second(self) -> float:
        """Average metric throughput across the sample window."""
        seconds = sum(s.seconds for s in self.samples)
        if seconds <= 0:
            return 0.0
        return sum(s.metrics for s in self.samples) / seconds

    def batches_per_second(self) -> float:
        seconds = sum(s.seconds for s in self.samples)
        if seconds <= 0:
            return 0.0
        return sum(s.batches for s in self.samples) / seconds

    def eta_seconds(self) -> float | None:
        rate = self.batches_per_second()
        if rate <= 0:
            return None
        return self.remaining / rate

    def record(self, batch_index: int, metrics: int) -> bool:
        """Record a finished batch; return True when the resume index advanced."""
        now = time.monotonic()
        self.samples.append(
            RateSample(seconds=max(0.0, now - self.last_update), batches=1, metrics=metrics)
        )
        self.last_update = now
        self.current += 1
        self.metrics_emitted += metrics

        self.finished.add(batch_index)
        advanced = False
        while self.resume_index in self.finished:
            self.finished.discard(self.resume_index)
            self.resume_index += 1
            advanced = True
        return advanced


def _format_eta(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


class ProgressTracker:
    """Tracks running packages and persists their resume indexes."""

    def __init__(self, progress_file: Path) -> None:
        self.progress_file = Path(progress_file)
        self._states: dict[str, ProgressState] = {}
        self._write_lock = asyncio.Lock()

    def state(self, name: str) -> ProgressState | None:
        return self._states.get(name)

    def start(self, name: str) -> ProgressState:
        state = ProgressState(name=name)
        self._states[name] = state
        logger.info("Package started", package=name)
        return state

    def set_total(self, name: str, total: int, *, resume_index: int = 0) -> None:
        state = self._states[name]
        state.total = total
        state.resume_index = resume_index

    async def update_batch(self, name: str, batch_index: int, metrics: int) -> None:
        """Account for finished plan batch ``batch_index`` and checkpoint it."""
        state = self._states[name]
        advanced = state.record(batch_index, metrics)

        logger.info(
            "Batch complete",
            package=name,
            batch=batch_index + 1,
            progress=f"{state.current}/{state.total}",
            metrics=metrics,
            metrics_total=state.metrics_emitted,
            metrics_per_second=round(state.metrics_per_second(), 1),
            eta=_format_eta(state.eta_seconds()),
        )

        if advanced:
            await self.save_progress(name, state.resume_index)

    def complete(self, name: str, total_metrics: int) -> None:
        state = self._states.pop(name, None)
        elapsed = time.monotonic() - state.start_time if state else 0.0
        logger.info(
            "Package complete",
            package=name,
            batches=state.current if state else 0,
            metrics=total_metrics,
            elapsed_seconds=round(elapsed, 1),
        )

    def error(self, name: str, error: BaseException) -> None:
        state = self._states.pop(name, None)
        logger.error(
            "Package failed",
            package=name,
            batches_completed=state.current if state else 0,
            resume_index=state.resume_index if state else None,
            error_type=type(error).__name__,
            error=str(error),
        )

    # ---- persistence ----

    def _read(self) -> dict[str, int]:
        try:
            with open(self.progress_file) as f:
                data: Any = _json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(
                "Ignoring unreadable progress file",
                progress_file=str(self.progress_file),
                error=str(e),
            )
            return {}
        if not isinstance(data, dict):
            return {}
        out: dict[str, int] = {}
        for key, value in data.items():
            # Negative indexes count as no saved progress for that package.
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                out[str(key)] = value
        return out

    def _write(self, data: dict[str, int]) -> None:
        tmp_path = self.progress_file.with_name(self.progress_file.name + ".tmp")
        with open(tmp_path, "w") as f:
            _json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.progress_file)

    async def load_progress(self) -> dict[str, int]:
        """Return saved resume indexes; missing or corrupt files yield ``{}``."""
        async with self._write_lock:
            return self._read()

    async def save_progress(self, name: str, resume_index: int) -> None:
        """Read-modify-write the progress file under the process-wide lock.

        Failures are logged and swallowed: the batch is still done, a later crash
        only costs a redundant replay of it.
        """
        async with self._write_lock:
            try:
                data = self._read()
                data[name] = resume_index
                self._write(data)
            except Exception as e:
                logger.error(
                    "Failed to save progress",
                    package=name,
                    resume_index=resume_index,
                    progress_file=str(self.progress_file),
                    error=str(e),
                )

    async def clear_progress(self) -> None:
        async with self._write_lock:
            try:
                self.progress_file.unlink(missing_ok=True)
                logger.info("Cleared progress file", progress_file=str(self.progress_file))
            except OSError as e:
                logger.warning(
                    "Failed to clear progress file",
                    progress_file=str(self.progress_file),
                    error=str(e),
                )
