"""Top-level control loop: range -> plan -> bounded concurrent batches, per package."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Mapping
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from itertools import islice

import structlog

from metric_backfill.clickhouse import ClickHouseClient
from metric_backfill.config import Config, MigrationParams
from metric_backfill.planner import count_batches, iter_batches
from metric_backfill.postgres import PostgresSource
from metric_backfill.progress import ProgressTracker
from metric_backfill.retry import retryable
from metric_backfill.sink import SinkWriter
from metric_backfill.types import (
    BatchRange,
    MetricBuffer,
    MigrationPackage,
    QueryContext,
)

logger = structlog.get_logger(__name__)


class PackageStatus(StrEnum):
    PENDING = "pending"
    RANGING = "ranging"
    SKIPPED = "skipped"
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class PackageResult:
    name: str
    status: PackageStatus = PackageStatus.PENDING
    range: BatchRange | None = None
    total_batches: int = 0
    start_index: int = 0
    batches_run: int = 0
    metrics: int = 0
    # True when limit_batches stopped the package before the end of its plan.
    truncated: bool = False
    error: str | None = None


@dataclass(slots=True)
class RunResult:
    dry_run: bool
    packages: dict[str, PackageResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(
            r.status in (PackageStatus.COMPLETED, PackageStatus.SKIPPED)
            for r in self.packages.values()
        )

    @property
    def total_metrics(self) -> int:
        return sum(r.metrics for r in self.packages.values())


async def _run_with_concurrency(
    jobs: Iterable[Callable[[], Awaitable[None]]], *, max_concurrent: int
) -> None:
    """Drain ``jobs`` with at most ``max_concurrent`` in flight.

    Jobs are started in iteration order. The first job that raises cancels the
    ones still in flight, no further jobs are started, and its exception is
    re-raised unchanged.
    """
    if max_concurrent < 1:
        raise ValueError(f"max_concurrent must be >= 1; got {max_concurrent}")

    job_iter = iter(jobs)
    # In the order they happened, not in worker order.
    failures: list[Exception] = []

    async def _worker() -> None:
        try:
            for job in job_iter:
                await job()
        except Exception as e:
            failures.append(e)
            raise

    workers = [asyncio.create_task(_worker()) for _ in range(max_concurrent)]
    try:
        await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for w in workers:
            if not w.done():
                w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    if failures:
        raise failures[0]


class MigrationOrchestrator:
    """Runs the selected migration packages one after another."""

    def __init__(
        self,
        packages: Mapping[str, MigrationPackage],
        params: MigrationParams,
        ctx: QueryContext,
        sink: SinkWriter,
        tracker: ProgressTracker,
        *,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.packages = packages
        self.params = params
        self.ctx = ctx
        self.sink = sink
        self.tracker = tracker
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def select_packages(self) -> list[tuple[str, MigrationPackage]]:
        """Apply the name filter, keeping registry order.

        Raises:
            ValueError: If the filter names a package that does not exist.
        """
        if not self.params.packages:
            return list(self.packages.items())
        unknown = [n for n in self.params.packages if n not in self.packages]
        if unknown:
            raise ValueError(
                f"Unknown package(s): {', '.join(unknown)}. "
                f"Available: {', '.join(self.packages)}"
            )
        wanted = set(self.params.packages)
        return [(n, p) for n, p in self.packages.items() if n in wanted]

    async def run(self) -> RunResult:
        params = self.params
        selected = self.select_packages()
        result = RunResult(dry_run=params.dry_run)

        logger.info(
            "Starting metric backfill",
            packages=[n for n, _ in selected],
            cutoff=self.ctx.cutoff.isoformat(),
            concurrency=params.concurrency,
            insert_batch_size=params.insert_batch_size,
            dry_run=params.dry_run,
            limit_batches=params.limit_batches,
            start_from=params.start_from,
            auto_resume=params.auto_resume,
        )

        saved: dict[str, int] = {}
        if params.auto_resume:
            saved = await self.tracker.load_progress()
            if saved:
                logger.info("Found saved progress", saved_progress=saved)

        for name, pkg in selected:
            result.packages[name] = await self._run_package(
                name, pkg, saved_index=saved.get(name)
            )

        logger.info(
            "All packages completed",
            packages=len(selected),
            metrics=result.total_metrics,
        )

        truncated = any(r.truncated for r in result.packages.values())
        if params.dry_run:
            logger.info("Dry run: keeping progress file")
        elif truncated:
            logger.info("Batch limit truncated a package: keeping progress file")
        else:
            await self.tracker.clear_progress()
        return result

    async def _run_package(
        self, name: str, pkg: MigrationPackage, *, saved_index: int | None
    ) -> PackageResult:
        log = logger.bind(package=name)
        result = PackageResult(name=name)
        self.tracker.start(name)

        try:
            result.status = PackageStatus.RANGING
            log.info("Resolving range", query_batch_size=pkg.query_batch_size)
            full_range = await retryable(
                lambda: pkg.range(self.ctx),
                self.retry_attempts,
                self.retry_delay,
                operation="resolve range",
                log_fields={"package": name},
            )
            result.range = full_range
            log.info("Range resolved", start=full_range.start, end=full_range.end)

            if full_range.is_empty:
                result.status = PackageStatus.SKIPPED
                log.info("No data to process")
                self.tracker.complete(name, 0)
                return result

            result.status = PackageStatus.PLANNING
            width = pkg.query_batch_size
            total = count_batches(full_range.start, full_range.end, width)
            result.total_batches = total

            if self.params.start_from is not None:
                start_index = self.params.start_from
            elif saved_index is not None:
                start_index = saved_index
            else:
                start_index = 0
            result.start_index = start_index
            if start_index > 0:
                log.info("Resuming", start_index=start_index, total_batches=total)

            batch_count = max(0, total - start_index)
            if self.params.limit_batches is not None and batch_count > self.params.limit_batches:
                batch_count = self.params.limit_batches
                result.truncated = True
                log.info("Limiting batches", limit_batches=self.params.limit_batches)

            self.tracker.set_total(name, batch_count, resume_index=start_index)

            result.status = PackageStatus.RUNNING
            log.info(
                "Processing batches",
                batches=batch_count,
                total_batches=total,
                concurrency=self.params.concurrency,
            )

            planned = islice(
                iter_batches(full_range.start, full_range.end, width, offset=start_index),
                batch_count,
            )
            jobs = (
                self._batch_job(name, pkg, index, batch_range, result)
                for index, batch_range in planned
            )
            await _run_with_concurrency(jobs, max_concurrent=self.params.concurrency)

            result.status = PackageStatus.COMPLETED
            self.tracker.complete(name, result.metrics)
            return result

        except Exception as e:
            result.status = PackageStatus.FAILED
            result.error = str(e)
            self.tracker.error(name, e)
            raise

    def _batch_job(
        self,
        name: str,
        pkg: MigrationPackage,
        index: int,
        batch_range: BatchRange,
        result: PackageResult,
    ) -> Callable[[], Awaitable[None]]:
        async def _job() -> None:
            await self._process_batch(name, pkg, index, batch_range, result)

        return _job

    async def _process_batch(
        self,
        name: str,
        pkg: MigrationPackage,
        index: int,
        batch_range: BatchRange,
        result: PackageResult,
    ) -> None:
        log = logger.bind(package=name, batch=index + 1)
        try:
            log.debug("Querying range", start=batch_range.start, end=batch_range.end)
            rows = await retryable(
                lambda: pkg.query(self.ctx, batch_range),
                self.retry_attempts,
                self.retry_delay,
                operation="query batch",
                log_fields={"package": name, "batch": index + 1},
            )

            buffer = MetricBuffer()
            await pkg.processor(self.ctx, rows, buffer.emit)
            log.debug("Processed rows", rows=len(rows), metrics=len(buffer))

            if buffer.events:
                await self.sink.flush(buffer.events, package=name)

            result.batches_run += 1
            result.metrics += len(buffer)
            await self.tracker.update_batch(name, index, len(buffer))
        except Exception as e:
            log.error(
                "Error processing batch",
                start=batch_range.start,
                end=batch_range.end,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise


@asynccontextmanager
async def open_backfill_context(
    config: Config, *, dry_run: bool = False
) -> AsyncGenerator[tuple[QueryContext, ClickHouseClient | None], None]:
    """Connect the shared source pool/clients and, unless dry run, the sink.

    Yields:
        Tuple of (query context, sink client or None on dry run).
    """
    async with AsyncExitStack() as stack:
        pg = await stack.enter_async_context(PostgresSource(config.source_db))
        ch = await stack.enter_async_context(
            ClickHouseClient(config.source_clickhouse, "source")
        )
        sink: ClickHouseClient | None = None
        if not dry_run:
            sink = await stack.enter_async_context(ClickHouseClient(config.sink, "sink"))

        yield (
            QueryContext(pg=pg, ch=ch, cutoff=config.backfill.cutoff_date, dry_run=dry_run),
            sink,
        )


async def run_migrations(
    packages: Mapping[str, MigrationPackage],
    params: MigrationParams,
    config: Config,
) -> RunResult:
    """Connect everything described by ``config`` and run the selected packages."""
    async with open_backfill_context(config, dry_run=params.dry_run) as (ctx, sink_client):
        sink = SinkWriter(
            sink_client,
            config.backfill.sink_table,
            insert_batch_size=params.insert_batch_size,
            max_request_bytes=config.backfill.insert_max_request_bytes,
            dry_run=params.dry_run,
            retry_attempts=config.backfill.retry_attempts,
            retry_delay=config.backfill.retry_delay,
        )
        orchestrator = MigrationOrchestrator(
            packages,
            params,
            ctx,
            sink,
            ProgressTracker(config.backfill.progress_file),
            retry_attempts=config.backfill.retry_attempts,
            retry_delay=config.backfill.retry_delay,
        )
        return await orchestrator.run()
