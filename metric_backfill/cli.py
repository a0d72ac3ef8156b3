"""Command-line interface for the metric backfill."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated

import structlog
import typer
from rich.console import Console
from rich.table import Table

from metric_backfill.config import Config, MigrationParams, canonicalize_cutoff
from metric_backfill.orchestration import RunResult, run_migrations
from metric_backfill.packages import ALL_PACKAGES

app = typer.Typer(
    name="metric-backfill",
    help="Replay historical source rows into entity metric events",
    add_completion=False,
)

console = Console()


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=log_level.upper()
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _split_names(value: str | None) -> list[str] | None:
    if not value:
        return None
    names = [n.strip() for n in value.split(",") if n.strip()]
    return names or None


def _load_config(config_file: Path | None) -> Config:
    if config_file is not None:
        return Config.from_file(config_file)
    return Config.from_env()


@app.command()
def run(
    concurrency: Annotated[
        int,
        typer.Option(
            "--concurrency",
            "-c",
            help="Batches processed concurrently within a package",
            envvar="BACKFILL_CONCURRENCY",
        ),
    ] = 10,
    batch_size: Annotated[
        int,
        typer.Option(
            "--batch-size",
            "-b",
            help="Metric events per sink insert",
            envvar="BACKFILL_INSERT_BATCH_SIZE",
        ),
    ] = 10000,
    start_from: Annotated[
        int | None,
        typer.Option(
            "--start-from",
            help="Skip this many leading batches of every selected package",
        ),
    ] = None,
    packages: Annotated[
        str | None,
        typer.Option(
            "--packages",
            "-p",
            help="Comma-separated package names to run (default: all)",
            envvar="BACKFILL_PACKAGES",
        ),
    ] = None,
    limit_batches: Annotated[
        int | None,
        typer.Option(
            "--limit-batches",
            help="Process at most N batches per package (smoke tests)",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Query and transform but do not insert into the sink",
        ),
    ] = False,
    auto_resume: Annotated[
        bool,
        typer.Option(
            "--auto-resume",
            help="Resume each package from the saved progress file",
        ),
    ] = False,
    cutoff: Annotated[
        str | None,
        typer.Option(
            "--cutoff",
            help="Override the cutoff date (YYYY-MM-DD or ISO-8601)",
            envvar="BACKFILL_CUTOFF_DATE",
        ),
    ] = None,
    progress_file: Annotated[
        Path | None,
        typer.Option(
            "--progress-file",
            help="Path of the resume progress file",
            envvar="BACKFILL_PROGRESS_FILE",
        ),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
            envvar="LOG_LEVEL",
        ),
    ] = "INFO",
    log_format: Annotated[
        str,
        typer.Option(
            "--log-format",
            "-f",
            help="Log format (json or text)",
            envvar="LOG_FORMAT",
        ),
    ] = "text",
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            help="Path to a JSON/YAML configuration file (default: environment variables)",
        ),
    ] = None,
) -> None:
    """Run the selected migration packages.

    Examples:
        metric-backfill run --packages imageReactions,comments
        metric-backfill run --dry-run --limit-batches 5
        metric-backfill run --auto-resume --concurrency 20
    """
    setup_logging(log_level, log_format)
    logger = structlog.get_logger(__name__)

    try:
        config = _load_config(config_file)
        config.logging.level = log_level
        config.logging.format = log_format
        if cutoff is not None:
            config.backfill.cutoff_date = canonicalize_cutoff(cutoff)
        if progress_file is not None:
            config.backfill.progress_file = progress_file

        params = MigrationParams(
            concurrency=concurrency,
            insert_batch_size=batch_size,
            start_from=start_from,
            packages=_split_names(packages),
            limit_batches=limit_batches,
            dry_run=dry_run,
            auto_resume=auto_resume,
        )

        logger.info(
            "Final parameters",
            params=params.model_dump(),
            cutoff=config.backfill.cutoff_date.isoformat(),
            progress_file=str(config.backfill.progress_file),
        )
        if dry_run:
            console.print("[yellow]DRY RUN MODE - No data will be inserted[/yellow]")

        result = asyncio.run(run_migrations(ALL_PACKAGES, params, config))

    except KeyboardInterrupt:
        console.print("\n[red]Backfill interrupted by user[/red]")
        logger.info("Backfill interrupted by user")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Backfill failed: {e}[/red]")
        logger.error("Backfill failed", error=str(e), exc_info=True)
        sys.exit(1)

    _display_results(result)
    console.print("\n[green]Backfill completed successfully![/green]")


@app.command("list-packages")
def list_packages() -> None:
    """List the available migration packages."""
    table = Table(title="Migration packages")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Query batch size", justify="right")
    table.add_column("Description")
    for name, pkg in ALL_PACKAGES.items():
        table.add_row(name, str(pkg.query_batch_size), pkg.description)
    console.print(table)


def _display_results(result: RunResult) -> None:
    """Display per-package results in a table."""
    table = Table(title="Backfill Results" + (" (dry run)" if result.dry_run else ""))
    table.add_column("Package", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Range")
    table.add_column("Batches", justify="right")
    table.add_column("Metrics", justify="right", style="green")

    for name, r in result.packages.items():
        range_text = f"{r.range.start}-{r.range.end}" if r.range else "-"
        batches = f"{r.start_index + r.batches_run}/{r.total_batches}"
        table.add_row(name, r.status.value, range_text, batches, f"{r.metrics:,}")

    console.print(table)
    console.print(f"Total metrics: {result.total_metrics:,}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
