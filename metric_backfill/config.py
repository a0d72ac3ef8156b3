"""Configuration models and environment variable parsing for the metric backfill."""

import os
import re
from datetime import UTC, datetime
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if it exists
load_dotenv()

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DEFAULT_CUTOFF_DATE = "2025-11-20"
DEFAULT_PROGRESS_FILE = Path("./metric-backfill-progress.json")
DEFAULT_SINK_TABLE = "entityMetricEvents"


def canonicalize_cutoff(value: str | datetime) -> datetime:
    """Normalize a user-supplied cutoff into an aware UTC datetime.

    Accepts:
    - YYYY-MM-DD (treated as midnight UTC)
    - ISO-8601 datetimes, with or without timezone (naive treated as UTC)
    - datetime instances (naive treated as UTC)
    """
    if isinstance(value, datetime):
        dt = value
    else:
        v = (value or "").strip()
        if not v:
            raise ValueError("cutoff date cannot be empty")

        if _DATE_ONLY_RE.match(v):
            return datetime.fromisoformat(v).replace(tzinfo=UTC)

        v_for_parse = v[:-1] + "+00:00" if v.endswith("Z") else v
        try:
            dt = datetime.fromisoformat(v_for_parse)
        except Exception as e:
            raise ValueError(
                f"Invalid cutoff datetime (expected ISO-8601 like 2025-11-20T00:00:00Z): {value!r}"
            ) from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class PostgresConfig(BaseModel):
    """Connection settings for the relational source."""

    dsn: str = Field(..., description="PostgreSQL DSN (read replica recommended)")
    min_pool_size: int = Field(default=1, ge=1, le=100)
    max_pool_size: int = Field(default=10, ge=1, le=100)

    @field_validator("dsn")
    def validate_dsn(cls, v: str) -> str:
        """Validate that the DSN is not empty."""
        if not v or v.strip() == "":
            raise ValueError("PostgreSQL DSN cannot be empty")
        return v.strip()


class ClickHouseConfig(BaseModel):
    """Connection settings for a ClickHouse HTTP endpoint."""

    url: str = Field(..., description="ClickHouse HTTP URL, e.g. http://localhost:8123")
    username: str = Field(default="default")
    password: str = Field(default="")
    database: str = Field(default="default")
    timeout: float = Field(default=60.0, gt=0, le=3600.0)

    @field_validator("url")
    def validate_url(cls, v: str) -> str:
        """Validate that the URL is not empty and has a scheme."""
        v = (v or "").strip()
        if not v:
            raise ValueError("ClickHouse URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("ClickHouse URL must start with http:// or https://")
        return v.rstrip("/")


class BackfillConfig(BaseModel):
    """Engine-wide settings that are not part of a single run's parameters."""

    cutoff_date: datetime = Field(
        default_factory=lambda: canonicalize_cutoff(DEFAULT_CUTOFF_DATE),
        description="Only source rows created before this instant are replayed",
    )
    sink_table: str = Field(default=DEFAULT_SINK_TABLE)
    progress_file: Path = Field(
        default=DEFAULT_PROGRESS_FILE,
        description="JSON file holding per-package resume indexes",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts for each range/query/insert call",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Linear backoff unit between attempts, in seconds",
    )
    insert_max_request_bytes: int | None = Field(
        default=16 * 1024 * 1024,
        ge=1,
        description=(
            "Approximate cap on the JSONEachRow body of a single sink insert. "
            "None disables byte-aware chunking."
        ),
    )

    @field_validator("cutoff_date", mode="before")
    def validate_cutoff_date(cls, v: str | datetime) -> datetime:
        return canonicalize_cutoff(v)


class MigrationParams(BaseModel):
    """Per-run control surface, usually filled from CLI flags."""

    concurrency: int = Field(default=1, ge=1, le=100)
    insert_batch_size: int = Field(default=500, ge=1)
    start_from: int | None = Field(
        default=None,
        ge=0,
        description="Explicit resume batch index, overrides saved progress",
    )
    packages: list[str] | None = Field(
        default=None, description="Package names to run (None runs all)"
    )
    dry_run: bool = False
    auto_resume: bool = False
    limit_batches: int | None = Field(
        default=None, ge=1, description="Process at most N batches per package"
    )


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Config(BaseModel):
    """Main configuration class for the metric backfill."""

    source_db: PostgresConfig
    source_clickhouse: ClickHouseConfig
    sink: ClickHouseConfig
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        """Pydantic config."""

        validate_assignment = True

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables.

        Returns:
            Config instance populated from environment variables.

        Raises:
            ValueError: If required environment variables are missing.
        """
        pg_dsn = os.getenv("BACKFILL_PG_DSN")
        ch_url = os.getenv("BACKFILL_CH_URL")

        if not pg_dsn:
            raise ValueError("BACKFILL_PG_DSN environment variable is required")
        if not ch_url:
            raise ValueError("BACKFILL_CH_URL environment variable is required")

        ch_user = os.getenv("BACKFILL_CH_USER", "default")
        ch_password = os.getenv("BACKFILL_CH_PASSWORD", "")
        ch_database = os.getenv("BACKFILL_CH_DATABASE", "default")

        # The sink defaults to the source ClickHouse cluster.
        sink_url = os.getenv("BACKFILL_SINK_URL", ch_url)
        sink_user = os.getenv("BACKFILL_SINK_USER", ch_user)
        sink_password = os.getenv("BACKFILL_SINK_PASSWORD", ch_password)
        sink_database = os.getenv("BACKFILL_SINK_DATABASE", ch_database)

        max_request_bytes_raw = os.getenv(
            "BACKFILL_INSERT_MAX_REQUEST_BYTES", str(16 * 1024 * 1024)
        )
        insert_max_request_bytes = (
            None
            if max_request_bytes_raw.lower() in {"", "0", "none"}
            else int(max_request_bytes_raw)
        )

        return cls(
            source_db=PostgresConfig(
                dsn=pg_dsn,
                min_pool_size=int(os.getenv("BACKFILL_PG_MIN_POOL_SIZE", "1")),
                max_pool_size=int(os.getenv("BACKFILL_PG_MAX_POOL_SIZE", "10")),
            ),
            source_clickhouse=ClickHouseConfig(
                url=ch_url,
                username=ch_user,
                password=ch_password,
                database=ch_database,
            ),
            sink=ClickHouseConfig(
                url=sink_url,
                username=sink_user,
                password=sink_password,
                database=sink_database,
            ),
            backfill=BackfillConfig(
                cutoff_date=os.getenv("BACKFILL_CUTOFF_DATE", DEFAULT_CUTOFF_DATE),
                sink_table=os.getenv("BACKFILL_SINK_TABLE", DEFAULT_SINK_TABLE),
                progress_file=Path(
                    os.getenv("BACKFILL_PROGRESS_FILE", str(DEFAULT_PROGRESS_FILE))
                ),
                retry_attempts=int(os.getenv("BACKFILL_RETRY_ATTEMPTS", "3")),
                retry_delay=float(os.getenv("BACKFILL_RETRY_DELAY", "1.0")),
                insert_max_request_bytes=insert_max_request_bytes,
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                format=os.getenv("LOG_FORMAT", "json"),
            ),
        )

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Create configuration from a YAML or JSON file.

        Raises:
            ValueError: If the file format is unsupported or required fields are missing
            FileNotFoundError: If the configuration file doesn't exist
        """
        import json

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        file_extension = config_path.suffix.lower()

        try:
            if file_extension == ".json":
                with open(config_path) as f:
                    config_data = json.load(f)
            elif file_extension in [".yaml", ".yml"]:
                import yaml

                with open(config_path) as f:
                    config_data = yaml.safe_load(f)
            else:
                raise ValueError(
                    f"Unsupported configuration file format: {file_extension}. Supported formats: .json, .yaml, .yml"
                )

            return cls(**config_data)

        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {e}") from e
        except Exception as e:
            raise ValueError(f"Failed to load configuration file: {e}") from e

