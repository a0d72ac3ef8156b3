"""Model downloads replayed from ClickHouse `modelVersionEvents`.

Batches are one hour of unix seconds wide. The owning model of each version is
looked up in PostgreSQL per batch.
"""

from __future__ import annotations

import structlog

from metric_backfill.packages.common import as_utc
from metric_backfill.ranges import timestamp_range
from metric_backfill.types import (
    BatchRange,
    Emit,
    EntityMetricEvent,
    MigrationPackage,
    QueryContext,
    Row,
)

logger = structlog.get_logger(__name__)


async def _range(ctx: QueryContext) -> BatchRange:
    return await timestamp_range(
        ctx,
        "modelVersionEvents",
        "time",
        f"type = 'Download' AND toUnixTimestamp(time) < {ctx.cutoff_epoch}",
    )


async def _query(ctx: QueryContext, batch: BatchRange) -> list[Row]:
    return await ctx.ch.query(
        f"""
        SELECT modelVersionId, userId, toUnixTimestamp(time) AS ts
        FROM modelVersionEvents
        WHERE type = 'Download'
          AND toUnixTimestamp(time) BETWEEN {int(batch.start)} AND {int(batch.end)}
          AND toUnixTimestamp(time) < {ctx.cutoff_epoch}
        """
    )


async def _lookup_model_ids(ctx: QueryContext, version_ids: list[int]) -> dict[int, int]:
    if not version_ids:
        return {}
    rows = await ctx.pg.query(
        'SELECT "id", "modelId" FROM "ModelVersion" WHERE "id" = ANY($1::int[])',
        [version_ids],
    )
    return {int(r["id"]): int(r["modelId"]) for r in rows}


async def _processor(ctx: QueryContext, rows: list[Row], emit: Emit) -> None:
    version_ids = sorted({int(r["modelVersionId"]) for r in rows})
    model_ids = await _lookup_model_ids(ctx, version_ids)

    dropped = 0
    for row in rows:
        version_id = int(row["modelVersionId"])
        created_at = as_utc(row["ts"])
        user_id = int(row.get("userId") or 0)
        emit(
            EntityMetricEvent(
                entity_type="ModelVersion",
                entity_id=version_id,
                user_id=user_id,
                metric_type="Download",
                metric_value=1,
                created_at=created_at,
            )
        )
        model_id = model_ids.get(version_id)
        if model_id is None:
            # Version deleted since the download; only the version-level event survives.
            dropped += 1
            continue
        emit(
            EntityMetricEvent(
                entity_type="Model",
                entity_id=model_id,
                user_id=user_id,
                metric_type="Download",
                metric_value=1,
                created_at=created_at,
            )
        )

    if dropped:
        logger.warning(
            "Dropped model-level downloads for unknown model versions",
            package="modelDownloads",
            dropped=dropped,
        )


package = MigrationPackage(
    name="modelDownloads",
    range=_range,
    query=_query,
    processor=_processor,
    query_batch_size=3600,
    description="Model and model-version downloads from ClickHouse events",
)
