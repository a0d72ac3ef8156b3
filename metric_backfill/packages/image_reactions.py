"""Image reactions: one `Reaction<Kind>` increment per `ImageReaction` row."""

from __future__ import annotations

from metric_backfill.packages.common import as_utc
from metric_backfill.ranges import id_range
from metric_backfill.types import (
    BatchRange,
    Emit,
    EntityMetricEvent,
    MigrationPackage,
    QueryContext,
    Row,
)


async def _range(ctx: QueryContext) -> BatchRange:
    return await id_range(
        ctx, '"ImageReaction"', '"createdAt" < $1::timestamptz', [ctx.cutoff]
    )


async def _query(ctx: QueryContext, batch: BatchRange) -> list[Row]:
    return await ctx.pg.query(
        """
        SELECT r."id", r."imageId", r."userId", r."reaction", r."createdAt"
        FROM "ImageReaction" r
        WHERE r."id" BETWEEN $1 AND $2
          AND r."createdAt" < $3::timestamptz
        """,
        [batch.start, batch.end, ctx.cutoff],
    )


async def _processor(ctx: QueryContext, rows: list[Row], emit: Emit) -> None:
    emit(
        EntityMetricEvent(
            entity_type="Image",
            entity_id=row["imageId"],
            user_id=row["userId"],
            metric_type=f"Reaction{row['reaction']}",
            metric_value=1,
            created_at=as_utc(row["createdAt"]),
        )
        for row in rows
    )


package = MigrationPackage(
    name="imageReactions",
    range=_range,
    query=_query,
    processor=_processor,
    query_batch_size=10_000,
    description="Image reactions (Like, Heart, Laugh, Cry, ...) by reacting user",
)
