"""Collection items: a `Collection` increment on whatever the item points at."""

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

_TARGETS = (
    ("modelId", "Model"),
    ("imageId", "Image"),
    ("postId", "Post"),
    ("articleId", "Article"),
)


async def _range(ctx: QueryContext) -> BatchRange:
    return await id_range(
        ctx, '"CollectionItem"', '"createdAt" < $1::timestamptz', [ctx.cutoff]
    )


async def _query(ctx: QueryContext, batch: BatchRange) -> list[Row]:
    return await ctx.pg.query(
        """
        SELECT ci."id", ci."addedById", ci."modelId", ci."imageId",
               ci."postId", ci."articleId", ci."createdAt"
        FROM "CollectionItem" ci
        WHERE ci."id" BETWEEN $1 AND $2
          AND ci."createdAt" < $3::timestamptz
        """,
        [batch.start, batch.end, ctx.cutoff],
    )


async def _processor(ctx: QueryContext, rows: list[Row], emit: Emit) -> None:
    for row in rows:
        # Items added by the system have no user; attribute them to 0.
        user_id = row.get("addedById") or 0
        created_at = as_utc(row["createdAt"])
        for column, entity_type in _TARGETS:
            entity_id = row.get(column)
            if entity_id is None:
                continue
            emit(
                EntityMetricEvent(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    user_id=user_id,
                    metric_type="Collection",
                    metric_value=1,
                    created_at=created_at,
                )
            )


package = MigrationPackage(
    name="collectionItems",
    range=_range,
    query=_query,
    processor=_processor,
    query_batch_size=10_000,
    description="Models, images, posts and articles added to collections",
)
