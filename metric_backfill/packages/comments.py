"""Comments: a `Comment` increment on the entity that owns the comment thread."""

from __future__ import annotations

import structlog

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

logger = structlog.get_logger(__name__)

_THREAD_TARGETS = (
    ("modelId", "Model"),
    ("imageId", "Image"),
    ("postId", "Post"),
    ("articleId", "Article"),
    ("bountyId", "Bounty"),
)


async def _range(ctx: QueryContext) -> BatchRange:
    return await id_range(
        ctx, '"CommentV2"', '"createdAt" < $1::timestamptz', [ctx.cutoff]
    )


async def _query(ctx: QueryContext, batch: BatchRange) -> list[Row]:
    return await ctx.pg.query(
        """
        SELECT c."id", c."userId", c."createdAt",
               t."modelId", t."imageId", t."postId", t."articleId", t."bountyId"
        FROM "CommentV2" c
        LEFT JOIN "Thread" t ON t."id" = c."threadId"
        WHERE c."id" BETWEEN $1 AND $2
          AND c."createdAt" < $3::timestamptz
        """,
        [batch.start, batch.end, ctx.cutoff],
    )


def _thread_target(row: Row) -> tuple[str, int] | None:
    for column, entity_type in _THREAD_TARGETS:
        entity_id = row.get(column)
        if entity_id is not None:
            return entity_type, entity_id
    return None


async def _processor(ctx: QueryContext, rows: list[Row], emit: Emit) -> None:
    dropped: list[int] = []
    for row in rows:
        target = _thread_target(row)
        if target is None:
            # Orphaned or nested-thread comment; nothing to attribute it to.
            dropped.append(row["id"])
            continue
        entity_type, entity_id = target
        emit(
            EntityMetricEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=row["userId"],
                metric_type="Comment",
                metric_value=1,
                created_at=as_utc(row["createdAt"]),
            )
        )

    if dropped:
        logger.warning(
            "Dropped comments without a resolvable thread entity",
            package="comments",
            dropped=len(dropped),
            sample_ids=dropped[:10],
        )


package = MigrationPackage(
    name="comments",
    range=_range,
    query=_query,
    processor=_processor,
    query_batch_size=10_000,
    description="Comments on models, images, posts, articles and bounties",
)
