"""Small helpers shared by the built-in packages."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


def as_utc(value: Any) -> datetime:
    """Coerce a source timestamp to aware UTC.

    Accepts datetimes, unix seconds and ISO-8601 strings. Naive values are taken
    as UTC, so ClickHouse columns should be selected as `toUnixTimestamp(...)`.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise TypeError(f"Unsupported timestamp value: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
