"""Bounded retry with linear backoff for transient I/O calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0


async def retryable(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
    *,
    operation: str = "operation",
    log_fields: dict[str, Any] | None = None,
) -> T:
    """Await ``fn()`` up to ``max_retries`` times.

    After failed attempt ``n`` the call sleeps ``backoff * n`` seconds before
    trying again. Once every attempt has failed, the last exception is re-raised
    unchanged.

    Args:
        fn: Zero-argument callable returning an awaitable. It is invoked once per
            attempt, so it must build a fresh coroutine each time.
        max_retries: Total number of attempts (at least 1).
        backoff: Linear backoff unit, in seconds.
        operation: Human-readable name used in log events.
        log_fields: Extra structured fields for log events.
    """
    if max_retries < 1:
        raise ValueError(f"max_retries must be >= 1; got {max_retries}")

    fields = log_fields or {}
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_retries:
                logger.error(
                    "Operation failed after all retries",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=max_retries,
                    error_type=type(e).__name__,
                    error=str(e),
                    **fields,
                )
                raise

            delay = backoff * attempt
            logger.warning(
                "Operation failed, backing off and retrying",
                operation=operation,
                attempt=attempt,
                max_attempts=max_retries,
                sleep_seconds=delay,
                error_type=type(e).__name__,
                error=str(e),
                **fields,
            )
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError(f"{operation} failed with unknown error")
