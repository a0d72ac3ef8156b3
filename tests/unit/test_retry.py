from __future__ import annotations

from unittest.mock import AsyncMock, call, patch

import pytest

from metric_backfill.retry import retryable


class _Flaky:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.errors: list[Exception] = []

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            err = ConnectionError(f"transient failure {self.calls}")
            self.errors.append(err)
            raise err
        return "ok"


@pytest.mark.asyncio
async def test_retryable_succeeds_on_third_attempt() -> None:
    fn = _Flaky(failures=2)

    with patch("metric_backfill.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await retryable(fn, 3, 1.0)

    assert result == "ok"
    assert fn.calls == 3
    assert sleep.await_args_list == [call(1.0), call(2.0)]


@pytest.mark.asyncio
async def test_retryable_reraises_last_error_unchanged() -> None:
    fn = _Flaky(failures=10)

    with patch("metric_backfill.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(ConnectionError) as exc_info:
            await retryable(fn, 3, 0.5)

    assert fn.calls == 3
    assert exc_info.value is fn.errors[-1]
    assert sleep.await_args_list == [call(0.5), call(1.0)]


@pytest.mark.asyncio
async def test_retryable_single_attempt_never_sleeps() -> None:
    fn = _Flaky(failures=1)

    with patch("metric_backfill.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(ConnectionError):
            await retryable(fn, 1, 1.0)

    assert fn.calls == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retryable_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError, match="max_retries must be >= 1"):
        await retryable(_Flaky(failures=0), 0)
