from __future__ import annotations

import asyncio

import pytest

from legalhub.core.errors import VendorDuplicateError, VendorFailureError, VendorTransientError
from legalhub.services.resilience import RetryPolicy, default_retryable, is_retryable_status, retry_async
from legalhub.services.telemetry import counters_snapshot


_POLICY = RetryPolicy(timeout_ms=200, max_attempts=3, backoff_ms=1)


@pytest.mark.asyncio
async def test_retry_async_retries_transient_then_succeeds() -> None:
    attempts: list[int] = []

    async def flaky(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 2:
            raise VendorTransientError("busy", status_code=503)
        return "ok"

    assert await retry_async(flaky, policy=_POLICY) == "ok"
    assert attempts == [1, 2]
    assert counters_snapshot()["vendor_retries_total"] == 1


@pytest.mark.asyncio
async def test_non_retryable_errors_propagate_unchanged() -> None:
    attempts: list[int] = []

    async def duplicate(attempt: int) -> None:
        attempts.append(attempt)
        raise VendorDuplicateError("already registered", status_code=409)

    with pytest.raises(VendorDuplicateError):
        await retry_async(duplicate, policy=_POLICY)
    assert attempts == [1]


@pytest.mark.asyncio
async def test_exhausted_retries_become_terminal_failure() -> None:
    async def down(attempt: int) -> None:
        raise VendorTransientError("down", status_code=502)

    with pytest.raises(VendorFailureError) as excinfo:
        await retry_async(down, policy=_POLICY, operation="BuscaNovosAndamentos")
    assert excinfo.value.status_code == 502
    assert "after 3 attempts" in str(excinfo.value)
    assert counters_snapshot()["vendor_retries_exhausted_total"] == 1


@pytest.mark.asyncio
async def test_each_attempt_is_bounded_by_the_timeout() -> None:
    attempts: list[int] = []

    async def slow(attempt: int) -> str:
        attempts.append(attempt)
        if attempt == 1:
            await asyncio.sleep(1)
        return "late-but-fine"

    policy = RetryPolicy(timeout_ms=50, max_attempts=2, backoff_ms=1)
    assert await retry_async(slow, policy=policy) == "late-but-fine"
    assert attempts == [1, 2]


def test_retry_classification() -> None:
    assert is_retryable_status(500)
    assert is_retryable_status(429)
    assert not is_retryable_status(404)
    assert not is_retryable_status(None)
    assert default_retryable(TimeoutError())
    assert default_retryable(VendorTransientError("x"))
    assert not default_retryable(VendorFailureError("x", status_code=503))
    assert not default_retryable(ValueError("x"))


def test_backoff_is_linear() -> None:
    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=250)
    assert policy.delay_s(1) == 0.25
    assert policy.delay_s(2) == 0.5
