from __future__ import annotations

import asyncio
import random

import pytest

from dashsync.services.errors import (
    NetworkError,
    ParseError,
    RateLimitError,
    ValidationError,
)
from dashsync.services.retry import RetryController
from tests.conftest import make_descriptor


def _always(exc: Exception):
    attempts = 0

    async def fetch() -> None:
        nonlocal attempts
        attempts += 1
        raise exc

    def count() -> int:
        return attempts

    return fetch, count


@pytest.mark.asyncio
async def test_network_errors_retry_until_ceiling() -> None:
    retry = RetryController(jitter_ratio=0.0)
    descriptor = make_descriptor("src", max_retries=3, backoff_base_ms=1)
    fetch, attempts = _always(NetworkError("down", source_id="src"))
    backoffs: list[int] = []

    with pytest.raises(NetworkError):
        await retry.attempt(
            descriptor, "k", fetch, on_backoff=lambda n, delay, err: backoffs.append(n)
        )

    assert attempts() == 4
    assert backoffs == [1, 2, 3]
    assert retry.consecutive_failures("src") == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [ParseError("bad json"), ValidationError("bad shape")])
async def test_non_retryable_errors_fail_immediately(exc: Exception) -> None:
    retry = RetryController()
    descriptor = make_descriptor("src", max_retries=5)
    fetch, attempts = _always(exc)

    with pytest.raises(type(exc)):
        await retry.attempt(descriptor, "k", fetch)

    assert attempts() == 1


@pytest.mark.asyncio
async def test_success_after_failures_resets_counter() -> None:
    retry = RetryController(jitter_ratio=0.0)
    descriptor = make_descriptor("src", max_retries=3, backoff_base_ms=1)
    outcomes = [NetworkError("down"), NetworkError("down"), {"ok": True}]

    async def fetch() -> dict[str, bool]:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await retry.attempt(descriptor, "k", fetch) == {"ok": True}
    assert retry.consecutive_failures("src") == 0


def test_delay_doubles_and_caps() -> None:
    retry = RetryController(backoff_ceiling_ms=30_000, jitter_ratio=0.0)
    descriptor = make_descriptor("src", backoff_base_ms=1000)

    delays = [retry.compute_delay(descriptor, n) for n in range(7)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_jitter_stays_within_twenty_percent() -> None:
    retry = RetryController(jitter_ratio=0.2, rng=random.Random(7))
    descriptor = make_descriptor("src", backoff_base_ms=1000)

    for _ in range(200):
        delay = retry.compute_delay(descriptor, 2)
        assert 3.2 <= delay <= 4.8


def test_retry_after_overrides_backoff_but_respects_ceiling() -> None:
    retry = RetryController(backoff_ceiling_ms=5_000, jitter_ratio=0.0)
    descriptor = make_descriptor("src", backoff_base_ms=1000)

    assert retry.compute_delay(descriptor, 0, retry_after=3) == 3.0
    assert retry.compute_delay(descriptor, 0, retry_after=60) == 5.0


def test_override_replaces_descriptor_limit() -> None:
    descriptor = make_descriptor("src", max_retries=3)

    assert RetryController().retry_limit(descriptor) == 3
    assert RetryController(max_retries=1).retry_limit(descriptor) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retryable() -> None:
    retry = RetryController(jitter_ratio=0.0)
    descriptor = make_descriptor("src", max_retries=1)
    fetch, attempts = _always(RateLimitError(source_id="src", retry_after=0.001))

    with pytest.raises(RateLimitError):
        await retry.attempt(descriptor, "k", fetch)

    assert attempts() == 2


@pytest.mark.asyncio
async def test_cancel_backoff_retries_immediately() -> None:
    retry = RetryController(jitter_ratio=0.0)
    descriptor = make_descriptor("src", max_retries=1, backoff_base_ms=60_000)
    outcomes: list[object] = [NetworkError("down"), "payload"]

    async def fetch() -> object:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    task = asyncio.create_task(retry.attempt(descriptor, "k", fetch))
    await asyncio.sleep(0.01)
    assert retry.pending_backoffs() == 1

    assert retry.cancel_backoff("src") == 1
    assert await asyncio.wait_for(task, timeout=1) == "payload"


@pytest.mark.asyncio
async def test_cancel_all_aborts_pending_retries() -> None:
    retry = RetryController(jitter_ratio=0.0)
    descriptor = make_descriptor("src", max_retries=3, backoff_base_ms=60_000)
    fetch, attempts = _always(NetworkError("down"))

    task = asyncio.create_task(retry.attempt(descriptor, "k", fetch))
    await asyncio.sleep(0.01)
    retry.cancel_all()

    with pytest.raises(NetworkError):
        await asyncio.wait_for(task, timeout=1)
    assert attempts() == 1
