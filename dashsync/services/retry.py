"""
RetryController - exponential backoff around a single fetch attempt.

Policy:
- Retryable failures (NetworkError) are retried up to max_retries times
- delay = backoff_base_ms * 2**retry_count, capped, then jittered
- A 429 Retry-After hint replaces the computed delay (still capped)
- Non-retryable failures fail immediately without consuming a retry
- Pending backoff waits can be cut short per source (forced refresh)
  or aborted altogether (shutdown)
"""

import asyncio
import random
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from dashsync.services.errors import FetchError, RateLimitError

if TYPE_CHECKING:
    from dashsync.datasource.base import SourceDescriptor


class _BackoffWait:
    """A pending backoff sleep that can be woken early."""

    def __init__(self, source_id: str, key: str):
        self.source_id = source_id
        self.key = key
        self.event = asyncio.Event()
        self.aborted = False


class RetryController:
    """
    Retries fetches for one source at a time and tracks consecutive failures.

    Usage:
        retry = RetryController(backoff_ceiling_ms=30_000)
        payload = await retry.attempt(
            descriptor, "gaza-casualties",
            lambda: fetcher.fetch(descriptor, "gaza-casualties"),
        )
    """

    def __init__(
        self,
        backoff_ceiling_ms: int = 30_000,
        jitter_ratio: float = 0.2,
        max_retries: int | None = None,
        rng: random.Random | None = None,
    ):
        self.backoff_ceiling_ms = backoff_ceiling_ms
        self.jitter_ratio = jitter_ratio
        # Overrides every descriptor's own limit when set.
        self.max_retries = max_retries
        self._rng = rng or random.Random()
        self._waits: set[_BackoffWait] = set()
        self._consecutive_failures: dict[str, int] = {}

    def retry_limit(self, descriptor: "SourceDescriptor") -> int:
        if self.max_retries is not None:
            return self.max_retries
        return descriptor.max_retries

    def compute_delay(
        self,
        descriptor: "SourceDescriptor",
        retry_count: int,
        retry_after: float | None = None,
    ) -> float:
        """Seconds to wait before retry number ``retry_count`` (0-based)."""
        if retry_after is not None:
            base_ms = retry_after * 1000
        else:
            base_ms = descriptor.backoff_base_ms * (2**retry_count)
        capped_ms = min(base_ms, self.backoff_ceiling_ms)
        jitter = self._rng.uniform(1 - self.jitter_ratio, 1 + self.jitter_ratio)
        return max(0.0, capped_ms * jitter / 1000)

    async def attempt(
        self,
        descriptor: "SourceDescriptor",
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        on_backoff: Callable[[int, float, FetchError], None] | None = None,
    ) -> Any:
        """
        Run ``fetch_fn`` with retries.

        Args:
            descriptor: Source whose retry policy applies
            key: Dataset key, for logging and wait bookkeeping
            fetch_fn: Coroutine factory performing one attempt
            on_backoff: Called with (retry_number, delay, error) before each wait

        Returns:
            Payload of the first successful attempt

        Raises:
            FetchError: Terminal failure (non-retryable or retries exhausted)
        """
        limit = self.retry_limit(descriptor)
        retry_count = 0

        while True:
            try:
                payload = await fetch_fn()
            except FetchError as e:
                self._record_failure(descriptor.id)
                if not e.retryable:
                    logger.error(
                        f"{descriptor.id}/{key}: {e.kind} error, not retrying: {e}"
                    )
                    raise
                if retry_count >= limit:
                    logger.error(
                        f"{descriptor.id}/{key}: giving up after {retry_count} retries: {e}"
                    )
                    raise

                retry_after = e.retry_after if isinstance(e, RateLimitError) else None
                delay = self.compute_delay(descriptor, retry_count, retry_after)
                retry_count += 1
                logger.warning(
                    f"{descriptor.id}/{key}: attempt failed ({e}), "
                    f"retry {retry_count}/{limit} in {delay:.2f}s"
                )
                if on_backoff is not None:
                    on_backoff(retry_count, delay, e)

                if not await self._wait(descriptor.id, key, delay):
                    logger.info(f"{descriptor.id}/{key}: backoff aborted")
                    raise
            except Exception:
                self._record_failure(descriptor.id)
                raise
            else:
                if retry_count:
                    logger.info(
                        f"{descriptor.id}/{key}: succeeded after {retry_count} retries"
                    )
                self._consecutive_failures[descriptor.id] = 0
                return payload

    async def _wait(self, source_id: str, key: str, delay: float) -> bool:
        """Sleep for ``delay``; False if the wait was aborted."""
        wait = _BackoffWait(source_id, key)
        self._waits.add(wait)
        try:
            await asyncio.wait_for(wait.event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        finally:
            self._waits.discard(wait)
        return not wait.aborted

    def cancel_backoff(self, source_id: str) -> int:
        """Cut pending waits of ``source_id`` short so they retry right away."""
        woken = 0
        for wait in list(self._waits):
            if wait.source_id == source_id:
                wait.event.set()
                woken += 1
        if woken:
            logger.debug(f"Cancelled {woken} backoff timer(s) for {source_id}")
        return woken

    def cancel_all(self) -> int:
        """Abort every pending wait; the waiting attempts fail terminally."""
        count = 0
        for wait in list(self._waits):
            wait.aborted = True
            wait.event.set()
            count += 1
        return count

    def pending_backoffs(self) -> int:
        return len(self._waits)

    def consecutive_failures(self, source_id: str) -> int:
        return self._consecutive_failures.get(source_id, 0)

    def _record_failure(self, source_id: str) -> None:
        self._consecutive_failures[source_id] = (
            self._consecutive_failures.get(source_id, 0) + 1
        )
