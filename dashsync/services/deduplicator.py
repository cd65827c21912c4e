"""
InFlightRegistry - single-flight execution per key.

When multiple callers request the same key simultaneously,
only one underlying operation runs and its outcome is shared.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class InFlightRegistry:
    """
    Coalesces concurrent async operations that share a key.

    The first caller starts ``fn``; later callers await the same task.
    The key is released once the task settles, success or failure, so a
    later independent request starts a fresh operation.

    Usage:
        registry = InFlightRegistry()

        payload = await registry.run_exclusive(
            "gaza-casualties",
            lambda: fetcher.fetch(descriptor, "gaza-casualties"),
        )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = InFlightStats()

    async def run_exclusive(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` unless an operation for ``key`` is already in flight.

        Args:
            key: Unique identifier for the operation
            fn: Async function to execute if no operation is in flight

        Returns:
            Result of ``fn`` (from this call or the one already running)
        """
        # No await between lookup and registration, so this is atomic on the loop.
        task = self._in_flight.get(key)
        if task is not None:
            self._stats.coalesced += 1
            self._log(f"JOIN: waiting for in-flight operation: {key}")
        else:
            self._stats.total += 1
            self._log(f"NEW: starting operation: {key}")
            task = asyncio.create_task(fn(), name=f"inflight:{key}")
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))

        # Shield so one cancelled waiter does not cancel the shared operation.
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()
        self._log(f"DONE: operation settled: {key}")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def get_in_flight_count(self) -> int:
        """Get number of in-flight operations."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight operations."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "InFlightStats":
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[InFlight] {message}")


class InFlightStats:
    """Statistics for single-flight coalescing."""

    def __init__(self):
        self.total: int = 0  # Operations actually started
        self.coalesced: int = 0  # Callers that joined an existing operation
        self.in_flight: int = 0  # Currently running

    @property
    def coalesce_rate(self) -> float:
        total = self.total + self.coalesced
        if total == 0:
            return 0.0
        return self.coalesced / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_operations": self.total,
            "coalesced": self.coalesced,
            "in_flight": self.in_flight,
            "coalesce_rate": f"{self.coalesce_rate:.2%}",
        }
