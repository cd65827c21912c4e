"""
Refresh scheduler - decides which datasets to refresh and runs the fetches.

Per key: IDLE -> FETCHING -> IDLE (success or terminal failure)
                          -> BACKOFF -> FETCHING (retryable failure)

Triggers:
- periodic tick (APScheduler interval job), refreshes stale keys only
- force_update(), bypasses freshness and the circuit breaker, re-raises
- wake(), same as a forced refresh of everything but fire-and-forget
- revalidate(), best-effort background refresh of one key read while stale
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Coroutine, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from dashsync.datasource.base import SourceDescriptor
from dashsync.datasource.fetcher import SourceFetcher
from dashsync.datasource.source_manager import SourceRegistry
from dashsync.services.cache import CacheEntry, CacheStore
from dashsync.services.circuit_breaker import CircuitBreakerRegistry
from dashsync.services.deduplicator import InFlightRegistry
from dashsync.services.errors import FetchError
from dashsync.services.events import SubscriptionBus
from dashsync.services.retry import RetryController
from dashsync.services.status import RefreshError, StatusTracker
from dashsync.utils import background_job, utcnow


class SourceState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF = "backoff"


class RefreshConfig(BaseModel):
    """Runtime-adjustable refresh configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    auto_refresh_enabled: bool = True
    refresh_interval_seconds: float = Field(default=300, gt=0)
    max_concurrency: int | None = Field(default=None, ge=1)
    error_cap: int = Field(default=20, ge=1)
    backoff_ceiling_ms: int = Field(default=30_000, ge=0)
    jitter_ratio: float = Field(default=0.2, ge=0, lt=1)
    max_retries: int | None = Field(default=None, ge=0)
    refresh_on_reconnect: bool = True
    revalidate_on_read: bool = True
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_reset_seconds: float = Field(default=300, ge=0)
    cache_max_entries: int | None = Field(default=512, ge=1)


class RefreshScheduler:
    """
    Coordinates refreshes for every registered source.

    Only this class and StatusTracker mutate shared state; the fetches of
    distinct keys run concurrently, bounded by max_concurrency.
    """

    JOB_ID = "dashsync_refresh_tick"

    def __init__(
        self,
        registry: SourceRegistry,
        cache: CacheStore,
        fetcher: SourceFetcher,
        retry: RetryController,
        in_flight: InFlightRegistry,
        status: StatusTracker,
        bus: SubscriptionBus,
        circuits: CircuitBreakerRegistry,
        config: RefreshConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.cache = cache
        self.fetcher = fetcher
        self.retry = retry
        self.in_flight = in_flight
        self.status = status
        self.bus = bus
        self.circuits = circuits
        self.config = config or RefreshConfig()
        self._clock = clock

        self.scheduler = AsyncIOScheduler()
        self._is_running = False
        self._online = True
        self._states: dict[str, SourceState] = {}
        self._semaphore = asyncio.Semaphore(self._concurrency_limit())
        self._background: set[asyncio.Task[Any]] = set()
        self._pending_revalidation: set[str] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the timer loop; adds the periodic job if auto-refresh is on."""
        if self._is_running:
            logger.warning("RefreshScheduler is already running")
            return
        self.scheduler.start()
        self._is_running = True
        if self.config.auto_refresh_enabled:
            self.start_auto_refresh()
        logger.info("RefreshScheduler started")

    def stop(self) -> None:
        """Stop the timer loop and abort pending backoff waits."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        self.status.set_next_refresh(None)
        aborted = self.retry.cancel_all()
        logger.info(f"RefreshScheduler stopped ({aborted} backoff timer(s) cancelled)")

    async def cancel_background(self) -> int:
        """Cancel wake and revalidation tasks and wait for them to unwind."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background refresh task(s)")
        return len(tasks)

    def is_running(self) -> bool:
        return self._is_running

    def start_auto_refresh(self) -> None:
        interval = self.config.refresh_interval_seconds
        self.scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=interval,
            id=self.JOB_ID,
            name="Periodic dataset refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.status.set_next_refresh(self._clock() + timedelta(seconds=interval))
        logger.info(f"Auto-refresh started (every {interval}s)")

    def stop_auto_refresh(self) -> None:
        if self.scheduler.get_job(self.JOB_ID) is not None:
            self.scheduler.remove_job(self.JOB_ID)
        self.status.set_next_refresh(None)
        logger.info("Auto-refresh stopped")

    def auto_refresh_active(self) -> bool:
        return self._is_running and self.scheduler.get_job(self.JOB_ID) is not None

    def apply_config(self, config: RefreshConfig) -> None:
        """Swap in a new config, rescheduling or toggling the periodic job."""
        old = self.config
        self.config = config

        self.retry.backoff_ceiling_ms = config.backoff_ceiling_ms
        self.retry.jitter_ratio = config.jitter_ratio
        self.retry.max_retries = config.max_retries
        self.status.set_error_cap(config.error_cap)
        self.cache.set_max_size(config.cache_max_entries)
        self.circuits.configure(
            config.circuit_failure_threshold,
            timedelta(seconds=config.circuit_reset_seconds),
        )
        if config.max_concurrency != old.max_concurrency:
            # In-progress fetches keep the old semaphore and finish normally.
            self._semaphore = asyncio.Semaphore(self._concurrency_limit())

        if not self._is_running:
            return
        active = self.auto_refresh_active()
        if config.auto_refresh_enabled and (
            not active or config.refresh_interval_seconds != old.refresh_interval_seconds
        ):
            self.start_auto_refresh()
        elif not config.auto_refresh_enabled and active:
            self.stop_auto_refresh()

    def _concurrency_limit(self) -> int:
        if self.config.max_concurrency is not None:
            return self.config.max_concurrency
        return max(1, len(self.registry.get_enabled()))

    # ── Triggers ──────────────────────────────────────────────────────────

    @background_job
    async def tick(self) -> int:
        """Periodic refresh of stale keys. Returns the number of keys scheduled."""
        interval = self.config.refresh_interval_seconds
        if self.auto_refresh_active():
            self.status.set_next_refresh(self._clock() + timedelta(seconds=interval))

        if not self._online:
            logger.info("Offline, skipping periodic refresh")
            return 0

        due: list[tuple[SourceDescriptor, str]] = []
        skipped_fresh = 0
        for descriptor in self.registry.get_enabled():
            if not self.circuits.get(descriptor.id).can_request():
                logger.warning(f"Circuit open for {descriptor.id}, skipping this tick")
                continue
            for key in descriptor.keys:
                if self.cache.is_fresh(key):
                    skipped_fresh += 1
                else:
                    due.append((descriptor, key))

        if not due:
            logger.debug(f"Tick: nothing stale ({skipped_fresh} fresh)")
            return 0

        logger.info(f"Tick: refreshing {len(due)} stale key(s), {skipped_fresh} fresh")
        await self._run(due, raise_errors=False)
        return len(due)

    async def force_update(self, sources: Iterable[str] | None = None) -> dict[str, Any]:
        """
        Refresh every key of ``sources`` (all enabled sources when None).

        Returns:
            Mapping of dataset key to payload

        Raises:
            KeyError: Unknown source id
            FetchError: First terminal failure, after all keys settled
        """
        items = self._resolve(sources)
        for source_id in {descriptor.id for descriptor, _ in items}:
            self.retry.cancel_backoff(source_id)
        logger.info(f"Forced refresh of {len(items)} key(s)")
        return await self._run(items, raise_errors=True)

    def wake(self, reason: str = "external") -> asyncio.Task[Any] | None:
        """Fire-and-forget forced refresh of everything."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Wake signal ({reason}) ignored: no running event loop")
            return None
        logger.info(f"Wake signal received: {reason}")
        items = self._resolve(None)
        for source_id in {descriptor.id for descriptor, _ in items}:
            self.retry.cancel_backoff(source_id)
        return self._spawn(self._run(items, raise_errors=False), f"wake:{reason}")

    def revalidate(self, key: str) -> bool:
        """Schedule a background refresh of ``key``; never raises."""
        descriptor = self.registry.source_for_key(key)
        if (
            descriptor is None
            or not descriptor.enabled
            or not self._online
            or key in self._pending_revalidation
            or self.in_flight.is_in_flight(key)
            or not self.circuits.get(descriptor.id).can_request()
        ):
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False

        self._pending_revalidation.add(key)

        async def _revalidate() -> None:
            try:
                await self._run([(descriptor, key)], raise_errors=False)
            finally:
                self._pending_revalidation.discard(key)

        self._spawn(_revalidate(), f"revalidate:{key}")
        logger.debug(f"Revalidating {key} in background")
        return True

    async def retry_failed(self) -> dict[str, Any]:
        """Force-refresh every source that currently has a retryable error."""
        failed = sorted(
            {
                error.source
                for error in self.status.errors()
                if error.retryable and error.source in self.registry
            }
        )
        if not failed:
            logger.info("No failed sources to retry")
            return {}
        logger.info(f"Retrying {len(failed)} failed source(s): {failed}")
        for source_id in failed:
            self.status.clear_errors(source_id)
        return await self.force_update(failed)

    def set_online(self, online: bool) -> asyncio.Task[Any] | None:
        """Connectivity signal sink; a reconnect acts as a wake signal."""
        was_online = self._online
        self._online = online
        self.status.set_online(online)
        if online and not was_online:
            logger.info("Network reconnected")
            if self.config.refresh_on_reconnect:
                return self.wake("reconnect")
        elif not online and was_online:
            logger.warning("Network disconnected, periodic refresh paused")
        return None

    def state_of(self, key: str) -> SourceState:
        return self._states.get(key, SourceState.IDLE)

    # ── Execution ─────────────────────────────────────────────────────────

    def _resolve(self, sources: Iterable[str] | None) -> list[tuple[SourceDescriptor, str]]:
        if sources is None:
            descriptors = self.registry.get_enabled()
        else:
            descriptors = [self.registry.get(source_id) for source_id in sources]
        return [(descriptor, key) for descriptor in descriptors for key in descriptor.keys]

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run(
        self,
        items: list[tuple[SourceDescriptor, str]],
        raise_errors: bool,
    ) -> dict[str, Any]:
        self.status.begin_cycle(len(items))

        async def _one(descriptor: SourceDescriptor, key: str) -> Any:
            try:
                return await self.in_flight.run_exclusive(
                    key, lambda: self._fetch_and_store(descriptor, key)
                )
            finally:
                self.status.key_settled()

        results = await asyncio.gather(
            *(_one(descriptor, key) for descriptor, key in items),
            return_exceptions=True,
        )

        payloads: dict[str, Any] = {}
        failures: list[BaseException] = []
        healthy: set[str] = set()
        down: set[str] = set()
        for (descriptor, key), result in zip(items, results):
            if isinstance(result, BaseException):
                failures.append(result)
                if getattr(result, "retryable", False):
                    down.add(descriptor.id)
            else:
                payloads[key] = result
                healthy.add(descriptor.id)
        self._update_circuits(healthy, down)

        if failures:
            logger.warning(
                f"Refresh cycle finished: {len(payloads)} ok, {len(failures)} failed"
            )
            if raise_errors:
                raise failures[0]
        else:
            logger.info(f"Refresh cycle finished: {len(payloads)} key(s) updated")
        return payloads

    def _update_circuits(self, healthy: set[str], down: set[str]) -> None:
        """
        One breaker outcome per source per cycle.

        A source counts as failed only when a key hit a retryable error and
        no key of it succeeded; a 404 or a bad payload on one key is a data
        problem and never pauses its sibling keys.
        """
        for source_id in healthy:
            self.circuits.get(source_id).record_success()
        for source_id in down - healthy:
            self.circuits.get(source_id).record_failure()

    async def _fetch_and_store(self, descriptor: SourceDescriptor, key: str) -> Any:
        """Runs at most once per key at a time (called through InFlightRegistry)."""
        retries = 0

        def _on_backoff(retry_number: int, delay: float, error: FetchError) -> None:
            nonlocal retries
            retries = retry_number
            self._states[key] = SourceState.BACKOFF

        async def _attempt() -> Any:
            # A slot is held per attempt only; backoff waits release it.
            async with self._semaphore:
                self._states[key] = SourceState.FETCHING
                return await self.fetcher.fetch(descriptor, key)

        self.status.fetch_started()
        try:
            payload = await self.retry.attempt(
                descriptor, key, _attempt, on_backoff=_on_backoff
            )
        except Exception as e:
            error = RefreshError(
                source=descriptor.id,
                key=key,
                message=str(e) or type(e).__name__,
                occurred_at=self._clock(),
                retry_count=retries,
                kind=getattr(e, "kind", "internal"),
                retryable=bool(getattr(e, "retryable", False)),
            )
            self.status.record_error(error)
            self.bus.publish_error(error)
            logger.error(f"Refresh of {descriptor.id}/{key} failed: {error.message}")
            raise
        else:
            entry = CacheEntry.create(
                key=key,
                payload=payload,
                source=descriptor.id,
                ttl_seconds=descriptor.ttl_seconds,
                fetched_at=self._clock(),
            )
            if self.cache.put(entry):
                self.status.record_update()
                self.bus.publish_update(entry)
            self.status.clear_error(descriptor.id, key)
            return payload
        finally:
            self._states[key] = SourceState.IDLE
            self.status.fetch_settled()

    def get_status(self) -> dict[str, Any]:
        """Scheduler diagnostics."""
        job = self.scheduler.get_job(self.JOB_ID) if self._is_running else None
        next_run = job.next_run_time if job else None
        return {
            "running": self._is_running,
            "online": self._online,
            "next_run": next_run.isoformat() if next_run else None,
            "in_flight": self.in_flight.get_in_flight_keys(),
            "pending_backoffs": self.retry.pending_backoffs(),
            "open_circuits": self.circuits.get_open_circuits(),
            "states": {key: state.value for key, state in self._states.items()},
        }
