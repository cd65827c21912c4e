"""
DataSyncService - the consumer-facing surface of the synchronization layer.

Usage:
    async with DataSyncService(registry, blob_store=FileBlobStore("public")) as sync:
        sub = sync.subscribe(on_update, key_filter="gaza-casualties")
        await sync.force_update(["goodshepherd"])
        payload = sync.get_cached_data("gaza-casualties")
        sub.unsubscribe()

Reads are synchronous and served straight from the cache (stale data
included); refreshes run in the background and surface through
get_status() and subscriptions.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from loguru import logger

from dashsync.datasource.fetcher import SourceFetcher
from dashsync.datasource.scheduler import RefreshConfig, RefreshScheduler
from dashsync.datasource.source_manager import SourceRegistry
from dashsync.datastore.blobstore import BlobStore, FileBlobStore
from dashsync.services.cache import CacheStore
from dashsync.services.circuit_breaker import CircuitBreakerRegistry
from dashsync.services.client import HttpClient
from dashsync.services.deduplicator import InFlightRegistry
from dashsync.services.events import Callback, Subscription, SubscriptionBus
from dashsync.services.retry import RetryController
from dashsync.services.status import RefreshStatus, StatusTracker
from dashsync.settings import Settings
from dashsync.utils import utcnow


class DataSyncService:
    """Explicitly constructed service value; nothing here is global."""

    def __init__(
        self,
        registry: SourceRegistry,
        blob_store: BlobStore | None = None,
        http_client: HttpClient | None = None,
        config: RefreshConfig | None = None,
        cache_snapshot_path: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.config = config or RefreshConfig()
        self.blob_store: BlobStore = blob_store or FileBlobStore(".")
        self.http_client = http_client or HttpClient()
        self.cache_snapshot_path = cache_snapshot_path

        self.cache = CacheStore(max_size=self.config.cache_max_entries, clock=clock)
        self.status = StatusTracker(error_cap=self.config.error_cap, clock=clock)
        self.bus = SubscriptionBus()
        self.in_flight = InFlightRegistry()
        self.retry = RetryController(
            backoff_ceiling_ms=self.config.backoff_ceiling_ms,
            jitter_ratio=self.config.jitter_ratio,
            max_retries=self.config.max_retries,
        )
        self.circuits = CircuitBreakerRegistry(
            failure_threshold=self.config.circuit_failure_threshold,
            reset_timeout=timedelta(seconds=self.config.circuit_reset_seconds),
            clock=clock,
        )
        self.fetcher = SourceFetcher(self.blob_store, self.http_client)
        self.scheduler = RefreshScheduler(
            registry=registry,
            cache=self.cache,
            fetcher=self.fetcher,
            retry=self.retry,
            in_flight=self.in_flight,
            status=self.status,
            bus=self.bus,
            circuits=self.circuits,
            config=self.config,
            clock=clock,
        )
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "DataSyncService":
        """Wire a service from process settings (sources file, snapshot root)."""
        config = RefreshConfig(
            refresh_interval_seconds=settings.refresh_interval_seconds,
            max_concurrency=settings.max_concurrency,
        )
        return cls(
            registry=SourceRegistry.from_file(settings.sources_path),
            blob_store=FileBlobStore(settings.snapshot_root),
            http_client=HttpClient(timeout=settings.http_timeout),
            config=config,
            cache_snapshot_path=settings.cache_snapshot_path,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def init(self, refresh_now: bool = False) -> None:
        """Restore the durable cache and start the scheduler."""
        if self._initialized:
            logger.warning("DataSyncService already initialized")
            return
        await self._restore_cache()
        self.scheduler.start()
        self._initialized = True
        logger.info(
            f"DataSyncService initialized: {len(self.registry)} source(s), "
            f"interval {self.config.refresh_interval_seconds}s"
        )
        if refresh_now:
            await self.scheduler.tick()

    async def dispose(self) -> None:
        """Stop timers, persist the cache and close the HTTP client."""
        if not self._initialized:
            return
        self.scheduler.stop()
        await self.scheduler.cancel_background()
        await self._persist_cache()
        await self.http_client.close()
        self.bus.clear()
        self._initialized = False
        logger.info("DataSyncService disposed")

    async def __aenter__(self) -> "DataSyncService":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    async def _restore_cache(self) -> None:
        if not self.cache_snapshot_path:
            return
        try:
            raw = await self.blob_store.read(self.cache_snapshot_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read cache snapshot: {e}")
            return
        if raw is None:
            return
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt cache snapshot: {e}")
            return
        if not isinstance(entries, list):
            logger.warning("Ignoring cache snapshot: expected a list of entries")
            return
        loaded = self.cache.load(entries)
        logger.info(f"Restored {loaded} cache entries from {self.cache_snapshot_path}")

    async def _persist_cache(self) -> None:
        if not self.cache_snapshot_path:
            return
        data = json.dumps(self.cache.dump()).encode("utf-8")
        try:
            await self.blob_store.write(self.cache_snapshot_path, data)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to persist cache snapshot: {e}")
            return
        logger.info(f"Persisted cache to {self.cache_snapshot_path}")

    # ── Consumer API ──────────────────────────────────────────────────────

    def get_cached_data(self, key: str) -> Any | None:
        """
        Current payload for ``key`` (possibly stale) or None.

        Never blocks and never raises; a missing or stale key triggers a
        best-effort background refresh.
        """
        try:
            entry = self.cache.get(key)
            if self.config.revalidate_on_read and (
                entry is None or not self.cache.is_fresh(key)
            ):
                self.scheduler.revalidate(key)
            return entry.payload if entry is not None else None
        except Exception as e:
            logger.error(f"get_cached_data({key}) failed: {e}")
            return None

    def subscribe(
        self,
        callback: Callback,
        key_filter: str | list[str] | set[str] | None = None,
    ) -> Subscription:
        return self.bus.subscribe(callback, key_filter)

    async def force_update(self, sources: Iterable[str] | None = None) -> dict[str, Any]:
        return await self.scheduler.force_update(sources)

    async def retry_failed(self) -> dict[str, Any]:
        return await self.scheduler.retry_failed()

    def wake(self, reason: str = "external") -> asyncio.Task[Any] | None:
        """External wake signal; returns immediately."""
        return self.scheduler.wake(reason)

    def set_online(self, online: bool) -> asyncio.Task[Any] | None:
        return self.scheduler.set_online(online)

    def get_status(self) -> RefreshStatus:
        return self.status.snapshot()

    def clear_errors(self) -> None:
        cleared = self.status.clear_errors()
        if cleared:
            logger.info(f"Cleared {cleared} refresh error(s)")

    def clear_cache(self, key: str | None = None) -> int:
        return self.cache.clear(key)

    def start_auto_refresh(self) -> None:
        self.update_config(auto_refresh_enabled=True)

    def stop_auto_refresh(self) -> None:
        self.update_config(auto_refresh_enabled=False)

    def update_config(self, **changes: Any) -> RefreshConfig:
        """
        Apply a partial config change at runtime.

        Raises:
            ValueError: Unknown field or invalid value
        """
        merged = RefreshConfig.model_validate({**self.config.model_dump(), **changes})
        self.config = merged
        self.scheduler.apply_config(merged)
        logger.info(f"Refresh config updated: {changes}")
        return merged

    def get_health_status(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats().to_dict(),
            "in_flight": self.in_flight.get_stats().to_dict(),
            "scheduler": self.scheduler.get_status(),
            "circuits": self.circuits.get_all_status(),
            "sources": self.registry.get_status(),
        }
