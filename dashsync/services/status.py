"""
StatusTracker - aggregate refresh status for the whole process.

is_refreshing follows the number of fetches actually in flight.
progress follows the keys scheduled by refresh cycles that are still open.
Errors are kept one per (source, key), capped, most recent wins.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from dashsync.utils import utcnow


class RefreshError(BaseModel):
    """A terminal failure of one refresh of one key."""

    model_config = ConfigDict(frozen=True)

    source: str
    key: str
    message: str
    occurred_at: datetime
    retry_count: int = 0
    kind: str = "fetch"
    retryable: bool = False


class RefreshStatus(BaseModel):
    """Read-only snapshot handed to consumers."""

    model_config = ConfigDict(frozen=True)

    is_refreshing: bool = False
    last_refresh: datetime | None = None
    next_refresh: datetime | None = None
    progress: int = Field(default=0, ge=0, le=100)
    errors: tuple[RefreshError, ...] = ()
    update_count: int = 0
    online: bool = True


class StatusTracker:
    """Owns the mutable status; every mutation is a single method call."""

    def __init__(
        self,
        error_cap: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._error_cap = error_cap
        self._clock = clock
        self._errors: OrderedDict[tuple[str, str], RefreshError] = OrderedDict()
        self._in_flight = 0
        self._cycle_total = 0
        self._cycle_done = 0
        self._progress = 0
        self._last_refresh: datetime | None = None
        self._next_refresh: datetime | None = None
        self._update_count = 0
        self._online = True

    # ── Fetch accounting ──────────────────────────────────────────────────

    def fetch_started(self) -> None:
        self._in_flight += 1

    def fetch_settled(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight > 0

    # ── Cycle progress ────────────────────────────────────────────────────

    def begin_cycle(self, total: int) -> None:
        """Register ``total`` keys scheduled by a tick or a forced refresh."""
        if total <= 0:
            return
        if self._cycle_total == 0:
            self._progress = 0
        self._cycle_total += total

    def key_settled(self) -> None:
        """One scheduled key finished, successfully or not."""
        if self._cycle_total == 0:
            return
        self._cycle_done += 1
        self._progress = round(self._cycle_done / self._cycle_total * 100)
        if self._cycle_done >= self._cycle_total:
            self._last_refresh = self._clock()
            self._cycle_total = 0
            self._cycle_done = 0
            self._progress = 100

    # ── Errors ────────────────────────────────────────────────────────────

    def record_error(self, error: RefreshError) -> None:
        pair = (error.source, error.key)
        self._errors.pop(pair, None)
        self._errors[pair] = error
        while len(self._errors) > self._error_cap:
            evicted, _ = self._errors.popitem(last=False)
            logger.debug(f"Error list full, evicted oldest error for {evicted}")

    def clear_error(self, source: str, key: str) -> None:
        self._errors.pop((source, key), None)

    def clear_errors(self, source: str | None = None) -> int:
        if source is None:
            count = len(self._errors)
            self._errors.clear()
            return count
        pairs = [pair for pair in self._errors if pair[0] == source]
        for pair in pairs:
            del self._errors[pair]
        return len(pairs)

    def errors(self) -> list[RefreshError]:
        return list(self._errors.values())

    def set_error_cap(self, error_cap: int) -> None:
        self._error_cap = error_cap
        while len(self._errors) > self._error_cap:
            self._errors.popitem(last=False)

    # ── Misc ──────────────────────────────────────────────────────────────

    def record_update(self) -> None:
        self._update_count += 1

    def set_next_refresh(self, when: datetime | None) -> None:
        self._next_refresh = when

    def set_online(self, online: bool) -> None:
        self._online = online

    def snapshot(self) -> RefreshStatus:
        return RefreshStatus(
            is_refreshing=self.is_refreshing,
            last_refresh=self._last_refresh,
            next_refresh=self._next_refresh,
            progress=self._progress,
            errors=tuple(self._errors.values()),
            update_count=self._update_count,
            online=self._online,
        )
