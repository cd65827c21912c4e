"""
SubscriptionBus - fan-out of cache updates and refresh errors.

Subscribers are isolated: an exception raised by one callback is logged
and never reaches the publisher or the other subscribers.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger

from dashsync.services.cache import CacheEntry
from dashsync.services.status import RefreshError


class EventKind(str, Enum):
    UPDATED = "updated"
    ERROR = "error"


@dataclass(frozen=True)
class CacheEvent:
    """Delivered to subscribers."""

    kind: EventKind
    key: str
    source: str
    entry: CacheEntry | None = None
    error: RefreshError | None = None

    @property
    def payload(self) -> Any:
        return self.entry.payload if self.entry is not None else None


Callback = Callable[[CacheEvent], Any]


@dataclass
class _Subscriber:
    id: int
    callback: Callback
    key_filter: frozenset[str] | None

    def accepts(self, key: str) -> bool:
        return self.key_filter is None or key in self.key_filter


class Subscription:
    """Handle returned by ``subscribe``; call it (or ``unsubscribe``) to release."""

    def __init__(self, bus: "SubscriptionBus", subscriber_id: int):
        self._bus = bus
        self.id = subscriber_id

    @property
    def active(self) -> bool:
        return self._bus.has_subscriber(self.id)

    def unsubscribe(self) -> bool:
        return self._bus.unsubscribe(self.id)

    def __call__(self) -> bool:
        return self.unsubscribe()


class SubscriptionBus:
    """
    Usage:
        bus = SubscriptionBus()
        sub = bus.subscribe(lambda event: print(event.key), key_filter="gaza-casualties")
        ...
        sub.unsubscribe()
    """

    def __init__(self):
        self._subscribers: dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(
        self,
        callback: Callback,
        key_filter: str | list[str] | set[str] | None = None,
    ) -> Subscription:
        if isinstance(key_filter, str):
            keys: frozenset[str] | None = frozenset([key_filter])
        elif key_filter is not None:
            keys = frozenset(key_filter)
        else:
            keys = None
        subscriber = _Subscriber(next(self._ids), callback, keys)
        self._subscribers[subscriber.id] = subscriber
        logger.debug(f"Subscriber {subscriber.id} registered (filter={keys})")
        return Subscription(self, subscriber.id)

    def unsubscribe(self, subscriber_id: int) -> bool:
        return self._subscribers.pop(subscriber_id, None) is not None

    def has_subscriber(self, subscriber_id: int) -> bool:
        return subscriber_id in self._subscribers

    def publish_update(self, entry: CacheEntry) -> int:
        return self._publish(
            CacheEvent(EventKind.UPDATED, entry.key, entry.source, entry=entry)
        )

    def publish_error(self, error: RefreshError) -> int:
        return self._publish(
            CacheEvent(EventKind.ERROR, error.key, error.source, error=error)
        )

    def _publish(self, event: CacheEvent) -> int:
        """Deliver ``event``; returns the number of subscribers called."""
        delivered = 0
        # Copy: callbacks may unsubscribe themselves.
        for subscriber in list(self._subscribers.values()):
            if not subscriber.accepts(event.key):
                continue
            delivered += 1
            try:
                result = subscriber.callback(event)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result), subscriber.id)
            except Exception as e:
                logger.error(
                    f"Subscriber {subscriber.id} failed on {event.kind.value} "
                    f"for {event.key}: {e}"
                )
        return delivered

    def _track(self, task: "asyncio.Future[Any]", subscriber_id: int) -> None:
        self._tasks.add(task)

        def _done(t: "asyncio.Future[Any]") -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Async subscriber {subscriber_id} failed: {t.exception()}")

        task.add_done_callback(_done)

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
