"""
Service layer infrastructure for the synchronization layer.

Provides:
- CacheStore: key -> entry store with freshness metadata
- InFlightRegistry: single-flight execution per key
- RetryController: exponential backoff with jitter and a ceiling
- StatusTracker: aggregate refresh status
- SubscriptionBus: fan-out of cache updates and errors
- CircuitBreaker: pauses periodic refresh of failing sources
- HttpClient: remote fetches mapped onto the error taxonomy
"""

from dashsync.services.errors import (
    SyncError,
    FetchError,
    NetworkError,
    RateLimitError,
    NotFoundError,
    ParseError,
    ValidationError,
)
from dashsync.services.cache import CacheStore, CacheEntry, CacheStats
from dashsync.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from dashsync.services.client import HttpClient
from dashsync.services.deduplicator import InFlightRegistry
from dashsync.services.events import CacheEvent, EventKind, Subscription, SubscriptionBus
from dashsync.services.retry import RetryController
from dashsync.services.status import RefreshError, RefreshStatus, StatusTracker

__all__ = [
    # Errors
    "SyncError",
    "FetchError",
    "NetworkError",
    "RateLimitError",
    "NotFoundError",
    "ParseError",
    "ValidationError",
    # Cache
    "CacheStore",
    "CacheEntry",
    "CacheStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Fetching
    "HttpClient",
    "InFlightRegistry",
    "RetryController",
    # Status and events
    "RefreshError",
    "RefreshStatus",
    "StatusTracker",
    "CacheEvent",
    "EventKind",
    "Subscription",
    "SubscriptionBus",
]
