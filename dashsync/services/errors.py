"""
Synchronization layer exceptions.

Fetch failures form a small taxonomy; the ``retryable`` flag decides
whether the retry controller may spend another attempt on them.
"""


class SyncError(Exception):
    """Base exception for synchronization layer errors."""

    def __init__(self, message: str, source_id: str | None = None):
        self.source_id = source_id
        super().__init__(message)


class FetchError(SyncError):
    """A dataset could not be resolved."""

    kind = "fetch"
    retryable = False

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        key: str | None = None,
        retryable: bool | None = None,
    ):
        self.key = key
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message, source_id=source_id)


class NetworkError(FetchError):
    """Transport failure or unsuccessful HTTP response."""

    kind = "network"
    retryable = True


class RateLimitError(NetworkError):
    """Remote answered 429."""

    kind = "rate_limit"

    def __init__(
        self,
        source_id: str | None = None,
        key: str | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for source '{source_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, source_id=source_id, key=key)


class NotFoundError(FetchError):
    """Snapshot or remote resource does not exist."""

    kind = "not_found"


class ParseError(FetchError):
    """Payload is not valid JSON."""

    kind = "parse"


class ValidationError(FetchError):
    """Payload parsed but has an unexpected shape."""

    kind = "validation"
