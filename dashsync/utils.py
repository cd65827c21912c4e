import functools
import inspect
from datetime import datetime, timezone

from loguru import logger


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock of every component."""
    return datetime.now(timezone.utc)


def render_template(template: str, source_id: str, key: str) -> str:
    """Fill ``{source}`` and ``{key}`` placeholders of a path or URL template."""
    return template.format(source=source_id, key=key)


def background_job(func):
    """
    A decorator for coroutines run from timers and wake signals.

    Features:
    - Logs entry with the bound parameters at debug level
    - Catches and logs any exception so the calling loop keeps running
    - Returns None when the wrapped coroutine failed
    """

    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"{func.__name__} must be a coroutine function")

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__

        sig = inspect.signature(func)
        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        params = {k: v for k, v in bound_args.arguments.items() if k != "self"}

        logger.debug(f"Entering {func_name} with params: {params}")

        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Background job {func_name} failed: {type(e).__name__}: {e}")
            return None

    return wrapper
