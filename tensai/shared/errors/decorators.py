"""Decorators for error handling.

Wrappers that keep infrastructure exceptions from leaking out of the
storage and replication layers.
"""

import logging
from collections.abc import Callable
from functools import wraps
from inspect import iscoroutinefunction
from typing import Never, ParamSpec, TypeVar

from .base import AppError
from .mapping import ExceptionMapper

logger = logging.getLogger(__name__)
P = ParamSpec("P")
T = TypeVar("T")


def safe(func: Callable[P, T]) -> Callable[P, T]:
    """Translate technical errors raised by the wrapped call.

    Usage:
        @safe
        async def info(self) -> DatabaseInfo:
            # AppError subclasses (DocumentNotFoundError, ...) pass through
            # SQLAlchemy / httpx errors -> StorageError / ReplicationError
            ...

    Cancellation is never intercepted.
    """

    def _handle_exception(e: Exception, func_name: str) -> Never:
        if isinstance(e, AppError):
            raise
        raise ExceptionMapper.map(e, func_name) from e

    if iscoroutinefunction(func):

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                _handle_exception(e, func.__name__)

        return async_wrapper  # type: ignore[return-value]

    @wraps(func)
    def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            _handle_exception(e, func.__name__)

    return sync_wrapper  # type: ignore[return-value]


def safe_with_fallback(
    fallback: T,
    log_level: int = logging.ERROR,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Return a fallback value instead of raising.

    Only for maintenance helpers whose failures must not interrupt a scan:

        @safe_with_fallback(fallback=None)
        async def delete_progress(self, progress_id: str) -> None:
            ...

    Args:
        fallback: Value to return when an exception occurs
        log_level: Logging level for caught exceptions
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await func(*args, **kwargs)  # type: ignore[misc]
            except Exception as e:
                logger.log(
                    log_level,
                    f"Unexpected error in {func.__name__}, returning fallback: {e}",
                )
                return fallback

        return async_wrapper  # type: ignore[return-value]

    return decorator
