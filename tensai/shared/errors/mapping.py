"""Mapping of infrastructure errors to domain errors.

Centralized exception mapping for SQLAlchemy and the HTTP client.
"""

import logging
from collections.abc import Callable
from typing import Any

from httpx import ConnectError, HTTPError, HTTPStatusError, TimeoutException
from sqlalchemy.exc import DatabaseError, IntegrityError, OperationalError

from .base import AppError
from .domain import ReplicationDeniedError, ReplicationError, StorageError, WriteConflictError

logger = logging.getLogger(__name__)


class ExceptionMapper:
    """Centralized mapping of technical exceptions to domain exceptions."""

    _handlers: dict[type[Exception], Callable[[Exception, str], AppError]] = {}

    @classmethod
    def register(
        cls, *exception_types: type[Exception]
    ) -> Callable[[Callable[[Any, str], AppError]], Callable[[Any, str], AppError]]:
        """Register a handler for exception types.

        Usage:
            @ExceptionMapper.register(IntegrityError)
            def _handle_integrity_error(exc: IntegrityError, func_name: str) -> AppError:
                return WriteConflictError(message="Document already exists")
        """

        def decorator(
            handler: Callable[[Any, str], AppError]
        ) -> Callable[[Any, str], AppError]:
            for exc_type in exception_types:
                cls._handlers[exc_type] = handler
            return handler

        return decorator

    @classmethod
    def map(cls, exc: Exception, func_name: str = "") -> AppError:
        """Map a technical exception to a domain exception.

        Args:
            exc: The technical exception to map
            func_name: Name of the function where exception occurred (for logging)

        Returns:
            Mapped domain exception (AppError subclass)
        """
        handler = cls._handlers.get(type(exc))

        if handler is None:
            for exc_type, exc_handler in cls._handlers.items():
                if isinstance(exc, exc_type):
                    handler = exc_handler
                    break

        if handler:
            return handler(exc, func_name)

        logger.exception(f"CRITICAL: Unhandled exception in {func_name}: {type(exc).__name__}")
        return AppError(
            message=f"Unexpected {type(exc).__name__}: {exc}",
            details={"field": func_name} if func_name else {},
        )


# --- Register default handlers ---


@ExceptionMapper.register(IntegrityError)
def _handle_integrity_error(exc: IntegrityError, func_name: str) -> AppError:
    """Database: two writers raced for the same revision row."""
    return WriteConflictError(
        message="Document update conflict",
        details={"reason": "integrity"},
    )


@ExceptionMapper.register(OperationalError, DatabaseError)
def _handle_database_error(exc: Exception, func_name: str) -> AppError:
    """Database: connection or operational error."""
    logger.error(f"Database error in {func_name}: {exc}")
    return StorageError(
        message="Local storage temporarily unavailable",
        details={"service": "database"},
    )


@ExceptionMapper.register(HTTPStatusError)
def _handle_http_status_error(exc: HTTPStatusError, func_name: str) -> AppError:
    """HTTPX: the remote answered with an error status."""
    status = exc.response.status_code
    details: dict[str, Any] = {"service": "remote", "value": status}
    if status in (401, 403):
        return ReplicationDeniedError(
            message="Remote server denied access",
            details=details,
        )
    if status >= 500:
        logger.error(f"Remote HTTP {status} in {func_name}")
    return ReplicationError(
        message=f"Remote server returned HTTP {status}",
        details=details,
    )


@ExceptionMapper.register(TimeoutException, ConnectError, HTTPError)
def _handle_httpx_error(exc: Exception, func_name: str) -> AppError:
    """HTTPX: transport error."""
    logger.warning(f"Remote HTTP error in {func_name}: {exc}")
    return ReplicationError(
        message=f"Remote server unreachable: {exc}",
        details={"service": "remote"},
    )
