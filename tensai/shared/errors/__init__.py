"""Shared errors package.

Centralized error types and exception mapping.
"""

from .base import AppError
from .context import sync_session_var
from .decorators import safe, safe_with_fallback
from .domain import (
    DocumentConflictError,
    DocumentNotFoundError,
    InvalidRemoteError,
    NotFoundError,
    PartialCreateError,
    ReplicationDeniedError,
    ReplicationError,
    StorageError,
    ValidationError,
    WriteConflictError,
)
from .mapping import ExceptionMapper
from .schemas import ErrorDetail

__all__ = [
    # Base
    "AppError",
    # Domain errors
    "NotFoundError",
    "DocumentNotFoundError",
    "WriteConflictError",
    "DocumentConflictError",
    "InvalidRemoteError",
    "ReplicationError",
    "ReplicationDeniedError",
    "PartialCreateError",
    "StorageError",
    "ValidationError",
    # Mapping
    "ExceptionMapper",
    # Decorators
    "safe",
    "safe_with_fallback",
    # Context
    "sync_session_var",
    # Schemas
    "ErrorDetail",
]
