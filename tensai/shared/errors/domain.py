"""Standard domain error types.

Catalog of error types raised by the stores, the document database and the
sync coordinator.
"""

from typing import Any

from .base import AppError


class NotFoundError(AppError):
    """Resource not found."""

    status_code = 404


class DocumentNotFoundError(NotFoundError):
    """Document not found."""

    code = "NOT_FOUND"

    def __init__(self, doc_id: str, reason: str = "missing", **kwargs: Any) -> None:
        self.doc_id = doc_id
        self.reason = reason
        super().__init__(
            message=kwargs.pop("message", f"Document {doc_id} is {reason}"),
            details={"doc_id": doc_id, "reason": reason},
            **kwargs,
        )


class WriteConflictError(AppError):
    """Document update conflict."""

    status_code = 409


class DocumentConflictError(WriteConflictError):
    """Document revision is stale."""

    code = "WRITE_CONFLICT"

    def __init__(self, doc_id: str, rev: str | None = None) -> None:
        self.doc_id = doc_id
        self.rev = rev
        super().__init__(
            message=f"Document update conflict for {doc_id}",
            details={"doc_id": doc_id, "rev": rev},
        )


class InvalidRemoteError(AppError):
    """Unrecognized sync server."""

    status_code = 400


class ReplicationError(AppError):
    """Replication with the remote server failed."""

    status_code = 503


class ReplicationDeniedError(ReplicationError):
    """Remote server refused a replicated write."""

    status_code = 403


class PartialCreateError(AppError):
    """Card was created without its progress record and was rolled back."""

    status_code = 500


class StorageError(AppError):
    """Local storage is unavailable."""

    status_code = 503


class ValidationError(AppError):
    """Input validation error."""

    status_code = 422
