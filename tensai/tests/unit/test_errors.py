"""Unit tests for the error package."""

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tensai.shared.errors import (
    AppError,
    DocumentConflictError,
    DocumentNotFoundError,
    ExceptionMapper,
    NotFoundError,
    ReplicationDeniedError,
    ReplicationError,
    StorageError,
    WriteConflictError,
    safe,
    safe_with_fallback,
)


class TestAppError:
    """Tests for AppError conventions."""

    def test_code_from_class_name(self):
        """Test auto-generated error codes."""
        assert NotFoundError.code == "NOT_FOUND"
        assert ReplicationDeniedError.code == "REPLICATION_DENIED"
        assert WriteConflictError.code == "WRITE_CONFLICT"

    def test_default_message_from_docstring(self):
        """Test that the first docstring line is the default message."""
        assert str(StorageError()) == "Local storage is unavailable."

    def test_document_errors(self):
        """Test the database specific errors."""
        missing = DocumentNotFoundError("card-a", "deleted")
        conflict = DocumentConflictError("card-a", "1-x")

        assert isinstance(missing, NotFoundError)
        assert missing.details == {"doc_id": "card-a", "reason": "deleted"}
        assert isinstance(conflict, WriteConflictError)
        assert conflict.details["rev"] == "1-x"

    def test_to_dict(self):
        """Test serialization for callbacks and logs."""
        error = ReplicationError("boom", details={"remote": "http://couch.test"})

        data = error.to_dict()

        assert data["error"] == "REPLICATION"
        assert data["message"] == "boom"
        assert data["details"] == {"remote": "http://couch.test"}
        assert data["status"] == 503


class TestExceptionMapper:
    """Tests for infrastructure error mapping."""

    def test_integrity_error(self):
        """Test that integrity errors become write conflicts."""
        mapped = ExceptionMapper.map(IntegrityError("stmt", {}, Exception("dup")), "put")

        assert isinstance(mapped, WriteConflictError)

    def test_operational_error(self):
        """Test that operational errors become storage errors."""
        mapped = ExceptionMapper.map(OperationalError("stmt", {}, Exception("locked")), "get")

        assert isinstance(mapped, StorageError)

    @pytest.mark.parametrize(("status", "expected"), [(401, ReplicationDeniedError), (404, ReplicationError)])
    def test_http_status(self, status, expected):
        """Test HTTP status mapping."""
        request = httpx.Request("GET", "http://couch.test/cards")
        response = httpx.Response(status, request=request)
        error = httpx.HTTPStatusError("failed", request=request, response=response)

        assert type(ExceptionMapper.map(error, "info")) is expected

    def test_unknown_exception(self):
        """Test the generic fallback."""
        mapped = ExceptionMapper.map(KeyError("x"), "query")

        assert type(mapped) is AppError


class TestDecorators:
    """Tests for safe and safe_with_fallback."""

    @pytest.mark.asyncio
    async def test_safe_maps_async(self):
        """Test that technical errors are translated."""

        @safe
        async def broken():
            raise OperationalError("stmt", {}, Exception("locked"))

        with pytest.raises(StorageError):
            await broken()

    @pytest.mark.asyncio
    async def test_safe_passes_app_errors(self):
        """Test that domain errors are re-raised unchanged."""

        @safe
        async def missing():
            raise DocumentNotFoundError("a")

        with pytest.raises(DocumentNotFoundError):
            await missing()

    def test_safe_sync(self):
        """Test the synchronous wrapper."""

        @safe
        def broken():
            raise ValueError("bad")

        with pytest.raises(AppError):
            broken()

    @pytest.mark.asyncio
    async def test_safe_with_fallback(self):
        """Test that failures return the fallback."""

        @safe_with_fallback(fallback=[])
        async def broken():
            raise RuntimeError("boom")

        assert await broken() == []
