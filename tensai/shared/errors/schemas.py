"""Pydantic models for error handling.

Data structures for error details.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class ErrorDetail(BaseModel):
    """Strict schema for error details."""

    model_config = ConfigDict(extra="allow")

    doc_id: str | None = None
    rev: str | None = None
    reason: str | None = None
    remote: str | None = None
    field: str | None = None
    value: Any | None = None
    expected: Any | None = None
    resource_id: str | None = None
    resource_type: str | None = None
    service: str | None = None
