"""Pydantic schemas for notes."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import Field

from tensai.shared.schemas import BaseSchema, from_epoch_ms

NOTE_PREFIX = "note-"


class Note(BaseSchema):
    """A free-form note attached to the card collection."""

    id: str = Field(..., description="Note id without storage prefix")
    content: str = Field(default="", description="Note text")
    keywords: list[str] = Field(default_factory=list, description="Keywords linking the note to cards")
    created: datetime = Field(..., description="Creation time")
    modified: datetime = Field(..., description="Last change")

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> Note:
        """Parse a stored note (timestamps in epoch ms)."""
        return cls(
            id=doc["_id"].removeprefix(NOTE_PREFIX),
            content=doc.get("content") or "",
            keywords=doc.get("keywords") or [],
            created=from_epoch_ms(doc.get("created") or 0),
            modified=from_epoch_ms(doc.get("modified") or 0),
        )


class NoteUpdate(BaseSchema):
    """Partial note update. Only explicitly set fields are applied."""

    content: str | None = Field(default=None, description="New text")
    keywords: list[str] | None = Field(default=None, description="New keywords")

    def to_fields(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


class NoteChange(BaseSchema):
    """Change notification for a note."""

    id: str = Field(..., description="Note id without storage prefix")
    deleted: bool = Field(default=False, description="Whether the note was deleted")
    note: Note = Field(..., description="Note state after the change")
