"""Pydantic schemas for cards and their review progress."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import ConfigDict, Field, field_validator

from tensai.shared.schemas import BaseSchema, from_epoch_ms, to_epoch_ms

CARD_PREFIX = "card-"
PROGRESS_PREFIX = "progress-"

# Fields owned by the store rather than by the caller's content
RESERVED_CARD_FIELDS = frozenset({"id", "progress", "created", "modified"})


class Progress(BaseSchema):
    """Review progress of a card.

    Level 0 means the card is new (never reviewed) or was failed.
    """

    level: int = Field(
        default=0,
        ge=0,
        description="Review interval in days; 0 for new or failed cards",
    )
    reviewed: datetime | None = Field(
        default=None,
        description="Time of the last review, None if never reviewed",
    )

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> Progress:
        """Parse a stored progress document (``reviewed`` in epoch ms)."""
        reviewed = doc.get("reviewed")
        return cls(
            level=doc.get("level", 0),
            reviewed=from_epoch_ms(reviewed) if isinstance(reviewed, int | float) and reviewed else None,
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "reviewed": to_epoch_ms(self.reviewed) if self.reviewed is not None else None,
        }


class ProgressUpdate(BaseSchema):
    """Partial progress update. Only explicitly set fields are applied."""

    level: int | None = Field(
        default=None,
        ge=0,
        description="New level",
    )
    reviewed: datetime | None = Field(
        default=None,
        description="New review time; setting None marks the card as new",
    )

    def to_fields(self) -> dict[str, Any]:
        """Stored representation of the fields that were set."""
        fields: dict[str, Any] = {}
        if "level" in self.model_fields_set and self.level is not None:
            fields["level"] = self.level
        if "reviewed" in self.model_fields_set:
            fields["reviewed"] = to_epoch_ms(self.reviewed) if self.reviewed is not None else None
        return fields


class CardContent(BaseSchema):
    """Free-form card content.

    ``question`` and ``answer`` are the usual fields; any other field is
    stored and returned unchanged.
    """

    model_config = ConfigDict(extra="allow")

    question: str | None = Field(
        default=None,
        description="Front of the card",
    )
    answer: str | None = Field(
        default=None,
        description="Back of the card",
    )

    def to_fields(self) -> dict[str, Any]:
        """Content fields that were explicitly provided, minus store-owned ones."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if key not in RESERVED_CARD_FIELDS and not key.startswith("_")
        }


class Card(BaseSchema):
    """A card merged with its progress record."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(
        ...,
        description="Card id without storage prefix",
    )
    question: str = Field(
        default="",
        description="Front of the card",
    )
    answer: str = Field(
        default="",
        description="Back of the card",
    )
    created: str = Field(
        ...,
        description="Creation time (ISO-8601, UTC)",
    )
    modified: str = Field(
        ...,
        description="Last content change (ISO-8601, UTC)",
    )
    progress: Progress | None = Field(
        default=None,
        description="Review progress; None only for partially deleted cards",
    )

    @classmethod
    def from_docs(
        cls,
        card_doc: Mapping[str, Any],
        progress: Mapping[str, Any] | Progress | None = None,
    ) -> Card:
        """Merge a stored card document with its progress."""
        fields = {k: v for k, v in card_doc.items() if not k.startswith("_") and k not in RESERVED_CARD_FIELDS}
        if progress is not None and not isinstance(progress, Progress):
            progress = Progress.from_doc(progress)
        return cls(
            **fields,
            id=card_doc["_id"].removeprefix(CARD_PREFIX),
            created=card_doc.get("created", ""),
            modified=card_doc.get("modified", ""),
            progress=progress,
        )


class CardQuery(BaseSchema):
    """Options for listing cards."""

    type: Literal["new", "overdue"] | None = Field(
        default=None,
        description="None for all cards (newest first), 'new' or 'overdue'",
    )
    limit: int | None = Field(
        default=None,
        ge=0,
        description="Maximum number of cards",
    )
    skip_failed: bool = Field(
        default=False,
        description="With type='overdue', leave out failed cards",
    )


class AvailableCards(BaseSchema):
    """Number of cards that can be reviewed now."""

    new_cards: int = Field(
        ...,
        description="Cards that were never reviewed",
    )
    overdue_cards: int = Field(
        ...,
        description="Cards due for review, failed cards included",
    )


class CardChange(BaseSchema):
    """Composite change notification for a card and its progress."""

    id: str = Field(
        ...,
        description="Card id without storage prefix",
    )
    deleted: bool = Field(
        default=False,
        description="Whether the card was deleted",
    )
    card: Card = Field(
        ...,
        description="Card state after the change",
    )

    @field_validator("id")
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        return v.removeprefix(CARD_PREFIX)
