"""Pydantic schemas for review sessions."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import Field

from tensai.shared.schemas import BaseSchema, from_epoch_ms, to_epoch_ms

REVIEW_PREFIX = "review-"


class Review(BaseSchema):
    """An in-progress review session.

    Stored with camelCase keys and ``reviewTime`` in epoch milliseconds so
    documents stay compatible with existing replicas.

    Attributes:
        review_time: Reference time the session schedules against.
        max_cards: Target number of cards.
        max_new_cards: Target number of new cards.
        completed: Cards completed so far.
        new_cards_completed: New cards completed so far.
        history: Ids of visited cards, in order.
        failed_cards_level1: Cards failed once this session.
        failed_cards_level2: Cards failed twice or more this session.
    """

    review_time: datetime = Field(alias="reviewTime", description="Reference review time")
    max_cards: int = Field(default=0, ge=0, alias="maxCards", description="Target card count")
    max_new_cards: int = Field(default=0, ge=0, alias="maxNewCards", description="Target new card count")
    completed: int = Field(default=0, ge=0, description="Completed cards")
    new_cards_completed: int = Field(
        default=0,
        ge=0,
        alias="newCardsCompleted",
        description="Completed new cards",
    )
    history: list[str] = Field(default_factory=list, description="Visited card ids")
    failed_cards_level1: list[str] = Field(
        default_factory=list,
        alias="failedCardsLevel1",
        description="Cards failed once",
    )
    failed_cards_level2: list[str] = Field(
        default_factory=list,
        alias="failedCardsLevel2",
        description="Cards failed repeatedly",
    )

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> Review:
        """Parse a stored review document."""
        fields = {k: v for k, v in doc.items() if not k.startswith("_")}
        review_time = fields.get("reviewTime")
        if isinstance(review_time, int | float):
            fields["reviewTime"] = from_epoch_ms(review_time)
        return cls.model_validate(fields)

    def to_doc(self) -> dict[str, Any]:
        """Stored representation (without ``_id``)."""
        doc = self.model_dump(by_alias=True, mode="json")
        doc["reviewTime"] = to_epoch_ms(self.review_time)
        return doc

    @property
    def completeness(self) -> int:
        """Progress made in this session, penalizing failures."""
        return self.completed - 2 * len(self.failed_cards_level2) - len(self.failed_cards_level1)
