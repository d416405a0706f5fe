"""
Review session service.

At most one review session is current: among all ``review-`` documents the
one with the greatest id. Older ones are left behind when sessions from
several devices meet during sync and are only removed by ``delete()``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from tensai.core.database import DocumentDatabase
from tensai.shared.errors import WriteConflictError
from tensai.shared.ids import IdGenerator
from tensai.shared.logging import get_logger
from tensai.shared.repository import DocumentRepository

from .schemas import REVIEW_PREFIX, Review

logger = get_logger(__name__)


class ReviewRepository(DocumentRepository):
    prefix = REVIEW_PREFIX


def review_completeness(doc: Mapping[str, Any]) -> int:
    """Completeness of a stored review document."""
    return (
        doc.get("completed", 0)
        - 2 * len(doc.get("failedCardsLevel2") or ())
        - len(doc.get("failedCardsLevel1") or ())
    )


def choose_review(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Pick between two conflicting review revisions; ties keep ``a``."""
    return a if review_completeness(a) >= review_completeness(b) else b


class ReviewService:
    """
    Current review session storage.

    Example:
        service = ReviewService(db)
        await service.put(Review(review_time=now, max_cards=10))
        review = await service.get_current()
    """

    def __init__(self, db: DocumentDatabase, *, ids: IdGenerator | None = None) -> None:
        self._db = db
        self._ids = ids or IdGenerator()
        self.reviews = ReviewRepository(db)

    async def get_current_doc(self) -> dict[str, Any] | None:
        """Stored document of the current review session, if any."""
        rows = await self.reviews.list_rows(descending=True, limit=1, include_docs=True)
        return rows[0].doc if rows else None

    async def get_current(self) -> Review | None:
        """Get the current review session."""
        doc = await self.get_current_doc()
        return Review.from_doc(doc) if doc is not None else None

    async def put(self, review: Review | Mapping[str, Any]) -> Review:
        """
        Replace the current review session, or start one.

        A new session gets an id derived from the clock. Two devices
        starting a session in the same millisecond simply share the
        document.
        """
        if not isinstance(review, Review):
            review = Review.model_validate(dict(review))

        current = await self.get_current_doc()
        review_key = current["_id"] if current is not None else self.reviews.key(self._ids.timestamp_id())
        body = review.to_doc()

        await self.reviews.upsert(review_key, lambda _doc: body)
        logger.debug(f"Stored review {review_key}")
        return review

    async def delete(self) -> None:
        """Delete every review session, retrying until none is left."""
        while True:
            rows = await self.reviews.list_rows()
            if not rows:
                return
            results = await self._db.bulk_docs(
                [{"_id": row.id, "_rev": row.rev, "_deleted": True} for row in rows]
            )
            if not any(isinstance(result.error, WriteConflictError) for result in results):
                logger.debug(f"Deleted {len(rows)} review(s)")
                return
