"""
Card management service.

A card is stored as two documents sharing an id suffix: ``card-<id>`` holds
the content and ``progress-<id>`` the review progress. The database has no
multi-document transactions, so the pair is kept consistent by protocol:

    - create writes the card, then the progress, and removes the card again
      if the progress write fails
    - delete removes both halves and tolerates either one being gone
    - the maintenance helpers find and repair pairs broken anyway (for
      example by a sync that was interrupted half way)

Main components:
    - CardService: CRUD, ranked listing and maintenance
"""

from __future__ import annotations

import builtins
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from tensai.core.database import DocumentDatabase, ViewRow
from tensai.shared.errors import (
    DocumentConflictError,
    NotFoundError,
    PartialCreateError,
    safe_with_fallback,
)
from tensai.shared.ids import IdGenerator
from tensai.shared.logging import get_logger
from tensai.shared.repository import DocumentRepository
from tensai.shared.schemas import utc_now_iso

from .ranking import OverduenessRanking
from .schemas import (
    CARD_PREFIX,
    PROGRESS_PREFIX,
    AvailableCards,
    Card,
    CardContent,
    CardQuery,
    Progress,
    ProgressUpdate,
)

logger = get_logger(__name__)

ContentInput = CardContent | Mapping[str, Any]
ProgressInput = ProgressUpdate | Progress | Mapping[str, Any]


class CardRepository(DocumentRepository):
    prefix = CARD_PREFIX


class ProgressRepository(DocumentRepository):
    prefix = PROGRESS_PREFIX


def _content_fields(content: ContentInput | None) -> dict[str, Any]:
    if content is None:
        return {}
    if not isinstance(content, CardContent):
        content = CardContent.model_validate(dict(content))
    return content.to_fields()


def _progress_update(progress: ProgressInput | None) -> ProgressUpdate | None:
    if progress is None or isinstance(progress, ProgressUpdate):
        return progress
    if isinstance(progress, Progress):
        return ProgressUpdate(level=progress.level, reviewed=progress.reviewed)
    return ProgressUpdate.model_validate(dict(progress))


def _card_not_found(card_id: str) -> NotFoundError:
    return NotFoundError(
        f"Card {card_id} not found",
        details={"resource_type": "card", "resource_id": card_id},
    )


class CardService:
    """
    Card management service.

    Example:
        service = CardService(db, ranking)
        card = await service.create({"question": "Q", "answer": "A"})
        await service.update(card.id, progress={"level": 1, "reviewed": now})
        overdue = await service.list(CardQuery(type="overdue", limit=10))
    """

    def __init__(
        self,
        db: DocumentDatabase,
        ranking: OverduenessRanking,
        *,
        ids: IdGenerator | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        """
        Initialize the card service.

        Args:
            db: Backing document database
            ranking: View provider used for listing
            ids: Identifier generator for new cards
            clock: Returns the current time as an ISO string
        """
        self._db = db
        self._ranking = ranking
        self._ids = ids or IdGenerator()
        self._clock = clock
        self.cards = CardRepository(db)
        self.progress = ProgressRepository(db)

    # ==================== CRUD ====================

    async def create(
        self,
        content: ContentInput | None = None,
        progress: ProgressInput | None = None,
    ) -> Card:
        """
        Create a card together with its progress record.

        Args:
            content: Card content; question and answer default to ""
            progress: Initial progress; defaults to a new card

        Returns:
            The created card

        Raises:
            PartialCreateError: The progress record could not be written;
                the card has been removed again
        """
        now = self._clock()
        fields = _content_fields(content)
        card_body = {
            **fields,
            "question": fields.get("question") or "",
            "answer": fields.get("answer") or "",
            "created": now,
            "modified": now,
        }
        progress_body: dict[str, Any] = {"level": 0, "reviewed": None}
        update = _progress_update(progress)
        if update is not None:
            progress_body.update(update.to_fields())

        async with self._db.deferred_changes():
            while True:
                card_id = self._ids.generate()
                card_doc = {**card_body, "_id": self.cards.key(card_id)}
                try:
                    card_rev = await self._db.put(card_doc)
                except DocumentConflictError:
                    # Another writer picked the same id
                    logger.debug(f"Card id {card_id} taken, retrying")
                    continue
                break

            try:
                await self._db.put({**progress_body, "_id": self.progress.key(card_id)})
            except Exception as e:
                logger.error(f"Failed to write progress for card {card_id}: {e}")
                try:
                    await self._db.remove(card_doc["_id"], card_rev)
                except Exception:
                    logger.exception(f"Failed to roll back card {card_id}")
                raise PartialCreateError(
                    f"Card {card_id} could not be created",
                    details={"resource_type": "card", "resource_id": card_id},
                ) from e

        logger.debug(f"Created card {card_id}")
        return Card.from_docs(card_doc, progress_body)

    async def update(
        self,
        card_id: str,
        content: ContentInput | None = None,
        progress: ProgressInput | None = None,
    ) -> Card:
        """
        Partially update a card and/or its progress.

        Each half is updated with its own read-merge-write loop. Writes that
        would not change any value are skipped, so ``modified`` only moves
        when the content really changes.

        Args:
            card_id: Card id
            content: Content fields to change
            progress: Progress fields to change

        Returns:
            The card after the update

        Raises:
            NotFoundError: The card or its progress is missing or deleted
        """
        fields = _content_fields(content)
        progress_fields = (_progress_update(progress) or ProgressUpdate()).to_fields()

        def diff_card(doc: dict[str, Any]) -> dict[str, Any] | None:
            if "_rev" not in doc:
                raise _card_not_found(card_id)
            if all(doc.get(key) == value for key, value in fields.items()):
                return None
            return {**doc, **fields, "modified": self._clock()}

        def diff_progress(doc: dict[str, Any]) -> dict[str, Any] | None:
            if "_rev" not in doc:
                raise _card_not_found(card_id)
            if all(doc.get(key) == value for key, value in progress_fields.items()):
                return None
            return {**doc, **progress_fields}

        async with self._db.deferred_changes():
            card_doc, _ = await self.cards.upsert(self.cards.key(card_id), diff_card)
            progress_doc, _ = await self.progress.upsert(self.progress.key(card_id), diff_progress)
        return Card.from_docs(card_doc, progress_doc)

    async def get(self, card_id: str) -> Card:
        """
        Get a card with its progress.

        Raises:
            NotFoundError: Either half is missing or deleted
        """
        card_doc = await self._db.get(self.cards.key(card_id))
        progress_doc = await self._db.get(self.progress.key(card_id))
        return Card.from_docs(card_doc, progress_doc)

    async def get_many(self, card_ids: Sequence[str]) -> builtins.list[Card]:
        """Get several cards in the given order; unknown ids are skipped."""
        rows = await self._ranking.query_cards(keys=[self.progress.key(card_id) for card_id in card_ids])
        return self._rows_to_cards(rows)

    async def list(self, query: CardQuery | None = None) -> builtins.list[Card]:
        """
        List cards.

        Args:
            query: Type, limit and failed-card filter. Without a type all
                cards are returned, newest first.

        Returns:
            Matching cards in view order
        """
        query = query or CardQuery()
        if query.type == "new":
            rows = await self._ranking.query_new(limit=query.limit)
        elif query.type == "overdue":
            rows = await self._ranking.query_overdue(limit=query.limit, skip_failed=query.skip_failed)
        else:
            rows = await self._ranking.query_cards(limit=query.limit)
        return self._rows_to_cards(rows)

    @staticmethod
    def _rows_to_cards(rows: Sequence[ViewRow]) -> builtins.list[Card]:
        # Rows whose card is gone (or not synced yet) are skipped
        return [Card.from_docs(row.doc, row.value["progress"]) for row in rows if row.doc is not None]

    async def available(self) -> AvailableCards:
        """Count new and overdue cards."""
        new_cards, overdue_cards = await self._ranking.count_available()
        return AvailableCards(new_cards=new_cards, overdue_cards=overdue_cards)

    async def delete(self, card_id: str) -> None:
        """
        Delete a card and its progress.

        Deleting a card that does not exist is not an error.
        """
        async with self._db.deferred_changes():
            await self.cards.stubborn_delete(self.cards.key(card_id))
            await self.progress.stubborn_delete(self.progress.key(card_id))
        logger.debug(f"Deleted card {card_id}")

    # ==================== Maintenance ====================

    async def orphaned_cards(self) -> builtins.list[Card]:
        """Cards that have no progress record."""
        orphans = []
        for row in await self.cards.list_rows(include_docs=True):
            if not await self.has_progress(self.cards.strip(row.id)):
                orphans.append(Card.from_docs(row.doc))
        return orphans

    async def orphaned_progress(self) -> builtins.list[str]:
        """Ids of progress records that have no card."""
        orphans = []
        for row in await self.progress.list_rows():
            card_id = self.progress.strip(row.id)
            if await self.cards.get_or_none(self.cards.key(card_id)) is None:
                orphans.append(card_id)
        return orphans

    async def add_progress_for_card(self, card_id: str) -> None:
        """Give an orphaned card a fresh progress record."""
        card_id = self.cards.strip(card_id)
        try:
            await self._db.put({"_id": self.progress.key(card_id), "level": 0, "reviewed": None})
        except Exception as e:
            logger.error(f"Failed to add progress for card {card_id}: {e}")
            raise

    @safe_with_fallback(fallback=None)
    async def delete_progress(self, card_id: str) -> None:
        """Delete an orphaned progress record; failures are logged only."""
        key = self.progress.key(self.progress.strip(card_id))
        doc = await self._db.get(key)
        await self._db.remove(key, doc["_rev"])

    async def has_progress(self, card_id: str) -> bool:
        return await self.progress.get_or_none(self.progress.key(card_id)) is not None
