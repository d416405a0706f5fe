"""Card store entry point: wires the database, services, sync and change feed."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from tensai.core.config import settings
from tensai.core.database import DocumentDatabase
from tensai.modules.cards import (
    AvailableCards,
    Card,
    CardQuery,
    CardService,
    OverduenessRanking,
)
from tensai.modules.changes import ChangeNotifier
from tensai.modules.notes import Note, NoteService, NoteUpdate
from tensai.modules.reviews import Review, ReviewService
from tensai.modules.sync import ConflictResolver, SyncCallbacks, SyncCoordinator, SyncState
from tensai.modules.sync.service import SyncTarget
from tensai.shared.ids import IdGenerator
from tensai.shared.logging import get_logger, setup_logger

logger = get_logger(__name__)


class CardStore:
    """
    Facade over the card, review and note services.

    The individual services are available as ``cards``, ``reviews``,
    ``notes``, ``sync`` and ``changes`` for callers that need more than the
    shortcuts below.

    Example:
        async with open_store() as store:
            card = await store.put_card({"question": "Q", "answer": "A"})
            store.on_change("card", print)
            await store.set_remote("https://couch.example.com/cards")
    """

    def __init__(
        self,
        db: DocumentDatabase | None = None,
        *,
        review_time: datetime | None = None,
        ids: IdGenerator | None = None,
    ) -> None:
        """
        Initialize the store. Call ``setup()`` before use.

        Args:
            db: Backing database; defaults to the configured URL
            review_time: Reference time for overdueness ranking
            ids: Identifier generator shared by all services
        """
        self.db = db or DocumentDatabase(settings.app.name)
        ids = ids or IdGenerator()
        self.ranking = OverduenessRanking(self.db, review_time)
        self.cards = CardService(self.db, self.ranking, ids=ids)
        self.reviews = ReviewService(self.db, ids=ids)
        self.notes = NoteService(self.db, ids=ids)
        self.sync = SyncCoordinator(self.db, ConflictResolver(self.db))
        self.changes = ChangeNotifier(self.db, self.reviews)

    async def setup(self) -> None:
        """Register the views and start listening for changes."""
        await self.ranking.setup()
        self.changes.start()
        logger.info(f"Store {self.db.name} ready")

    # ==================== Cards ====================

    async def put_card(
        self,
        content: Mapping[str, Any] | None = None,
        progress: Mapping[str, Any] | None = None,
        *,
        card_id: str | None = None,
    ) -> Card:
        """Create a card, or update it when ``card_id`` is given."""
        if card_id is None:
            return await self.cards.create(content, progress)
        return await self.cards.update(card_id, content, progress)

    async def get_card(self, card_id: str) -> Card:
        return await self.cards.get(card_id)

    async def get_cards(self, query: CardQuery | None = None) -> list[Card]:
        return await self.cards.list(query)

    async def get_cards_by_id(self, card_ids: Sequence[str]) -> list[Card]:
        return await self.cards.get_many(card_ids)

    async def delete_card(self, card_id: str) -> None:
        await self.cards.delete(card_id)

    async def get_available_cards(self) -> AvailableCards:
        return await self.cards.available()

    async def set_review_time(self, review_time: datetime) -> None:
        """Move the reference time used for overdue ranking."""
        await self.ranking.set_review_time(review_time)

    # ==================== Reviews ====================

    async def get_review(self) -> Review | None:
        return await self.reviews.get_current()

    async def put_review(self, review: Review | Mapping[str, Any]) -> Review:
        return await self.reviews.put(review)

    async def finish_review(self) -> None:
        await self.reviews.delete()

    # ==================== Notes ====================

    async def put_note(
        self,
        content: str = "",
        keywords: Sequence[str] | None = None,
        *,
        note_id: str | None = None,
    ) -> Note:
        """Create a note, or update it when ``note_id`` is given."""
        if note_id is None:
            return await self.notes.create(content, keywords)
        update = NoteUpdate(content=content, keywords=list(keywords) if keywords is not None else None)
        return await self.notes.update(note_id, update)

    async def get_note(self, note_id: str) -> Note:
        return await self.notes.get(note_id)

    async def delete_note(self, note_id: str) -> None:
        await self.notes.delete(note_id)

    # ==================== Sync and changes ====================

    async def set_remote(
        self,
        target: SyncTarget,
        callbacks: SyncCallbacks | None = None,
        **options: Any,
    ) -> None:
        """Sync with ``target``; None or "" stops syncing."""
        await self.sync.set_remote(target, callbacks, **options)

    @property
    def sync_state(self) -> SyncState:
        return self.sync.state

    def on_change(self, topic: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to ``card``, ``review`` or ``note`` changes."""
        return self.changes.on(topic, handler)

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        """Stop sync, the change feed and background work, then close the database."""
        await self.sync.close()
        await self.changes.close()
        await self.ranking.aclose()
        await self.db.close()
        logger.info(f"Store {self.db.name} closed")

    async def destroy(self) -> None:
        """Close the store and delete all local data."""
        await self.sync.close()
        await self.changes.close()
        await self.ranking.aclose()
        await self.db.destroy()
        logger.info(f"Store {self.db.name} destroyed")


@asynccontextmanager
async def open_store(
    db: DocumentDatabase | None = None,
    *,
    review_time: datetime | None = None,
    configure_logging: bool = False,
) -> AsyncGenerator[CardStore, None]:
    """Open a ready-to-use store and close it on exit."""
    if configure_logging:
        setup_logger()
    store = CardStore(db, review_time=review_time)
    await store.setup()
    try:
        yield store
    finally:
        await store.close()
