"""
Change notifier.

Turns the database's per-document change feed into entity level events:

    card    CardChange   card and progress merged into one event
    review  Review|None  the current review session, None once deleted
    note    NoteChange

A card update touches two documents and therefore produces two feed
entries. The notifier remembers the (card rev, progress rev) pair it last
reported for each card and drops the second entry when it describes the
same state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from tensai.core.database import Change, ChangeSubscription, DocumentDatabase
from tensai.modules.cards.schemas import CARD_PREFIX, PROGRESS_PREFIX, Card, CardChange
from tensai.modules.notes.schemas import NOTE_PREFIX, Note, NoteChange
from tensai.modules.reviews import REVIEW_PREFIX, Review, ReviewService
from tensai.shared.errors import DocumentNotFoundError
from tensai.shared.events import EventEmitter
from tensai.shared.logging import get_logger

logger = get_logger(__name__)

TOPICS = ("card", "review", "note")


class ChangeNotifier:
    """Publish composite change events for cards, reviews and notes.

    The feed subscription is opened with the first handler and lives until
    ``close()``; only changes made after that point are reported.

    Example:
        notifier = ChangeNotifier(db, reviews)
        notifier.on("card", lambda change: print(change.id, change.deleted))
    """

    def __init__(self, db: DocumentDatabase, reviews: ReviewService) -> None:
        self._db = db
        self._reviews = reviews
        self._emitter = EventEmitter()
        self._subscription: ChangeSubscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._returned: dict[str, tuple[str | None, str | None]] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    def on(self, topic: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """
        Register a handler for a topic.

        Returns:
            A callable that unregisters the handler
        """
        if topic not in TOPICS:
            raise ValueError(f"Unknown change topic: {topic}")
        self.start()
        return self._emitter.on(topic, handler)

    def off(self, topic: str, handler: Callable[..., Any]) -> None:
        self._emitter.off(topic, handler)

    def start(self) -> None:
        """Open the feed subscription if it is not open yet."""
        if self._task is None:
            self._subscription = self._db.subscribe()
            self._task = asyncio.create_task(self._run(self._subscription), name="change-notifier")

    async def _run(self, subscription: ChangeSubscription) -> None:
        async for change in subscription:
            self._idle.clear()
            try:
                await self.handle(change)
            except Exception:
                logger.exception(f"Failed to process change of {change.id}")
            finally:
                if subscription.pending == 0:
                    self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every change delivered so far has been processed."""
        await asyncio.sleep(0)
        await self._idle.wait()

    async def handle(self, change: Change) -> None:
        """Process one feed entry."""
        if change.id.startswith(CARD_PREFIX):
            await self._on_card(change)
        elif change.id.startswith(PROGRESS_PREFIX):
            await self._on_progress(change)
        elif change.id.startswith(REVIEW_PREFIX):
            await self._on_review(change)
        elif change.id.startswith(NOTE_PREFIX):
            await self._on_note(change)

    # ---------- Cards ----------

    def _already_returned(self, card_id: str, card_rev: str | None, progress_rev: str | None) -> bool:
        return self._returned.get(card_id) == (card_rev, progress_rev)

    async def _on_card(self, change: Change) -> None:
        card_id = change.id.removeprefix(CARD_PREFIX)
        progress = None
        if not change.deleted:
            try:
                progress = await self._db.get(PROGRESS_PREFIX + card_id)
            except DocumentNotFoundError as e:
                # Missing means not synced yet: report once it arrives
                if e.reason != "deleted":
                    return

        progress_rev = progress["_rev"] if progress is not None else None
        if self._already_returned(card_id, change.rev, progress_rev):
            return
        self._returned[card_id] = (change.rev, progress_rev)

        card = Card.from_docs(change.doc, progress)
        await self._emitter.emit("card", CardChange(id=card_id, deleted=change.deleted, card=card))

    async def _on_progress(self, change: Change) -> None:
        # Deletions are reported through the card
        if change.deleted:
            return
        card_id = change.id.removeprefix(PROGRESS_PREFIX)
        try:
            card = await self._db.get(CARD_PREFIX + card_id)
        except DocumentNotFoundError as e:
            if e.reason == "deleted":
                return
            raise

        if self._already_returned(card_id, card["_rev"], change.rev):
            return
        self._returned[card_id] = (card["_rev"], change.rev)

        await self._emitter.emit(
            "card",
            CardChange(id=card_id, deleted=False, card=Card.from_docs(card, change.doc)),
        )

    # ---------- Reviews and notes ----------

    async def _on_review(self, change: Change) -> None:
        current = await self._reviews.get_current_doc()
        if change.deleted:
            # Only the deletion of the newest review matters
            if current is None or current["_id"] < change.id:
                await self._emitter.emit("review", None)
        elif current is not None and current["_id"] == change.id:
            await self._emitter.emit("review", Review.from_doc(change.doc))

    async def _on_note(self, change: Change) -> None:
        note = Note.from_doc(change.doc)
        await self._emitter.emit("note", NoteChange(id=note.id, deleted=change.deleted, note=note))

    async def close(self) -> None:
        """Close the feed subscription."""
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            await self._task
        self._task = None
        self._subscription = None
        self._emitter.clear()
