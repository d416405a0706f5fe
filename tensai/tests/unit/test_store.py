"""Unit tests for the CardStore facade."""

from datetime import timedelta

import pytest

from tensai import CardStore, open_store
from tensai.core.database import DocumentDatabase
from tensai.modules.cards import CardQuery
from tensai.modules.sync import SyncState

# ==================== Fixtures ====================


@pytest.fixture
async def store(db: DocumentDatabase, review_time):
    store = CardStore(db, review_time=review_time)
    await store.setup()
    yield store
    await store.close()


# ==================== Tests ====================


class TestCardStore:
    """End-to-end tests through the facade."""

    @pytest.mark.asyncio
    async def test_card_lifecycle(self, store: CardStore, review_time):
        """Test create, review, rank and delete of a card."""
        card = await store.put_card({"question": "A", "answer": "B"})
        assert [c.id for c in await store.get_cards(CardQuery(type="new"))] == [card.id]

        await store.put_card({}, {"level": 1, "reviewed": review_time - timedelta(days=3)}, card_id=card.id)
        fetched = await store.get_card(card.id)
        overdue = await store.get_cards(CardQuery(type="overdue"))

        assert fetched.progress.level == 1
        assert [c.id for c in overdue] == [card.id]
        assert (await store.get_available_cards()).overdue_cards == 1

        await store.delete_card(card.id)
        assert await store.get_cards() == []

    @pytest.mark.asyncio
    async def test_set_review_time(self, store: CardStore, review_time):
        """Test that moving the review time changes the due cards."""
        await store.put_card({}, {"level": 10, "reviewed": review_time})
        assert await store.get_cards(CardQuery(type="overdue")) == []

        await store.set_review_time(review_time + timedelta(days=11))

        assert len(await store.get_cards(CardQuery(type="overdue"))) == 1

    @pytest.mark.asyncio
    async def test_reviews_and_notes(self, store: CardStore, review_time):
        """Test the review and note shortcuts."""
        await store.put_review({"review_time": review_time, "max_cards": 5})
        note = await store.put_note("text", ["k"])
        await store.put_note("changed", note_id=note.id)

        assert (await store.get_review()).max_cards == 5
        assert (await store.get_note(note.id)).content == "changed"
        assert (await store.get_note(note.id)).keywords == ["k"]

        await store.finish_review()
        await store.delete_note(note.id)
        assert await store.get_review() is None

    @pytest.mark.asyncio
    async def test_change_subscription(self, store: CardStore, wait):
        """Test that card changes reach subscribers."""
        received = []
        store.on_change("card", received.append)

        await store.put_card({"question": "Q"})

        await wait(lambda: len(received) == 1)

    @pytest.mark.asyncio
    async def test_sync_with_peer(self, store: CardStore, remote_db: DocumentDatabase, wait):
        """Test that cards reach a peer but local views do not."""
        card = await store.put_card({"question": "Q"})

        await store.set_remote(remote_db)
        await wait(lambda: remote_db._get_or_none(f"progress-{card.id}"))
        await store.set_remote(None)

        assert await remote_db._get_or_none(f"card-{card.id}") is not None
        assert await remote_db._get_or_none("_design/cards") is None
        assert store.sync_state == SyncState.IDLE


class TestOpenStore:
    """Tests for the open_store context manager."""

    @pytest.mark.asyncio
    async def test_closes_database(self):
        """Test that leaving the context closes the database."""
        db = DocumentDatabase.in_memory("context")

        async with open_store(db) as store:
            await store.put_note("x")

        assert db.closed

    @pytest.mark.asyncio
    async def test_destroy(self):
        """Test deleting all local data."""
        db = DocumentDatabase.in_memory("destroy")
        store = CardStore(db)
        await store.setup()
        await store.put_card({})

        await store.destroy()

        assert db.closed
