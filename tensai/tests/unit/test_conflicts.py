"""Unit tests for ConflictResolver."""

import pytest

from tensai.core.database import DocumentDatabase, rev_generation
from tensai.modules.sync import ConflictResolver


async def make_conflict(
    db: DocumentDatabase,
    doc_id: str,
    local: dict,
    remote: dict,
    *,
    remote_wins: bool = False,
) -> tuple[str, str]:
    """Create two sibling revisions of a document; returns (local rev, remote rev).

    The remote revision hash is chosen so that it wins or loses the
    deterministic winner selection.
    """
    base = await db.put({"_id": doc_id})
    local_rev = await db.put({"_id": doc_id, "_rev": base, **local})
    remote_rev = "2-" + ("f" if remote_wins else "0") * 32
    await db.bulk_insert_revisions(
        [
            {
                "_id": doc_id,
                "_rev": remote_rev,
                "_revisions": {"start": 2, "ids": [remote_rev.split("-")[1], base.split("-")[1]]},
                **remote,
            }
        ]
    )
    return local_rev, remote_rev


# ==================== Fixtures ====================


@pytest.fixture
def resolver(db: DocumentDatabase) -> ConflictResolver:
    return ConflictResolver(db)


# ==================== Tests ====================


class TestConflictResolver:
    """Tests for conflict resolution."""

    @pytest.mark.asyncio
    async def test_more_complete_losing_revision_wins(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test that a more complete losing revision is written over the winner."""
        local_rev, remote_rev = await make_conflict(db, "review-a", {"completed": 1}, {"completed": 9})
        assert (await db.get("review-a"))["_rev"] == local_rev

        assert await resolver.resolve("review-a") is True
        resolved = await db.get("review-a", conflicts=True)

        assert resolved["completed"] == 9
        assert rev_generation(resolved["_rev"]) == 3
        assert "_conflicts" not in resolved

    @pytest.mark.asyncio
    async def test_current_winner_kept(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test that when the winner is chosen only the conflicts are removed."""
        _, remote_rev = await make_conflict(
            db, "review-a", {"completed": 1}, {"completed": 9}, remote_wins=True
        )

        assert await resolver.resolve("review-a") is True
        resolved = await db.get("review-a", conflicts=True)

        assert resolved["_rev"] == remote_rev
        assert resolved["completed"] == 9
        assert "_conflicts" not in resolved

    @pytest.mark.asyncio
    async def test_tie_keeps_current_winner(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test that equally complete reviews keep the deterministic winner."""
        local_rev, _ = await make_conflict(db, "review-a", {"completed": 2, "tag": "local"}, {"completed": 2})

        await resolver.resolve("review-a")
        resolved = await db.get("review-a")

        assert resolved["_rev"] == local_rev
        assert resolved["tag"] == "local"

    @pytest.mark.asyncio
    async def test_note_policy(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test that the later created note wins."""
        await make_conflict(
            db,
            "note-a",
            {"content": "old", "created": 10, "modified": 10},
            {"content": "new", "created": 20, "modified": 20},
        )

        await resolver.resolve("note-a")

        assert (await db.get("note-a"))["content"] == "new"

    @pytest.mark.asyncio
    async def test_cards_keep_default_winner(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test that documents without a policy are left alone."""
        await make_conflict(db, "card-a", {"question": "1"}, {"question": "2"})

        assert await resolver.resolve("card-a") is False
        assert "_conflicts" in await db.get("card-a", conflicts=True)

    @pytest.mark.asyncio
    async def test_nothing_to_resolve(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test documents without conflicts or without existence."""
        await db.put({"_id": "review-a", "completed": 1})

        assert await resolver.resolve("review-a") is False
        assert await resolver.resolve("review-missing") is False

    @pytest.mark.asyncio
    async def test_resolve_docs_counts(self, db: DocumentDatabase, resolver: ConflictResolver):
        """Test batch resolution of replicated documents."""
        await make_conflict(db, "review-a", {"completed": 1}, {"completed": 2})
        await make_conflict(db, "note-b", {"created": 1, "modified": 1}, {"created": 2, "modified": 2})
        await make_conflict(db, "card-c", {}, {"question": "x"})

        resolved = await resolver.resolve_docs(
            [{"_id": "review-a"}, {"_id": "note-b"}, {"_id": "card-c"}, {"_id": "review-z", "_deleted": True}]
        )

        assert resolved == 2

    @pytest.mark.asyncio
    async def test_custom_policy(self, db: DocumentDatabase):
        """Test resolution with a caller supplied policy."""
        resolver = ConflictResolver(db, {"card-": lambda a, b: a if a.get("question") == "keep" else b})
        await make_conflict(db, "card-a", {"question": "keep"}, {"question": "drop"})

        assert await resolver.resolve("card-a") is True
        assert (await db.get("card-a"))["question"] == "keep"
