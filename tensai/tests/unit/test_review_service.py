"""Unit tests for ReviewService."""

from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from tensai.core.database import DocumentDatabase
from tensai.modules.reviews import Review, ReviewService, choose_review, review_completeness

# ==================== Fixtures ====================


@pytest.fixture
def review(review_time) -> Review:
    """A review session scheduled at the fixture review time."""
    return Review(review_time=review_time, max_cards=20, max_new_cards=5)


# ==================== Tests ====================


class TestReviewSchema:
    """Tests for the Review model."""

    def test_from_doc(self, sample_review_doc):
        """Test parsing a stored document."""
        review = Review.from_doc({"_id": "review-x", "_rev": "1-a", **sample_review_doc})

        assert review.review_time == datetime(2024, 1, 1, tzinfo=UTC)
        assert review.max_cards == 20
        assert review.failed_cards_level2 == ["b"]

    def test_to_doc_uses_stored_names(self, review: Review):
        """Test camelCase keys and millisecond review time."""
        doc = review.to_doc()

        assert doc["reviewTime"] == 1_704_067_200_000
        assert doc["maxNewCards"] == 5
        assert "review_time" not in doc

    def test_completeness(self, sample_review_doc):
        """Test completed minus failure penalties."""
        assert Review.from_doc(sample_review_doc).completeness == 4
        assert review_completeness(sample_review_doc) == 4


class TestChooseReview:
    """Tests for the review conflict policy."""

    def test_more_complete_wins(self):
        """Test that the revision with more progress is kept."""
        a = {"_rev": "2-a", "completed": 3}
        b = {"_rev": "2-b", "completed": 5, "failedCardsLevel1": ["x"]}

        assert choose_review(a, b) is b
        assert choose_review(b, a) is b

    def test_failures_are_penalized(self):
        """Test that level 2 failures weigh double."""
        a = {"completed": 5, "failedCardsLevel2": ["x"]}
        b = {"completed": 4}

        assert choose_review(a, b) is b

    def test_tie_keeps_first(self):
        """Test that ties keep the current winner."""
        a = {"_rev": "2-a", "completed": 2}
        b = {"_rev": "2-b", "completed": 2}

        assert choose_review(a, b) is a


class TestReviewService:
    """Tests for storing the current review."""

    @pytest.mark.asyncio
    async def test_no_review(self, review_service: ReviewService):
        """Test that there is no current review initially."""
        assert await review_service.get_current() is None

    @pytest.mark.asyncio
    async def test_put_and_get(self, review_service: ReviewService, review: Review):
        """Test storing a new review session."""
        await review_service.put(review)

        current = await review_service.get_current()

        assert current == review

    @pytest.mark.asyncio
    async def test_put_overwrites_current(self, review_service: ReviewService, review: Review, db):
        """Test that a second put updates the same document."""
        await review_service.put(review)
        first_id = (await review_service.get_current_doc())["_id"]

        await review_service.put(review.model_copy(update={"completed": 3}))
        rows = await review_service.reviews.list_rows()

        assert [row.id for row in rows] == [first_id]
        assert (await review_service.get_current()).completed == 3

    @pytest.mark.asyncio
    async def test_accepts_mapping(self, review_service: ReviewService, sample_review_doc):
        """Test that stored-format mappings are accepted."""
        stored = await review_service.put({**sample_review_doc, "reviewTime": datetime(2024, 1, 1, tzinfo=UTC)})

        assert stored.completed == 7

    @pytest.mark.asyncio
    async def test_greatest_id_is_current(self, review_service: ReviewService, db: DocumentDatabase, review):
        """Test that among several sessions the newest one is current."""
        await db.put({"_id": "review-00000001", **review.to_doc(), "completed": 1})
        await db.put({"_id": "review-00000002", **review.to_doc(), "completed": 2})

        assert (await review_service.get_current()).completed == 2

    @pytest.mark.asyncio
    async def test_delete_removes_all_sessions(self, review_service: ReviewService, db, review):
        """Test that delete leaves no review behind."""
        await db.put({"_id": "review-00000001", **review.to_doc()})
        await db.put({"_id": "review-00000002", **review.to_doc()})

        await review_service.delete()

        assert await review_service.get_current() is None
        assert await review_service.reviews.count() == 0

    @pytest.mark.asyncio
    async def test_delete_without_review(self, review_service: ReviewService):
        """Test that deleting nothing is fine."""
        await review_service.delete()

    @pytest.mark.asyncio
    async def test_delete_retries_batch_after_conflict(
        self, review_service: ReviewService, db: DocumentDatabase, review
    ):
        """Test that a session edited during deletion is deleted on the next round."""
        await db.put({"_id": "review-00000001", **review.to_doc()})
        await db.put({"_id": "review-00000002", **review.to_doc()})
        original_bulk_docs = db.bulk_docs
        rounds: list[int] = []

        async def racing_bulk_docs(docs):
            rounds.append(len(docs))
            if len(rounds) == 1:
                # Another device edits a session between listing and deleting
                current = await db.get("review-00000002")
                await db.put({**current, "completed": 3})
            return await original_bulk_docs(docs)

        with patch.object(db, "bulk_docs", side_effect=racing_bulk_docs):
            await review_service.delete()

        assert rounds == [2, 1]
        assert await review_service.reviews.count() == 0
