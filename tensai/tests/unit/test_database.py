"""Unit tests for the revisioned document database."""

import asyncio

import pytest

from tensai.core.database import (
    MEMORY_URL,
    DocumentDatabase,
    collate,
    make_rev,
    rev_generation,
    revision_history,
)
from tensai.shared.errors import (
    DocumentConflictError,
    DocumentNotFoundError,
    NotFoundError,
    StorageError,
    ValidationError,
)


def _branch(doc_id: str, rev: str, parent: str, **body) -> dict:
    """Replicated revision descending from ``parent``."""
    return {
        "_id": doc_id,
        "_rev": rev,
        "_revisions": {"start": rev_generation(rev), "ids": [rev.split("-")[1], parent.split("-")[1]]},
        **body,
    }


class TestRevisionHelpers:
    """Tests for revision string helpers."""

    def test_make_rev_is_deterministic(self):
        """Test that the same edit yields the same revision."""
        assert make_rev(None, False, {"a": 1}) == make_rev(None, False, {"a": 1})
        assert make_rev(None, False, {"a": 1}) != make_rev(None, False, {"a": 2})

    def test_make_rev_increments_generation(self):
        """Test the generation prefix."""
        first = make_rev(None, False, {})
        second = make_rev(first, False, {})

        assert rev_generation(first) == 1
        assert rev_generation(second) == 2

    def test_revision_history(self):
        """Test expansion of _revisions into full revision strings."""
        doc = {"_rev": "3-c", "_revisions": {"start": 3, "ids": ["c", "b", "a"]}}

        assert revision_history(doc) == ["3-c", "2-b", "1-a"]
        assert revision_history({"_rev": "1-x"}) == ["1-x"]

    def test_collation_order(self):
        """Test null < bool < number < string < array < object."""
        keys = [{"a": 1}, [1], "a", 2, True, None, -1.5, False]

        assert sorted(keys, key=collate) == [None, False, True, -1.5, 2, "a", [1], {"a": 1}]


class TestDocumentCrud:
    """Tests for get/put/remove."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, db: DocumentDatabase):
        """Test creating and reading a document."""
        rev = await db.put({"_id": "doc", "value": 1})

        doc = await db.get("doc")

        assert doc == {"_id": "doc", "_rev": rev, "value": 1}
        assert rev.startswith("1-")

    @pytest.mark.asyncio
    async def test_update_requires_current_rev(self, db: DocumentDatabase):
        """Test optimistic concurrency on updates."""
        rev = await db.put({"_id": "doc", "value": 1})
        await db.put({"_id": "doc", "_rev": rev, "value": 2})

        with pytest.raises(DocumentConflictError):
            await db.put({"_id": "doc", "_rev": rev, "value": 3})
        with pytest.raises(DocumentConflictError):
            await db.put({"_id": "doc", "value": 3})

    @pytest.mark.asyncio
    async def test_missing_and_deleted(self, db: DocumentDatabase):
        """Test the not-found reasons."""
        rev = await db.put({"_id": "doc"})
        await db.remove("doc", rev)

        with pytest.raises(DocumentNotFoundError) as deleted:
            await db.get("doc")
        with pytest.raises(DocumentNotFoundError) as missing:
            await db.get("other")

        assert deleted.value.reason == "deleted"
        assert missing.value.reason == "missing"
        assert isinstance(missing.value, NotFoundError)

    @pytest.mark.asyncio
    async def test_recreate_after_delete(self, db: DocumentDatabase):
        """Test that a deleted document can be written again without _rev."""
        rev = await db.put({"_id": "doc", "value": 1})
        await db.remove("doc", rev)

        new_rev = await db.put({"_id": "doc", "value": 2})

        assert rev_generation(new_rev) == 3
        assert (await db.get("doc"))["value"] == 2

    @pytest.mark.asyncio
    async def test_rejects_non_json_body(self, db: DocumentDatabase):
        """Test that values JSON cannot hold are refused."""
        with pytest.raises(ValidationError):
            await db.put({"_id": "doc", "value": object()})

    @pytest.mark.asyncio
    async def test_bulk_docs_reports_errors(self, db: DocumentDatabase):
        """Test per-document results of bulk writes."""
        rev = await db.put({"_id": "a"})
        await db.put({"_id": "a", "_rev": rev, "v": 1})

        results = await db.bulk_docs([{"_id": "a", "_rev": rev}, {"_id": "b"}])

        assert not results[0].ok
        assert isinstance(results[0].error, DocumentConflictError)
        assert results[1].ok

    @pytest.mark.asyncio
    async def test_info_counts_live_documents(self, db: DocumentDatabase):
        """Test update_seq and doc_count."""
        await db.put({"_id": "a"})
        rev = await db.put({"_id": "b"})
        await db.remove("b", rev)

        info = await db.info()

        assert info.update_seq == 3
        assert info.doc_count == 1

    @pytest.mark.asyncio
    async def test_closed_database(self, db: DocumentDatabase):
        """Test that a closed database refuses operations."""
        await db.put({"_id": "a"})
        await db.close()

        with pytest.raises(StorageError):
            await db.get("a")

    @pytest.mark.asyncio
    async def test_cancelled_caller_lets_write_finish(self, db: DocumentDatabase, wait):
        """Test that cancelling a writer neither loses the database nor the write."""
        await db.put({"_id": "a"})
        writer = asyncio.create_task(db.put({"_id": "b"}))
        await asyncio.sleep(0)

        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer

        await wait(lambda: db._get_or_none("b"))
        assert (await db.get("a"))["_id"] == "a"
        assert (await db.info()).doc_count == 2

    @pytest.mark.asyncio
    async def test_close_waits_for_draining_statement(self, db: DocumentDatabase):
        """Test closing while a cancelled caller's statement is still running."""
        reader = asyncio.create_task(db.all_docs(include_docs=True))
        await asyncio.sleep(0)
        reader.cancel()

        await db.close()

        assert db.closed
        with pytest.raises(asyncio.CancelledError):
            await reader


class TestAllDocs:
    """Tests for all_docs."""

    @pytest.mark.asyncio
    async def test_range_and_order(self, db: DocumentDatabase):
        """Test inclusive bounds in traversal order."""
        for doc_id in ("a-1", "a-2", "a-3", "b-1"):
            await db.put({"_id": doc_id})

        ascending = await db.all_docs(start_key="a-", end_key="a-\ufff0")
        descending = await db.all_docs(start_key="a-\ufff0", end_key="a-", descending=True, limit=2)

        assert [row.id for row in ascending] == ["a-1", "a-2", "a-3"]
        assert [row.id for row in descending] == ["a-3", "a-2"]

    @pytest.mark.asyncio
    async def test_include_docs(self, db: DocumentDatabase):
        """Test that bodies are attached on request."""
        await db.put({"_id": "a", "value": 1})

        rows = await db.all_docs(include_docs=True)

        assert rows[0].doc["value"] == 1


class TestChanges:
    """Tests for the change feed."""

    @pytest.mark.asyncio
    async def test_one_entry_per_document(self, db: DocumentDatabase):
        """Test that only the latest change of a document is listed."""
        rev = await db.put({"_id": "a"})
        await db.put({"_id": "b"})
        await db.put({"_id": "a", "_rev": rev, "v": 2})

        result = await db.changes(0)

        assert [change.id for change in result.results] == ["b", "a"]
        assert result.last_seq == 3

    @pytest.mark.asyncio
    async def test_longpoll_wakes_on_write(self, db: DocumentDatabase):
        """Test that a long poll returns as soon as something changes."""
        await db.info()
        poll = asyncio.create_task(db.changes(0, timeout=5))
        await asyncio.sleep(0.05)

        await db.put({"_id": "a"})
        result = await asyncio.wait_for(poll, 1)

        assert [change.id for change in result.results] == ["a"]

    @pytest.mark.asyncio
    async def test_longpoll_timeout(self, db: DocumentDatabase):
        """Test that an idle long poll returns empty."""
        result = await db.changes(0, timeout=0.05)

        assert result.results == []
        assert result.last_seq == 0

    @pytest.mark.asyncio
    async def test_subscription_receives_live_changes(self, db: DocumentDatabase):
        """Test live feed delivery and termination on close."""
        subscription = db.subscribe()
        await db.put({"_id": "a"})
        await db.put({"_id": "b"})
        subscription.close()

        received = [change.id async for change in subscription]

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_deferred_changes(self, db: DocumentDatabase):
        """Test that deferred writes reach subscribers together."""
        subscription = db.subscribe()

        async with db.deferred_changes():
            await db.put({"_id": "a"})
            assert subscription.pending == 0
            await db.put({"_id": "b"})

        assert subscription.pending == 2


class TestReplicationPrimitives:
    """Tests for revs_diff, get_revisions and bulk_insert_revisions."""

    @pytest.mark.asyncio
    async def test_revs_diff(self, db: DocumentDatabase):
        """Test reporting of unknown revisions."""
        rev = await db.put({"_id": "a"})

        missing = await db.revs_diff({"a": [rev, "9-zzz"], "b": ["1-abc"]})

        assert missing == {"a": ["9-zzz"], "b": ["1-abc"]}

    @pytest.mark.asyncio
    async def test_get_revisions_includes_history(self, db: DocumentDatabase):
        """Test that revisions carry their ancestry."""
        first = await db.put({"_id": "a", "v": 1})
        second = await db.put({"_id": "a", "_rev": first, "v": 2})

        [doc] = await db.get_revisions("a", [second])

        assert doc["_revisions"] == {
            "start": 2,
            "ids": [second.split("-")[1], first.split("-")[1]],
        }

    @pytest.mark.asyncio
    async def test_insert_extends_local_branch(self, db: DocumentDatabase):
        """Test that a descendant of the local leaf replaces it."""
        first = await db.put({"_id": "a", "v": 1})

        await db.bulk_insert_revisions([_branch("a", "2-remote", first, v=2)])
        doc = await db.get("a", conflicts=True)

        assert doc["_rev"] == "2-remote"
        assert "_conflicts" not in doc

    @pytest.mark.asyncio
    async def test_insert_sibling_creates_conflict(self, db: DocumentDatabase):
        """Test that two branches yield a deterministic winner and a conflict."""
        first = await db.put({"_id": "a", "v": 1})
        local = await db.put({"_id": "a", "_rev": first, "v": 2})

        await db.bulk_insert_revisions([_branch("a", "2-0000", first, v=3)])
        doc = await db.get("a", conflicts=True)

        winner, loser = sorted([local, "2-0000"], reverse=True)
        assert doc["_rev"] == winner
        assert doc["_conflicts"] == [loser]
        assert (await db.get("a", rev="2-0000"))["v"] == 3

    @pytest.mark.asyncio
    async def test_insert_with_unknown_ancestors(self, db: DocumentDatabase):
        """Test that unknown ancestors are stored as stubs."""
        doc = {
            "_id": "a",
            "_rev": "3-ccc",
            "_revisions": {"start": 3, "ids": ["ccc", "bbb", "aaa"]},
            "v": 3,
        }

        await db.bulk_insert_revisions([doc])

        assert (await db.get("a"))["_rev"] == "3-ccc"
        assert await db.revs_diff({"a": ["1-aaa", "2-bbb", "3-ccc"]}) == {}
        with pytest.raises(DocumentNotFoundError):
            await db.get("a", rev="2-bbb")

    @pytest.mark.asyncio
    async def test_local_documents(self, db: DocumentDatabase):
        """Test checkpoint storage."""
        assert await db.get_local("_local/cp") is None

        await db.put_local("cp", {"last_seq": 1})
        rev = await db.put_local("_local/cp", {"last_seq": 2})

        assert rev == "0-2"
        assert await db.get_local("_local/cp") == {"_id": "_local/cp", "_rev": "0-2", "last_seq": 2}

    @pytest.mark.asyncio
    async def test_local_documents_not_in_changes(self, db: DocumentDatabase):
        """Test that local documents are not replicated."""
        await db.put_local("cp", {"last_seq": 1})

        assert (await db.changes(0)).results == []


class TestViews:
    """Tests for map views."""

    @staticmethod
    def by_value(doc):
        if "value" in doc:
            yield doc["value"], {"_id": doc.get("link", doc["_id"])}

    @pytest.mark.asyncio
    async def test_query_bounds_and_order(self, db: DocumentDatabase):
        """Test inclusive bounds and descending traversal."""
        db.register_view("by_value", self.by_value)
        for i, value in enumerate([3, 1, 2, "x", None]):
            await db.put({"_id": f"d{i}", "value": value})

        ascending = await db.query("by_value", start_key=1, end_key=3)
        descending = await db.query("by_value", descending=True, end_key=2)

        assert [row.key for row in ascending] == [1, 2, 3]
        assert [row.key for row in descending] == ["x", 3, 2]

    @pytest.mark.asyncio
    async def test_index_follows_updates_and_deletes(self, db: DocumentDatabase):
        """Test incremental index maintenance."""
        db.register_view("by_value", self.by_value)
        rev = await db.put({"_id": "a", "value": 1})
        await db.query("by_value")

        rev = await db.put({"_id": "a", "_rev": rev, "value": 5})
        assert [row.key for row in await db.query("by_value")] == [5]

        await db.remove("a", rev)
        assert await db.query("by_value") == []

    @pytest.mark.asyncio
    async def test_include_docs_follows_link(self, db: DocumentDatabase):
        """Test that a value _id links to another document."""
        db.register_view("by_value", self.by_value)
        await db.put({"_id": "target", "title": "T"})
        await db.put({"_id": "source", "value": 1, "link": "target"})
        await db.put({"_id": "dangling", "value": 2, "link": "nowhere"})

        rows = await db.query("by_value", include_docs=True)

        assert rows[0].doc["title"] == "T"
        assert rows[1].doc is None

    @pytest.mark.asyncio
    async def test_keys_lookup(self, db: DocumentDatabase):
        """Test lookup of keys in the given order."""
        db.register_view("by_value", self.by_value)
        for value in (1, 2, 3):
            await db.put({"_id": f"d{value}", "value": value})

        rows = await db.query("by_value", keys=[3, 1, 9])

        assert [row.id for row in rows] == ["d3", "d1"]

    @pytest.mark.asyncio
    async def test_unknown_view(self, db: DocumentDatabase):
        """Test querying an unregistered view."""
        with pytest.raises(NotFoundError):
            await db.query("nope")

    @pytest.mark.asyncio
    async def test_replacing_view_leaves_stale_index(self, db: DocumentDatabase):
        """Test re-registration and view_cleanup."""
        assert db.register_view("by_value", self.by_value) is True
        assert db.register_view("by_value", self.by_value) is False
        assert db.register_view("by_value", lambda doc: iter(())) is True

        assert await db.view_cleanup() == 1
        assert await db.view_cleanup() == 0


class TestCompaction:
    """Tests for compaction."""

    @pytest.mark.asyncio
    async def test_compact_drops_old_bodies(self):
        """Test that superseded revisions lose their bodies."""
        db = DocumentDatabase("compaction", MEMORY_URL, auto_compaction=False)
        try:
            first = await db.put({"_id": "a", "v": 1})
            await db.put({"_id": "a", "_rev": first, "v": 2})
            assert (await db.get("a", rev=first))["v"] == 1

            assert await db.compact() == 1
            with pytest.raises(DocumentNotFoundError):
                await db.get("a", rev=first)
        finally:
            await db.close()
