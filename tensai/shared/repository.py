"""Base repository over one key prefix of the document database."""

import builtins
from abc import ABC
from collections.abc import Callable
from typing import Any

from tensai.core.database import AllDocsRow, DocumentDatabase
from tensai.shared.errors import DocumentConflictError, DocumentNotFoundError

# Receives the current document ({"_id": ...} when missing or deleted) and
# returns the document to write, or None/False when nothing needs to change.
DiffFunction = Callable[[dict[str, Any]], dict[str, Any] | None | bool]

# Sorts after every character used in generated ids
HIGH_KEY = "\ufff0"


class DocumentRepository(ABC):
    """Abstract repository for the documents sharing one key prefix.

    Provides the optimistic-concurrency building blocks used by every store:
    ``upsert`` (read, compute, conditional write, retry) and
    ``stubborn_delete`` (delete whatever revision is current, retry on
    conflict).

    Example:
        class NoteRepository(DocumentRepository):
            prefix = "note-"

        repo = NoteRepository(db)
        doc, written = await repo.upsert(repo.key(note_id), lambda doc: {**doc, "content": "x"})
    """

    prefix: str = ""

    def __init__(self, db: DocumentDatabase) -> None:
        """Initialize the repository.

        Args:
            db: The backing document database.
        """
        self._db = db

    @property
    def db(self) -> DocumentDatabase:
        """Get the backing document database.

        Returns:
            The document database.
        """
        return self._db

    def key(self, entity_id: str) -> str:
        """Storage key for an entity id."""
        return self.prefix + entity_id

    def strip(self, key: str) -> str:
        """Entity id for a storage key."""
        return key[len(self.prefix) :] if key.startswith(self.prefix) else key

    def owns(self, key: str) -> bool:
        return key.startswith(self.prefix)

    async def get_or_none(self, key: str) -> dict[str, Any] | None:
        """Get the winning revision of a document, or None when missing or deleted."""
        try:
            return await self._db.get(key)
        except DocumentNotFoundError:
            return None

    async def list_rows(
        self,
        *,
        descending: bool = False,
        limit: int | None = None,
        include_docs: bool = False,
    ) -> builtins.list[AllDocsRow]:
        """List the live documents of this prefix in key order.

        Args:
            descending: Newest (greatest key) first.
            limit: Maximum number of rows.
            include_docs: Attach the document bodies.

        Returns:
            Rows ordered by key.
        """
        low, high = self.prefix, self.prefix + HIGH_KEY
        return await self._db.all_docs(
            start_key=high if descending else low,
            end_key=low if descending else high,
            descending=descending,
            limit=limit,
            include_docs=include_docs,
        )

    async def count(self) -> int:
        """Count live documents of this prefix."""
        return len(await self.list_rows())

    async def upsert(self, key: str, diff: DiffFunction) -> tuple[dict[str, Any], bool]:
        """Read-modify-write a document until the write is not rejected.

        Args:
            key: Storage key of the document.
            diff: Computes the new document from the current one. A missing
                or deleted document is passed as ``{"_id": key}``. Returning
                None or False skips the write.

        Returns:
            The resulting document (with its current ``_rev``) and whether a
            write took place.
        """
        while True:
            current = await self.get_or_none(key) or {"_id": key}
            updated = diff(dict(current))
            if not updated:
                return current, False

            doc = {**updated, "_id": key}
            if "_rev" in current:
                doc["_rev"] = current["_rev"]
            else:
                doc.pop("_rev", None)

            try:
                rev = await self._db.put(doc)
            except DocumentConflictError:
                continue
            return {**doc, "_rev": rev}, True

    async def stubborn_delete(self, key: str) -> bool:
        """Delete the current revision of a document, retrying on conflict.

        Returns:
            False if the document was already missing or deleted.
        """
        while True:
            doc = await self.get_or_none(key)
            if doc is None:
                return False
            try:
                await self._db.remove(key, doc["_rev"])
            except DocumentConflictError:
                continue
            return True
