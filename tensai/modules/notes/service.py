"""Note storage."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from tensai.core.database import DocumentDatabase
from tensai.shared.errors import DocumentConflictError, NotFoundError
from tensai.shared.ids import IdGenerator
from tensai.shared.logging import get_logger
from tensai.shared.repository import DocumentRepository
from tensai.shared.schemas import to_epoch_ms

from .schemas import NOTE_PREFIX, Note, NoteUpdate

logger = get_logger(__name__)


class NoteRepository(DocumentRepository):
    prefix = NOTE_PREFIX


def _now_ms() -> int:
    return to_epoch_ms(datetime.now(UTC))


def _has_change(update: Mapping[str, Any], current: Mapping[str, Any], ignore: Sequence[str] = ()) -> bool:
    return any(
        json.dumps(value, sort_keys=True) != json.dumps(current.get(key), sort_keys=True)
        for key, value in update.items()
        if key not in ignore
    )


def choose_note(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Pick between two conflicting note revisions.

    The later created note wins. Otherwise ``a`` is kept if it was modified
    no earlier than ``b`` was created.
    """
    if (a.get("created") or 0) > (b.get("created") or 0):
        return a
    return a if (a.get("modified") or 0) >= (b.get("created") or 0) else b


class NoteService:
    """
    Note CRUD.

    Example:
        service = NoteService(db)
        note = await service.create("Kanji with the water radical", keywords=["水"])
        await service.update(note.id, NoteUpdate(content="..."))
    """

    def __init__(
        self,
        db: DocumentDatabase,
        *,
        ids: IdGenerator | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._db = db
        self._ids = ids or IdGenerator()
        self._clock = clock
        self.notes = NoteRepository(db)

    async def get(self, note_id: str) -> Note:
        """
        Get a note.

        Raises:
            NotFoundError: The note is missing or deleted
        """
        return Note.from_doc(await self._db.get(self.notes.key(note_id)))

    async def create(self, content: str = "", keywords: Sequence[str] | None = None) -> Note:
        """Create a note, retrying with a fresh id if the id is taken."""
        now = self._clock()
        body: dict[str, Any] = {"content": content, "created": now, "modified": now}
        if keywords:
            body["keywords"] = list(keywords)

        while True:
            doc = {**body, "_id": self.notes.key(self._ids.generate())}
            try:
                await self._db.put(doc)
            except DocumentConflictError:
                continue
            logger.debug(f"Created note {doc['_id']}")
            return Note.from_doc(doc)

    async def update(self, note_id: str, update: NoteUpdate | Mapping[str, Any]) -> Note:
        """
        Update a note. Writes that change nothing are skipped.

        Raises:
            NotFoundError: The note is missing or deleted
        """
        if not isinstance(update, NoteUpdate):
            update = NoteUpdate.model_validate(dict(update))
        fields = update.to_fields()

        def diff(doc: dict[str, Any]) -> dict[str, Any] | None:
            if "_rev" not in doc:
                raise NotFoundError(
                    f"Note {note_id} not found",
                    details={"resource_type": "note", "resource_id": note_id},
                )
            current = {**doc, "keywords": doc.get("keywords") or []}
            if not _has_change(fields, current, ignore=("modified",)):
                return None
            merged = {**doc, **fields, "modified": self._clock()}
            # Empty optional fields are not stored
            if not merged.get("keywords"):
                merged.pop("keywords", None)
            return merged

        doc, _ = await self.notes.upsert(self.notes.key(note_id), diff)
        return Note.from_doc(doc)

    async def delete(self, note_id: str) -> None:
        """Delete a note; deleting a missing note is not an error."""
        await self.notes.stubborn_delete(self.notes.key(note_id))
