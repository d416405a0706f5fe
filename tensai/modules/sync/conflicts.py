"""Resolution of replication conflicts by document type."""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from tensai.core.database import DocumentDatabase
from tensai.modules.notes import NOTE_PREFIX, choose_note
from tensai.modules.reviews import REVIEW_PREFIX, choose_review
from tensai.shared.errors import DocumentConflictError, DocumentNotFoundError
from tensai.shared.logging import get_logger, log_conflict_resolved

logger = get_logger(__name__)

# Returns whichever of two revisions should survive
Chooser = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]

DEFAULT_POLICIES: dict[str, Chooser] = {
    REVIEW_PREFIX: choose_review,
    NOTE_PREFIX: choose_note,
}

_META_FIELDS = ("_id", "_rev", "_conflicts", "_deleted", "_revisions")


class ConflictResolver:
    """Pick one surviving revision for conflicted documents.

    Policies are looked up by key prefix; documents without a policy (cards,
    progress) keep the database's deterministic winner. A chooser only ever
    picks a side, revisions are never merged.
    """

    def __init__(self, db: DocumentDatabase, policies: Mapping[str, Chooser] | None = None) -> None:
        self._db = db
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)

    def policy_for(self, doc_id: str) -> Chooser | None:
        for prefix, chooser in self._policies.items():
            if doc_id.startswith(prefix):
                return chooser
        return None

    async def resolve_docs(self, docs: Iterable[Mapping[str, Any]]) -> int:
        """Resolve conflicts for replicated documents.

        Returns:
            Number of documents whose conflicts were resolved.
        """
        resolved = 0
        for doc in docs:
            if doc.get("_deleted") or self.policy_for(doc["_id"]) is None:
                continue
            if await self.resolve(doc["_id"]):
                resolved += 1
        return resolved

    async def resolve(self, doc_id: str) -> bool:
        """Resolve the conflicts of one document.

        The chooser is folded over the winning revision followed by the
        conflicting ones. When it picks a losing revision, its content is
        written on top of the current winner. All conflicting leaves are
        then deleted.

        Returns:
            False if there was nothing to resolve, or the document changed
            underneath (the next replicated change resolves it again).
        """
        chooser = self.policy_for(doc_id)
        if chooser is None:
            return False

        try:
            current = await self._db.get(doc_id, conflicts=True)
        except DocumentNotFoundError:
            return False
        conflicts: list[str] = current.pop("_conflicts", [])
        if not conflicts:
            return False

        revisions = [current]
        for rev in conflicts:
            try:
                revisions.append(await self._db.get(doc_id, rev=rev))
            except DocumentNotFoundError:
                logger.warning(f"Conflicting revision {rev} of {doc_id} is gone")

        winner = functools.reduce(chooser, revisions)
        try:
            winner_rev = current["_rev"]
            if winner["_rev"] != current["_rev"]:
                body = {k: v for k, v in winner.items() if k not in _META_FIELDS}
                winner_rev = await self._db.put({**body, "_id": doc_id, "_rev": current["_rev"]})
            for rev in conflicts:
                await self._db.remove(doc_id, rev)
        except DocumentConflictError:
            logger.warning(f"Document {doc_id} changed while resolving conflicts")
            return False

        log_conflict_resolved(doc_id, winner_rev, conflicts)
        return True
