"""
Overdueness ranking of cards.

Progress records are scored against a reference review time and indexed in
a database view, so that the most overdue cards can be read in order
without scoring every card on each request.

A card of level L last reviewed at R is scored as::

    days_overdue = (reference - R) / MS_PER_DAY - L
    score        = days_overdue / L + (exp(EXP_FACTOR * days_overdue) - 1)

The exponential term keeps very overdue high-level cards from being starved
by slightly overdue low-level ones: a level 365 card that is half a year
overdue scores marginally above a level 1 card that is one day overdue.
"""

from __future__ import annotations

import asyncio
import math
import sys
from collections.abc import Awaitable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any

from tensai.core.config import settings
from tensai.core.database import DESIGN_PREFIX, DocumentDatabase, MapFunction, ViewRow
from tensai.shared.errors import AppError
from tensai.shared.logging import get_logger
from tensai.shared.repository import DocumentRepository
from tensai.shared.schemas import to_epoch_ms

from .schemas import CARD_PREFIX, PROGRESS_PREFIX

logger = get_logger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000
EXP_FACTOR = 0.00225

# Failed cards (level 0 with a review time) sort above every real score
FAILED_SCORE = sys.float_info.max
# Upper bound for overdue queries that leave failed cards out
MAX_OVERDUE_SCORE = float(2**53 - 1)

CARDS_VIEW = "cards"
NEW_CARDS_VIEW = "new_cards"
OVERDUE_VIEW = "overdueness"


def overdueness(level: int, reviewed_ms: float, reference_ms: float) -> float:
    """Score a reviewed card; level 0 yields ``FAILED_SCORE``."""
    if level == 0:
        return FAILED_SCORE
    days_overdue = (reference_ms - reviewed_ms) / MS_PER_DAY - level
    return days_overdue / level + (math.exp(EXP_FACTOR * days_overdue) - 1)


def _card_link(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        "_id": CARD_PREFIX + doc["_id"].removeprefix(PROGRESS_PREFIX),
        "progress": {"level": doc.get("level"), "reviewed": doc.get("reviewed")},
    }


def map_cards(doc: dict[str, Any]) -> Iterator[tuple[Any, Any]]:
    """All progress records keyed by their id (creation order)."""
    if doc["_id"].startswith(PROGRESS_PREFIX):
        yield doc["_id"], _card_link(doc)


def map_new_cards(doc: dict[str, Any]) -> Iterator[tuple[Any, Any]]:
    """Progress records that were never reviewed."""
    if doc["_id"].startswith(PROGRESS_PREFIX) and doc.get("reviewed") is None:
        yield doc["_id"], _card_link(doc)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def make_overdueness_map(reference_ms: int) -> MapFunction:
    """Build the scoring map function for a reference time."""

    def map_overdueness(doc: dict[str, Any]) -> Iterator[tuple[Any, Any]]:
        if not doc["_id"].startswith(PROGRESS_PREFIX):
            return
        level, reviewed = doc.get("level"), doc.get("reviewed")
        if not _is_number(level) or not _is_number(reviewed):
            return
        yield overdueness(level, reviewed, reference_ms), _card_link(doc)

    return map_overdueness


class _DesignRepository(DocumentRepository):
    prefix = DESIGN_PREFIX


class OverduenessRanking:
    """Maintains the card views and the overdueness index.

    The reference time is set by the caller instead of being read from the
    clock, so rankings are reproducible. Changing it replaces the
    overdueness view; the old index is discarded in the background.

    Example:
        ranking = OverduenessRanking(db, review_time=datetime.now(UTC))
        await ranking.setup()
        rows = await ranking.query_overdue(limit=10)
    """

    def __init__(
        self,
        db: DocumentDatabase,
        review_time: datetime | None = None,
        *,
        prefetch_views: bool | None = None,
    ) -> None:
        self._db = db
        self._design = _DesignRepository(db)
        self._review_time = review_time or datetime.now(UTC)
        self._prefetch = settings.review.prefetch_views if prefetch_views is None else prefetch_views
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def review_time(self) -> datetime:
        return self._review_time

    async def setup(self) -> None:
        """Register all views and record their definitions."""
        await self._update_view(CARDS_VIEW, map_cards, {"map": f"{__name__}.map_cards"})
        await self._update_view(NEW_CARDS_VIEW, map_new_cards, {"map": f"{__name__}.map_new_cards"})
        await self._update_overdueness_view()

    async def set_review_time(self, review_time: datetime) -> None:
        """Change the reference time and rebuild the overdueness index.

        Stale indexes are cleaned up in the background; the caller does not
        wait for it.
        """
        self._review_time = review_time
        await self._update_overdueness_view()
        self._spawn(self._db.view_cleanup(), "view cleanup")

    async def _update_overdueness_view(self) -> None:
        reference_ms = to_epoch_ms(self._review_time)
        await self._update_view(
            OVERDUE_VIEW,
            make_overdueness_map(reference_ms),
            {"map": f"{__name__}.make_overdueness_map", "reference_time": reference_ms},
        )

    async def _update_view(self, name: str, map_fn: MapFunction, definition: dict[str, Any]) -> None:
        design_id = self._design.key(name)

        def diff(doc: dict[str, Any]) -> dict[str, Any] | None:
            if doc.get("views", {}).get(name) == definition:
                return None
            return {"_id": design_id, "views": {name: definition}}

        await self._design.upsert(design_id, diff)
        if self._db.register_view(name, map_fn) and self._prefetch:
            self._spawn(self._db.query(name, limit=0), f"prefetch {name}")

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            # Typically the database was closed before the task ran
            if isinstance(error, AppError):
                logger.debug(f"Background {label} skipped: {error}")
            elif error is not None:
                logger.opt(exception=error).error(f"Background {label} failed")

        task.add_done_callback(_done)

    async def wait_idle(self) -> None:
        """Wait for pending background index work."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    # ---------- Queries ----------

    async def query_cards(
        self,
        *,
        limit: int | None = None,
        keys: Sequence[str] | None = None,
    ) -> list[ViewRow]:
        """All cards, newest first (or in ``keys`` order when given)."""
        if keys is not None:
            return await self._db.query(CARDS_VIEW, keys=keys, include_docs=True)
        return await self._db.query(CARDS_VIEW, descending=True, limit=limit, include_docs=True)

    async def query_new(self, *, limit: int | None = None) -> list[ViewRow]:
        """Never reviewed cards, newest first."""
        return await self._db.query(NEW_CARDS_VIEW, descending=True, limit=limit, include_docs=True)

    async def query_overdue(self, *, limit: int | None = None, skip_failed: bool = False) -> list[ViewRow]:
        """Due cards, most overdue first.

        Cards that are not due yet (negative score) are left out. Failed
        cards come first unless ``skip_failed`` is set.
        """
        return await self._db.query(
            OVERDUE_VIEW,
            descending=True,
            start_key=MAX_OVERDUE_SCORE if skip_failed else None,
            end_key=0,
            limit=limit,
            include_docs=True,
        )

    async def count_available(self) -> tuple[int, int]:
        """Number of new and overdue progress records."""
        overdue = await self._db.query(OVERDUE_VIEW, start_key=0)
        new = await self._db.query(NEW_CARDS_VIEW)
        return len(new), len(overdue)
