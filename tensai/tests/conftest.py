"""Pytest configuration and fixtures for tensai tests."""

import asyncio
import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime

import pytest

from tensai.core.database import DocumentDatabase
from tensai.modules.cards import CardService, OverduenessRanking
from tensai.modules.notes import NoteService
from tensai.modules.reviews import ReviewService
from tensai.shared.ids import IdGenerator

_db_counter = itertools.count()

# 2024-01-01T00:00:00Z
REVIEW_TIME = datetime(2024, 1, 1, tzinfo=UTC)


async def wait_until(
    predicate: Callable[[], bool] | Callable[[], Awaitable[bool]],
    timeout: float = 5.0,
    interval: float = 0.01,
) -> None:
    """Poll until the predicate holds, failing the test after ``timeout``."""

    async def _poll() -> None:
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout)


# ==================== Helpers ====================


@pytest.fixture
def wait() -> Callable[..., Awaitable[None]]:
    """The ``wait_until`` polling helper."""
    return wait_until


@pytest.fixture
def review_time() -> datetime:
    """Reference review time of the ranking fixture."""
    return REVIEW_TIME


# ==================== Database Fixtures ====================


@pytest.fixture
async def db() -> AsyncGenerator[DocumentDatabase, None]:
    """Fresh in-memory database, closed after the test."""
    database = DocumentDatabase.in_memory(f"test-{next(_db_counter)}")
    yield database
    await database.close()


@pytest.fixture
async def remote_db() -> AsyncGenerator[DocumentDatabase, None]:
    """Second in-memory database acting as a sync peer."""
    database = DocumentDatabase.in_memory(f"remote-{next(_db_counter)}")
    yield database
    await database.close()


# ==================== Service Fixtures ====================


@pytest.fixture
def ids() -> IdGenerator:
    """Identifier generator shared by the services of one test."""
    return IdGenerator()


@pytest.fixture
async def ranking(db: DocumentDatabase, review_time: datetime) -> AsyncGenerator[OverduenessRanking, None]:
    """Ranking with a fixed review time and synchronous index builds."""
    ranking = OverduenessRanking(db, review_time, prefetch_views=False)
    await ranking.setup()
    yield ranking
    await ranking.aclose()


@pytest.fixture
def card_service(db: DocumentDatabase, ranking: OverduenessRanking, ids: IdGenerator) -> CardService:
    return CardService(db, ranking, ids=ids)


@pytest.fixture
def review_service(db: DocumentDatabase, ids: IdGenerator) -> ReviewService:
    return ReviewService(db, ids=ids)


@pytest.fixture
def note_service(db: DocumentDatabase, ids: IdGenerator) -> NoteService:
    return NoteService(db, ids=ids)
