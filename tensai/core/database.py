"""
Revisioned document database on top of async SQLAlchemy.

Every document is a tree of revisions. Writes name the revision they were
based on and are rejected when that revision is no longer a leaf
(optimistic concurrency). Replicated writes may add sibling leaves, which
are reported as conflicts until somebody deletes the losing branches.

Besides keyed CRUD the database offers a change feed (polling and live),
the primitives a replicator needs (revs_diff, revision histories,
new_edits=false inserts, checkpoint storage) and materialized map views.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from sqlalchemy import JSON, Boolean, Integer, MetaData, String, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from tensai.core.config import settings
from tensai.shared.errors import (
    AppError,
    DocumentConflictError,
    DocumentNotFoundError,
    NotFoundError,
    StorageError,
    ValidationError,
    safe,
)
from tensai.shared.logging import get_logger

logger = get_logger(__name__)

MEMORY_URL = "sqlite+aiosqlite:///:memory:"

LOCAL_PREFIX = "_local/"
DESIGN_PREFIX = "_design/"

# Maximum ancestry length reported with a revision
REVS_LIMIT = 1000

_RESERVED_FIELDS = ("_id", "_rev", "_deleted", "_conflicts", "_revisions")
_INDEX_BATCH = 500

NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for the storage tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class DocumentRecord(Base):
    """One row per document: its winning revision and latest sequence."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, index=True)
    winning_rev: Mapped[str] = mapped_column(String)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)


class RevisionRecord(Base):
    """A node of a document's revision tree.

    Stubs (ancestors learned through replication) and compacted revisions
    have no body.
    """

    __tablename__ = "revisions"

    doc_id: Mapped[str] = mapped_column(String, primary_key=True)
    rev: Mapped[str] = mapped_column(String, primary_key=True)
    parent_rev: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    leaf: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    body: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)


class LocalDocumentRecord(Base):
    """Non-replicated documents such as replication checkpoints."""

    __tablename__ = "local_documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    rev: Mapped[int] = mapped_column(Integer, default=0)
    body: Mapped[dict[str, Any]] = mapped_column(JSON)


# ==================== Results ====================


@dataclass(frozen=True, slots=True)
class DatabaseInfo:
    name: str
    update_seq: int
    doc_count: int


@dataclass(slots=True)
class Change:
    """A change feed entry: the document's state after the change."""

    id: str
    # Opaque for remote peers; integers locally
    seq: int | str
    rev: str
    deleted: bool
    doc: dict[str, Any]
    leaf_revs: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ChangesResult:
    results: list[Change]
    last_seq: int | str


@dataclass(frozen=True, slots=True)
class BulkResult:
    id: str
    rev: str | None = None
    error: AppError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class AllDocsRow:
    id: str
    rev: str
    doc: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ViewRow:
    id: str
    key: Any
    value: Any
    doc: dict[str, Any] | None = None


MapFunction = Callable[[dict[str, Any]], Iterable[tuple[Any, Any]]]


@dataclass
class _ViewIndex:
    name: str
    map_fn: MapFunction
    seq: int = 0
    rows: dict[str, list[tuple[Any, Any]]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ==================== Helpers ====================


def rev_generation(rev: str) -> int:
    """Numeric generation prefix of a revision string."""
    return int(rev.split("-", 1)[0])


def make_rev(parent_rev: str | None, deleted: bool, body: dict[str, Any]) -> str:
    """Deterministic revision id: the same edit on two replicas gets the same rev."""
    generation = rev_generation(parent_rev) + 1 if parent_rev else 1
    payload = json.dumps([parent_rev, deleted, body], sort_keys=True, separators=(",", ":"))
    return f"{generation}-{hashlib.md5(payload.encode()).hexdigest()}"


def revision_history(doc: dict[str, Any]) -> list[str]:
    """Full revision strings of a replicated document, newest first."""
    revisions = doc.get("_revisions")
    if not revisions:
        return [doc["_rev"]]
    start = revisions["start"]
    return [f"{start - i}-{rev_hash}" for i, rev_hash in enumerate(revisions["ids"])]


def collate(key: Any) -> tuple:
    """Sort key for view keys: null < booleans < numbers < strings < arrays < objects."""
    if key is None:
        return (0,)
    if isinstance(key, bool):
        return (1, key)
    if isinstance(key, int | float):
        return (2, key)
    if isinstance(key, str):
        return (3, key)
    if isinstance(key, list | tuple):
        return (4, tuple(collate(k) for k in key))
    if isinstance(key, dict):
        return (5, tuple((k, collate(v)) for k, v in key.items()))
    raise ValidationError(f"Unsupported view key type: {type(key).__name__}")


def _strip(doc: dict[str, Any]) -> dict[str, Any]:
    body = {k: v for k, v in doc.items() if k not in _RESERVED_FIELDS}
    try:
        # Detach from the caller's objects and reject non-JSON values
        return json.loads(json.dumps(body))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Document is not JSON serializable: {e}") from e


def _as_doc(doc_id: str, revision: RevisionRecord) -> dict[str, Any]:
    doc: dict[str, Any] = {"_id": doc_id, "_rev": revision.rev, **(revision.body or {})}
    if revision.deleted:
        doc["_deleted"] = True
    return doc


def _winner(leaves: Sequence[RevisionRecord]) -> RevisionRecord:
    # Live branches beat deleted ones, then the longest branch, then the greater hash
    return max(leaves, key=lambda r: (not r.deleted, rev_generation(r.rev), r.rev))


def _drain_on_cancel(
    func: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """Let a database operation finish when the calling task is cancelled.

    A statement interrupted by cancellation invalidates its connection, and
    the single connection of an in-memory database is the database itself.
    The operation keeps running in its own task; the caller still sees
    ``CancelledError`` and the result is discarded.
    """

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        task = asyncio.ensure_future(func(*args, **kwargs))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_discard_result)
            raise

    return wrapper


def _discard_result(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned database operation failed: {error!r}")


def is_memory_url(url: str) -> bool:
    parsed = make_url(url)
    return parsed.drivername.startswith("sqlite") and parsed.database in (None, "", ":memory:")


# ==================== Live feed ====================


class ChangeSubscription:
    """Live change feed starting at subscription time.

    Iterate with ``async for``; iteration ends once the subscription or
    the database is closed.
    """

    def __init__(self, db: DocumentDatabase) -> None:
        self._db = db
        self._queue: asyncio.Queue[Change | None] = asyncio.Queue()
        self.closed = False

    def push(self, change: Change) -> None:
        if not self.closed:
            self._queue.put_nowait(change)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._db._subscriptions.discard(self)
        self._queue.put_nowait(None)

    @property
    def pending(self) -> int:
        """Changes delivered but not yet consumed."""
        return self._queue.qsize()

    def __aiter__(self) -> ChangeSubscription:
        return self

    async def __anext__(self) -> Change:
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change


# ==================== Database ====================


class DocumentDatabase:
    """Revisioned document store backed by SQLite (or any SQLAlchemy URL).

    All statements run under one asyncio lock, so every public operation is
    atomic with respect to the others. Multi-step read-modify-write cycles
    across calls are the caller's business and are protected by revisions.

    Example:
        db = DocumentDatabase("cards", MEMORY_URL)
        rev = await db.put({"_id": "card-1", "question": "Q"})
        doc = await db.get("card-1")
        await db.put({**doc, "question": "Q2"})
    """

    def __init__(
        self,
        name: str = "tensai",
        url: str | None = None,
        *,
        auto_compaction: bool | None = None,
        echo: bool | None = None,
    ) -> None:
        """Initialize the database handle. Tables are created lazily.

        Args:
            name: Display name, also used to identify replication peers.
            url: SQLAlchemy async URL; defaults to the configured one.
            auto_compaction: Drop superseded revision bodies on write.
            echo: Log every SQL statement.
        """
        self.name = name
        self.url = url or settings.db.url
        self.auto_compaction = (
            settings.db.auto_compaction if auto_compaction is None else auto_compaction
        )
        self._echo = settings.db.echo if echo is None else echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._seq_changed = asyncio.Condition()
        self._update_seq = 0
        self._subscriptions: set[ChangeSubscription] = set()
        self._defer_depth = 0
        self._deferred: list[Change] = []
        self._views: dict[str, _ViewIndex] = {}
        self._stale_views: list[_ViewIndex] = []
        self._closed = False

    @classmethod
    def in_memory(cls, name: str) -> DocumentDatabase:
        """Create a throwaway in-memory database."""
        return cls(name, MEMORY_URL)

    def __repr__(self) -> str:
        return f"DocumentDatabase(name={self.name!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------- Lifecycle ----------

    def _create_engine(self) -> AsyncEngine:
        if is_memory_url(self.url):
            # One shared connection, otherwise every checkout sees an empty database
            return create_async_engine(
                self.url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=self._echo,
            )
        return create_async_engine(self.url, echo=self._echo)

    async def _ensure_ready(self) -> None:
        if self._session_factory is not None:
            return
        async with self._init_lock:
            if self._session_factory is not None:
                return
            if self._closed:
                raise StorageError(f"Database {self.name} is closed")

            engine = self._create_engine()
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with factory() as session:
                result = await session.execute(select(func.max(DocumentRecord.seq)))
                self._update_seq = result.scalar() or 0

            self._engine = engine
            self._session_factory = factory
            logger.debug("Database opened", db=self.name, update_seq=self._update_seq)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Serialized session with automatic commit/rollback."""
        await self._ensure_ready()
        async with self._lock:
            if self._closed or self._session_factory is None:
                raise StorageError(f"Database {self.name} is closed")
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    async def close(self) -> None:
        """Stop live feeds and release connections."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.close()
        async with self._seq_changed:
            self._seq_changed.notify_all()
        if self._engine is not None:
            # Wait for statements still draining after a cancelled caller
            async with self._lock:
                await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.debug("Database closed", db=self.name)

    @safe
    @_drain_on_cancel
    async def destroy(self) -> None:
        """Delete all data and close."""
        await self._ensure_ready()
        assert self._engine is not None
        async with self._lock:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        self._views.clear()
        self._stale_views.clear()
        await self.close()

    # ---------- Change publication ----------

    def _deliver(self, changes: list[Change]) -> None:
        for subscription in list(self._subscriptions):
            for change in changes:
                subscription.push(change)

    async def _publish(self, changes: list[Change]) -> None:
        if not changes:
            return
        # Push before the first await so feeds see changes in commit order
        if self._defer_depth:
            self._deferred.extend(changes)
        else:
            self._deliver(changes)
        async with self._seq_changed:
            self._seq_changed.notify_all()

    @asynccontextmanager
    async def deferred_changes(self) -> AsyncIterator[None]:
        """Hold back live feed delivery until the block exits.

        Writes inside the block are committed one by one as usual, but
        subscribers see them together afterwards, so a feed consumer never
        observes the state between two related writes.
        """
        self._defer_depth += 1
        try:
            yield
        finally:
            self._defer_depth -= 1
            if not self._defer_depth and self._deferred:
                changes, self._deferred = self._deferred, []
                self._deliver(changes)

    def subscribe(self) -> ChangeSubscription:
        """Open a live change feed starting now."""
        subscription = ChangeSubscription(self)
        if self._closed:
            subscription.close()
        else:
            self._subscriptions.add(subscription)
        return subscription

    # ---------- Internal revision handling ----------

    async def _leaves(self, session: AsyncSession, doc_id: str) -> list[RevisionRecord]:
        result = await session.execute(
            select(RevisionRecord).where(
                RevisionRecord.doc_id == doc_id,
                RevisionRecord.leaf.is_(True),
            )
        )
        return list(result.scalars().all())

    async def _refresh_document(self, session: AsyncSession, doc_id: str) -> Change:
        leaves = await self._leaves(session, doc_id)
        winner = _winner(leaves)

        self._update_seq += 1
        record = await session.get(DocumentRecord, doc_id)
        if record is None:
            record = DocumentRecord(id=doc_id)
            session.add(record)
        record.seq = self._update_seq
        record.winning_rev = winner.rev
        record.deleted = winner.deleted
        await session.flush()

        return Change(
            id=doc_id,
            seq=record.seq,
            rev=winner.rev,
            deleted=winner.deleted,
            doc=_as_doc(doc_id, winner),
            leaf_revs=sorted((leaf.rev for leaf in leaves), reverse=True),
        )

    async def _supersede(self, session: AsyncSession, doc_id: str, rev: str) -> RevisionRecord | None:
        parent = await session.get(RevisionRecord, (doc_id, rev))
        if parent is not None and parent.leaf:
            parent.leaf = False
            if self.auto_compaction:
                parent.body = None
        return parent

    async def _write_revision(
        self,
        session: AsyncSession,
        doc_id: str,
        parent_rev: str | None,
        deleted: bool,
        body: dict[str, Any],
    ) -> tuple[str, Change]:
        new_rev = make_rev(parent_rev, deleted, body)
        if parent_rev is not None:
            await self._supersede(session, doc_id, parent_rev)
        session.add(
            RevisionRecord(
                doc_id=doc_id,
                rev=new_rev,
                parent_rev=parent_rev,
                deleted=deleted,
                leaf=True,
                body=body,
            )
        )
        await session.flush()
        return new_rev, await self._refresh_document(session, doc_id)

    async def _ancestry(self, session: AsyncSession, doc_id: str, revision: RevisionRecord) -> dict[str, Any]:
        ids: list[str] = []
        current: RevisionRecord | None = revision
        while current is not None and len(ids) < REVS_LIMIT:
            ids.append(current.rev.split("-", 1)[1])
            if current.parent_rev is None:
                break
            current = await session.get(RevisionRecord, (doc_id, current.parent_rev))
        return {"start": rev_generation(revision.rev), "ids": ids}

    # ---------- Document CRUD ----------

    @safe
    @_drain_on_cancel
    async def info(self) -> DatabaseInfo:
        """Name, update sequence and live document count."""
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(DocumentRecord).where(DocumentRecord.deleted.is_(False))
            )
            count = result.scalar_one()
        return DatabaseInfo(name=self.name, update_seq=self._update_seq, doc_count=count)

    @safe
    @_drain_on_cancel
    async def get(
        self,
        doc_id: str,
        *,
        rev: str | None = None,
        conflicts: bool = False,
    ) -> dict[str, Any]:
        """Get the winning (or a specific) revision of a document.

        Args:
            doc_id: Document id.
            rev: Specific revision to read instead of the winner.
            conflicts: Include ``_conflicts`` with the other live leaves.

        Raises:
            DocumentNotFoundError: reason "missing" or "deleted".
        """
        if doc_id.startswith(LOCAL_PREFIX):
            local = await self.get_local(doc_id)
            if local is None:
                raise DocumentNotFoundError(doc_id, "missing")
            return local

        async with self._session() as session:
            record = await session.get(DocumentRecord, doc_id)
            if record is None:
                raise DocumentNotFoundError(doc_id, "missing")

            if rev is not None:
                revision = await session.get(RevisionRecord, (doc_id, rev))
                if revision is None or revision.body is None:
                    raise DocumentNotFoundError(doc_id, "missing")
                return _as_doc(doc_id, revision)

            if record.deleted:
                raise DocumentNotFoundError(doc_id, "deleted")

            winner = await session.get(RevisionRecord, (doc_id, record.winning_rev))
            assert winner is not None
            doc = _as_doc(doc_id, winner)
            if conflicts:
                leaves = await self._leaves(session, doc_id)
                others = sorted(
                    (leaf.rev for leaf in leaves if not leaf.deleted and leaf.rev != winner.rev),
                    reverse=True,
                )
                if others:
                    doc["_conflicts"] = others
            return doc

    @safe
    @_drain_on_cancel
    async def put(self, doc: dict[str, Any]) -> str:
        """Write a document.

        New documents must not carry ``_rev``. Updates must name a current
        leaf revision in ``_rev``; ``_deleted: True`` deletes.

        Returns:
            The new revision.

        Raises:
            DocumentConflictError: The revision is stale or missing.
        """
        doc_id = doc.get("_id")
        if not isinstance(doc_id, str) or not doc_id:
            raise ValidationError("Document must have a string _id", details={"field": "_id"})
        body = _strip(doc)
        if doc_id.startswith(LOCAL_PREFIX):
            return await self.put_local(doc_id, body)

        rev = doc.get("_rev")
        deleted = bool(doc.get("_deleted"))

        async with self._session() as session:
            record = await session.get(DocumentRecord, doc_id)
            if rev is None:
                if record is not None and not record.deleted:
                    raise DocumentConflictError(doc_id)
                parent_rev = record.winning_rev if record is not None else None
            else:
                parent = await session.get(RevisionRecord, (doc_id, rev))
                if parent is None or not parent.leaf:
                    raise DocumentConflictError(doc_id, rev)
                parent_rev = rev
            new_rev, change = await self._write_revision(session, doc_id, parent_rev, deleted, body)

        await self._publish([change])
        return new_rev

    async def remove(self, doc_id: str, rev: str) -> str:
        """Delete the given leaf revision of a document."""
        return await self.put({"_id": doc_id, "_rev": rev, "_deleted": True})

    async def bulk_docs(self, docs: Sequence[dict[str, Any]]) -> list[BulkResult]:
        """Write several documents; per-document failures are reported, not raised."""
        results: list[BulkResult] = []
        for doc in docs:
            doc_id = doc.get("_id", "")
            try:
                rev = await self.put(doc)
            except (DocumentConflictError, DocumentNotFoundError) as e:
                results.append(BulkResult(id=doc_id, error=e))
            else:
                results.append(BulkResult(id=doc_id, rev=rev))
        return results

    @safe
    @_drain_on_cancel
    async def all_docs(
        self,
        *,
        start_key: str | None = None,
        end_key: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        include_docs: bool = False,
    ) -> list[AllDocsRow]:
        """List live documents by id.

        Bounds are inclusive and given in traversal order, so with
        ``descending=True`` the start key is the upper bound.
        """
        low, high = (end_key, start_key) if descending else (start_key, end_key)
        stmt = select(DocumentRecord).where(DocumentRecord.deleted.is_(False))
        if low is not None:
            stmt = stmt.where(DocumentRecord.id >= low)
        if high is not None:
            stmt = stmt.where(DocumentRecord.id <= high)
        stmt = stmt.order_by(DocumentRecord.id.desc() if descending else DocumentRecord.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        rows: list[AllDocsRow] = []
        async with self._session() as session:
            records = (await session.execute(stmt)).scalars().all()
            for record in records:
                doc = None
                if include_docs:
                    winner = await session.get(RevisionRecord, (record.id, record.winning_rev))
                    assert winner is not None
                    doc = _as_doc(record.id, winner)
                rows.append(AllDocsRow(id=record.id, rev=record.winning_rev, doc=doc))
        return rows

    # ---------- Change feed ----------

    @_drain_on_cancel
    async def _read_changes(self, since: int, limit: int | None) -> list[Change]:
        stmt = select(DocumentRecord).where(DocumentRecord.seq > since).order_by(DocumentRecord.seq)
        if limit is not None:
            stmt = stmt.limit(limit)
        changes: list[Change] = []
        async with self._session() as session:
            records = (await session.execute(stmt)).scalars().all()
            for record in records:
                leaves = await self._leaves(session, record.id)
                winner = next(leaf for leaf in leaves if leaf.rev == record.winning_rev)
                changes.append(
                    Change(
                        id=record.id,
                        seq=record.seq,
                        rev=record.winning_rev,
                        deleted=record.deleted,
                        doc=_as_doc(record.id, winner),
                        leaf_revs=sorted((leaf.rev for leaf in leaves), reverse=True),
                    )
                )
        return changes

    @safe
    async def changes(
        self,
        since: int = 0,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> ChangesResult:
        """Documents changed after ``since``, one entry per document.

        Args:
            since: Sequence to start after.
            limit: Maximum number of entries.
            timeout: When nothing changed yet, wait up to this many seconds
                for a change (long polling).
        """
        changes = await self._read_changes(since, limit)
        if not changes and timeout:
            try:
                async with self._seq_changed:
                    await asyncio.wait_for(
                        self._seq_changed.wait_for(lambda: self._update_seq > since or self._closed),
                        timeout,
                    )
            except TimeoutError:
                return ChangesResult(results=[], last_seq=since)
            if self._closed:
                return ChangesResult(results=[], last_seq=since)
            changes = await self._read_changes(since, limit)
        last_seq = changes[-1].seq if changes else since
        return ChangesResult(results=changes, last_seq=last_seq)

    # ---------- Replication primitives ----------

    @safe
    @_drain_on_cancel
    async def revs_diff(self, revs: dict[str, list[str]]) -> dict[str, list[str]]:
        """Return, per document, the revisions this database does not know."""
        missing: dict[str, list[str]] = {}
        async with self._session() as session:
            for doc_id, rev_list in revs.items():
                result = await session.execute(
                    select(RevisionRecord.rev).where(
                        RevisionRecord.doc_id == doc_id,
                        RevisionRecord.rev.in_(rev_list),
                    )
                )
                known = set(result.scalars().all())
                absent = [rev for rev in rev_list if rev not in known]
                if absent:
                    missing[doc_id] = absent
        return missing

    @safe
    @_drain_on_cancel
    async def get_revisions(self, doc_id: str, revs: Sequence[str]) -> list[dict[str, Any]]:
        """Read revisions together with their ``_revisions`` ancestry.

        Revisions whose body is gone (compacted or unknown) are skipped.
        """
        docs: list[dict[str, Any]] = []
        async with self._session() as session:
            for rev in revs:
                revision = await session.get(RevisionRecord, (doc_id, rev))
                if revision is None or revision.body is None:
                    continue
                doc = _as_doc(doc_id, revision)
                doc["_revisions"] = await self._ancestry(session, doc_id, revision)
                docs.append(doc)
        return docs

    @safe
    @_drain_on_cancel
    async def bulk_insert_revisions(self, docs: Sequence[dict[str, Any]]) -> list[BulkResult]:
        """Store replicated revisions as-is (new_edits=false).

        Known revisions are skipped. Unknown ancestors are stored as stubs.
        An incoming revision that does not descend from a local leaf becomes
        a sibling leaf, i.e. a conflict.
        """
        results: list[BulkResult] = []
        changes: list[Change] = []
        async with self._session() as session:
            for doc in docs:
                doc_id = doc["_id"]
                rev = doc["_rev"]
                if await session.get(RevisionRecord, (doc_id, rev)) is not None:
                    results.append(BulkResult(id=doc_id, rev=rev))
                    continue

                ancestors = revision_history(doc)[1:]
                stubs = ancestors
                for index, ancestor in enumerate(ancestors):
                    if await session.get(RevisionRecord, (doc_id, ancestor)) is not None:
                        await self._supersede(session, doc_id, ancestor)
                        stubs = ancestors[:index]
                        break

                # Oldest first so that parents exist before their children
                for index in reversed(range(len(stubs))):
                    session.add(
                        RevisionRecord(
                            doc_id=doc_id,
                            rev=stubs[index],
                            parent_rev=ancestors[index + 1] if index + 1 < len(ancestors) else None,
                            deleted=False,
                            leaf=False,
                            body=None,
                        )
                    )
                session.add(
                    RevisionRecord(
                        doc_id=doc_id,
                        rev=rev,
                        parent_rev=ancestors[0] if ancestors else None,
                        deleted=bool(doc.get("_deleted")),
                        leaf=True,
                        body=_strip(doc),
                    )
                )
                await session.flush()
                changes.append(await self._refresh_document(session, doc_id))
                results.append(BulkResult(id=doc_id, rev=rev))

        await self._publish(changes)
        return results

    @safe
    @_drain_on_cancel
    async def get_local(self, doc_id: str) -> dict[str, Any] | None:
        """Read a non-replicated ``_local/`` document."""
        async with self._session() as session:
            record = await session.get(LocalDocumentRecord, doc_id)
            if record is None:
                return None
            return {"_id": doc_id, "_rev": f"0-{record.rev}", **record.body}

    @safe
    @_drain_on_cancel
    async def put_local(self, doc_id: str, body: dict[str, Any]) -> str:
        """Write a ``_local/`` document; last writer wins."""
        if not doc_id.startswith(LOCAL_PREFIX):
            doc_id = LOCAL_PREFIX + doc_id
        async with self._session() as session:
            record = await session.get(LocalDocumentRecord, doc_id)
            if record is None:
                record = LocalDocumentRecord(id=doc_id, rev=0, body={})
                session.add(record)
            record.rev += 1
            record.body = _strip(body)
            return f"0-{record.rev}"

    # ---------- Views ----------

    def register_view(self, name: str, map_fn: MapFunction) -> bool:
        """Register (or replace) a map view.

        The map function receives each live document and yields
        ``(key, value)`` pairs. Replacing the function discards the index;
        the old one is kept until ``view_cleanup()``.

        Returns:
            False when the same function was already registered.
        """
        current = self._views.get(name)
        if current is not None and current.map_fn is map_fn:
            return False
        if current is not None:
            self._stale_views.append(current)
        self._views[name] = _ViewIndex(name=name, map_fn=map_fn)
        return True

    def has_view(self, name: str) -> bool:
        return name in self._views

    async def _update_index(self, index: _ViewIndex) -> None:
        async with index.lock:
            while True:
                result = await self.changes(index.seq, limit=_INDEX_BATCH)
                if not result.results:
                    return
                for change in result.results:
                    index.rows.pop(change.id, None)
                    if change.deleted:
                        continue
                    try:
                        emitted = list(index.map_fn(change.doc))
                    except Exception:
                        logger.exception("Map function failed", view=index.name, doc_id=change.id)
                        continue
                    if emitted:
                        index.rows[change.id] = emitted
                index.seq = result.last_seq

    async def _get_or_none(self, doc_id: str) -> dict[str, Any] | None:
        try:
            return await self.get(doc_id)
        except DocumentNotFoundError:
            return None

    async def query(
        self,
        name: str,
        *,
        start_key: Any = None,
        end_key: Any = None,
        descending: bool = False,
        limit: int | None = None,
        include_docs: bool = False,
        keys: Sequence[Any] | None = None,
    ) -> list[ViewRow]:
        """Query a registered view, bringing its index up to date first.

        Bounds are inclusive and given in traversal order (see
        ``all_docs``). With ``include_docs``, a value carrying an ``_id``
        links to that document instead of the emitting one; linked
        documents that are missing come back as ``doc=None``.

        Raises:
            NotFoundError: The view is not registered.
        """
        index = self._views.get(name)
        if index is None:
            raise NotFoundError(
                f"View {name} is not registered",
                details={"resource_type": "view", "resource_id": name},
            )
        await self._update_index(index)

        entries = sorted(
            (
                (collate(key), doc_id, key, value)
                for doc_id, emitted in index.rows.items()
                for key, value in emitted
            ),
            key=lambda entry: (entry[0], entry[1]),
        )

        if keys is not None:
            selected = [entry for wanted in map(collate, keys) for entry in entries if entry[0] == wanted]
        else:
            if descending:
                entries.reverse()
            low, high = (end_key, start_key) if descending else (start_key, end_key)
            low_key = collate(low) if low is not None else None
            high_key = collate(high) if high is not None else None
            selected = [
                entry
                for entry in entries
                if (low_key is None or entry[0] >= low_key) and (high_key is None or entry[0] <= high_key)
            ]

        if limit is not None:
            selected = selected[:limit]

        rows: list[ViewRow] = []
        for _, doc_id, key, value in selected:
            doc = None
            if include_docs:
                linked = value.get("_id") if isinstance(value, dict) else None
                doc = await self._get_or_none(linked if isinstance(linked, str) else doc_id)
            rows.append(ViewRow(id=doc_id, key=key, value=value, doc=doc))
        return rows

    async def view_cleanup(self) -> int:
        """Discard indexes of replaced view functions.

        Returns:
            Number of indexes dropped.
        """
        dropped = len(self._stale_views)
        self._stale_views.clear()
        if dropped:
            logger.debug("View indexes cleaned up", db=self.name, dropped=dropped)
        return dropped

    @safe
    @_drain_on_cancel
    async def compact(self) -> int:
        """Drop the bodies of all superseded revisions.

        Returns:
            Number of revisions compacted.
        """
        async with self._session() as session:
            result = await session.execute(
                update(RevisionRecord)
                .where(RevisionRecord.leaf.is_(False), RevisionRecord.body.is_not(None))
                .values(body=None)
            )
            return result.rowcount or 0
