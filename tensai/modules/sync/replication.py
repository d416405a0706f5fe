"""
Live replication between two document database peers.

A ``Replication`` copies changes from a source to a target in one direction:

    1. read a batch from the source change feed (after the checkpoint)
    2. ask the target which leaf revisions it is missing
    3. copy those revisions with their history (new_edits=false)
    4. store the checkpoint on both peers

Once caught up it long-polls the source for further changes. Failures are
reported and retried with exponential backoff; the replication only stops
when cancelled. Cancelling is cooperative: a step that already started
(a read, a write, a checkpoint) runs to completion and only the long-poll
wait and the backoff sleep are cut short.

A ``SyncSession`` runs a push and a pull replication together.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from tensai.core.config import settings
from tensai.core.database import DESIGN_PREFIX, LOCAL_PREFIX, BulkResult, ChangesResult, DatabaseInfo
from tensai.shared.errors import AppError, ReplicationDeniedError
from tensai.shared.events import EventEmitter
from tensai.shared.logging import get_logger

logger = get_logger(__name__)

Direction = Literal["push", "pull"]
DocFilter = Callable[[dict[str, Any]], bool]
T = TypeVar("T")


class ReplicationPeer(Protocol):
    """Operations a replication needs from either side."""

    name: str

    async def info(self) -> DatabaseInfo: ...

    async def changes(
        self,
        since: Any = 0,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> ChangesResult: ...

    async def revs_diff(self, revs: dict[str, list[str]]) -> dict[str, list[str]]: ...

    async def get_revisions(self, doc_id: str, revs: Sequence[str]) -> list[dict[str, Any]]: ...

    async def bulk_insert_revisions(self, docs: Sequence[dict[str, Any]]) -> list[BulkResult]: ...

    async def get_local(self, doc_id: str) -> dict[str, Any] | None: ...

    async def put_local(self, doc_id: str, body: dict[str, Any]) -> str: ...


def parse_seq(seq: int | str | None) -> int:
    """Numeric part of an update sequence ("42-g1AAAA..." -> 42)."""
    if seq is None:
        return 0
    if isinstance(seq, int):
        return seq
    head = str(seq).split("-", 1)[0]
    return int(head) if head.isdigit() else 0


def skip_design_docs(doc: dict[str, Any]) -> bool:
    """Push filter: views are local and peers may not accept them."""
    return not doc["_id"].startswith(DESIGN_PREFIX)


@dataclass(slots=True)
class ReplicationChange:
    """Payload of the ``change`` event: one replicated batch."""

    direction: Direction
    last_seq: int | str
    docs: list[dict[str, Any]] = field(default_factory=list)


class Replication:
    """One-way live replication with checkpoints and retry.

    Events (on ``events``):
        change(ReplicationChange), paused(), active(),
        error(AppError), denied(BulkResult)
    """

    def __init__(
        self,
        source: ReplicationPeer,
        target: ReplicationPeer,
        *,
        direction: Direction,
        batch_size: int | None = None,
        doc_filter: DocFilter | None = None,
        retry_initial_delay: float | None = None,
        retry_max_delay: float | None = None,
        poll_timeout: float | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.direction = direction
        self.batch_size = batch_size or settings.sync.batch_size
        self.doc_filter = doc_filter
        self.retry_initial_delay = (
            settings.sync.retry_initial_delay if retry_initial_delay is None else retry_initial_delay
        )
        self.retry_max_delay = settings.sync.retry_max_delay if retry_max_delay is None else retry_max_delay
        self.poll_timeout = settings.sync.poll_timeout if poll_timeout is None else poll_timeout
        self.events = EventEmitter()
        self.last_seq: int | str = 0
        self._paused: bool | None = None
        self._checkpoint_loaded = False
        self._stopped = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def replication_id(self) -> str:
        key = f"{self.source.name}|{self.target.name}|{self.direction}|{self.doc_filter is not None}"
        return LOCAL_PREFIX + hashlib.md5(key.encode()).hexdigest()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"replication-{self.direction}")
        return self._task

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def cancel(self) -> None:
        """Stop replicating and wait for the step in progress to finish."""
        self._stopped.set()
        if self._task is None or self._task is asyncio.current_task():
            return
        # The step in progress finishes even if this caller is cancelled
        await asyncio.shield(self._task)

    # ---------- Checkpoints ----------

    async def _read_checkpoint(self) -> int | str:
        source_cp = await self.source.get_local(self.replication_id)
        target_cp = await self.target.get_local(self.replication_id)
        if source_cp is None or target_cp is None:
            return 0
        if source_cp.get("last_seq") != target_cp.get("last_seq"):
            # One side was reset or written by a different session
            return 0
        return source_cp.get("last_seq", 0)

    async def _write_checkpoint(self, last_seq: int | str) -> None:
        body = {"last_seq": last_seq}
        await self.target.put_local(self.replication_id, body)
        await self.source.put_local(self.replication_id, body)

    # ---------- Main loop ----------

    async def _set_paused(self, paused: bool) -> None:
        if self._paused is paused:
            return
        self._paused = paused
        await self.events.emit("paused" if paused else "active")

    async def run(self) -> None:
        await self._set_paused(False)
        while not self._stopped.is_set():
            # A fresh retrier per step resets the backoff after every success
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(AppError),
                wait=wait_exponential(multiplier=self.retry_initial_delay, max=self.retry_max_delay),
                sleep=self._backoff,
                before_sleep=self._before_retry,
            ):
                with attempt:
                    await self._step()

    async def _step(self) -> None:
        if self._stopped.is_set():
            return
        if not self._checkpoint_loaded:
            self.last_seq = await self._read_checkpoint()
            self._checkpoint_loaded = True

        batch = await self.source.changes(self.last_seq, limit=self.batch_size)
        if not batch.results:
            await self._set_paused(True)
            polled = await self._until_stopped(
                self.source.changes(self.last_seq, limit=self.batch_size, timeout=self.poll_timeout)
            )
            if polled is None or not polled.results:
                return
            batch = polled

        if self._stopped.is_set():
            return
        await self._set_paused(False)
        docs = await self._replicate(batch)
        self.last_seq = batch.last_seq
        await self._write_checkpoint(batch.last_seq)
        await self.events.emit(
            "change",
            ReplicationChange(direction=self.direction, last_seq=batch.last_seq, docs=docs),
        )

    async def _before_retry(self, retry_state: RetryCallState) -> None:
        assert retry_state.outcome is not None and retry_state.next_action is not None
        error = retry_state.outcome.exception()
        logger.warning(
            f"Replication {self.direction} failed, retrying in {retry_state.next_action.sleep:.1f}s: {error}"
        )
        await self.events.emit("error", error)
        await self._set_paused(True)

    async def _backoff(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopped.wait(), seconds)

    async def _until_stopped(self, operation: Awaitable[T]) -> T | None:
        """Await a wait-only operation, abandoning it if the replication stops first."""
        task = asyncio.ensure_future(operation)
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({task, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not task.done():
                task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            return await task
        return None

    async def _replicate(self, batch: ChangesResult) -> list[dict[str, Any]]:
        changes = [
            change
            for change in batch.results
            if self.doc_filter is None or self.doc_filter({**change.doc, "_id": change.id})
        ]
        if not changes:
            return []

        missing = await self.target.revs_diff({change.id: change.leaf_revs or [change.rev] for change in changes})
        docs: list[dict[str, Any]] = []
        for doc_id, revs in missing.items():
            docs.extend(await self.source.get_revisions(doc_id, revs))
        if not docs:
            return []

        results = await self.target.bulk_insert_revisions(docs)
        denied = {result.id for result in results if isinstance(result.error, ReplicationDeniedError)}
        for result in results:
            if result.id in denied:
                await self.events.emit("denied", result)
        return [doc for doc in docs if doc["_id"] not in denied]


class SyncSession:
    """Bidirectional live replication.

    Forwards ``change``, ``error`` and ``denied`` from both directions.
    ``paused`` is emitted once both directions are caught up, ``active``
    when either starts replicating again.
    """

    def __init__(
        self,
        local: ReplicationPeer,
        remote: ReplicationPeer,
        *,
        batch_size: int | None = None,
        push_filter: DocFilter | None = skip_design_docs,
        **options: Any,
    ) -> None:
        self.events = EventEmitter()
        self.push = Replication(
            local,
            remote,
            direction="push",
            batch_size=batch_size,
            doc_filter=push_filter,
            **options,
        )
        self.pull = Replication(remote, local, direction="pull", batch_size=batch_size, **options)
        self._paused_directions: set[str] = set()
        self._paused: bool | None = None
        self.cancelled = False

        for replication in (self.push, self.pull):
            self._forward(replication)

    def _forward(self, replication: Replication) -> None:
        direction = replication.direction
        for topic in ("change", "error", "denied"):
            replication.events.on(topic, lambda *args, _topic=topic: self.events.emit(_topic, *args))
        replication.events.on("paused", lambda: self._on_paused(direction))
        replication.events.on("active", lambda: self._on_active(direction))

    async def _on_paused(self, direction: str) -> None:
        self._paused_directions.add(direction)
        if len(self._paused_directions) == 2 and self._paused is not True:
            self._paused = True
            await self.events.emit("paused")

    async def _on_active(self, direction: str) -> None:
        self._paused_directions.discard(direction)
        if self._paused is not False:
            self._paused = False
            await self.events.emit("active")

    def on(self, topic: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(topic, handler)

    def start(self) -> None:
        self.push.start()
        self.pull.start()

    async def cancel(self) -> None:
        """Stop both directions and drop all handlers."""
        self.cancelled = True
        self.events.clear()
        await asyncio.gather(self.push.cancel(), self.pull.cancel())
