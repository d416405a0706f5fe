"""
Sync coordinator.

Owns the single live sync session of a store. Replacing or clearing the
remote cancels the running session; every session gets an identity token
and events carrying a stale token are dropped, so a cancelled session never
reaches the new session's callbacks even if some of its I/O is still
draining.

States:
    IDLE -> VALIDATING -> CONNECTING -> SYNCING_INITIAL -> SYNCING_STEADY
    any state -> IDLE (cleared or cancelled), CONNECTING -> ERROR
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from tensai.core.config import settings
from tensai.core.database import DocumentDatabase
from tensai.shared.context import sync_session_var
from tensai.shared.errors import AppError, InvalidRemoteError
from tensai.shared.ids import generate_id
from tensai.shared.logging import (
    get_logger,
    log_sync_cancelled,
    log_sync_failed,
    log_sync_progress,
    log_sync_started,
)

from .conflicts import ConflictResolver
from .remote import RemoteDatabase
from .replication import ReplicationChange, SyncSession, parse_seq
from .schemas import SyncCallbacks, SyncState

logger = get_logger(__name__)

SyncTarget = str | DocumentDatabase | RemoteDatabase | None


class ProgressTracker:
    """Initial sync progress between the two update sequences at connect time.

    Once the sync is caught up, or the sequence stops being a usable
    measure (equal bounds, or a sequence below the lower bound as happens
    when both sides have changes), progress is indeterminate for the rest of
    the session.
    """

    def __init__(self, local_seq: int, remote_seq: int) -> None:
        self.lower = min(local_seq, remote_seq)
        self.upper = max(local_seq, remote_seq)
        self.active = True

    def stop(self) -> None:
        self.active = False

    def update(self, last_seq: int | str) -> float | None:
        if not self.active:
            return None
        current = parse_seq(last_seq)
        if current < self.lower or self.upper == self.lower:
            self.active = False
            return None
        return min((current - self.lower) / (self.upper - self.lower), 1.0)


class SyncCoordinator:
    """Configure and run live sync against one remote at a time.

    Example:
        coordinator = SyncCoordinator(db, ConflictResolver(db))
        await coordinator.set_remote(
            "https://couch.example.com/cards",
            SyncCallbacks(on_progress=print, on_error=log_error),
        )
        ...
        await coordinator.set_remote(None)
    """

    def __init__(self, db: DocumentDatabase, resolver: ConflictResolver) -> None:
        self._db = db
        self._resolver = resolver
        self._remote: DocumentDatabase | RemoteDatabase | None = None
        self._owns_remote = False
        self._session: SyncSession | None = None
        self._token: object | None = None
        self._state = SyncState.IDLE
        self._pending: set[asyncio.Future[Any]] = set()

    @property
    def remote(self) -> DocumentDatabase | RemoteDatabase | None:
        """The remote currently synced with."""
        return self._remote

    @property
    def state(self) -> SyncState:
        return self._state

    # ---------- Configuration ----------

    @staticmethod
    def _validate(target: Any) -> str | DocumentDatabase | RemoteDatabase | None:
        if target is None:
            return None
        if isinstance(target, str):
            target = target.strip()
            if not target:
                return None
            if not any(target.startswith(scheme) for scheme in settings.sync.allowed_schemes_list):
                raise InvalidRemoteError(
                    "Only http and https remote servers are recognized",
                    details={"remote": target},
                )
            return target
        if isinstance(target, DocumentDatabase | RemoteDatabase):
            return target
        raise InvalidRemoteError(
            "Unrecognized type of sync server",
            details={"value": type(target).__name__},
        )

    async def set_remote(
        self,
        target: SyncTarget,
        callbacks: SyncCallbacks | None = None,
        *,
        username: str | None = None,
        password: str | None = None,
        batch_size: int | None = None,
    ) -> None:
        """
        Replace the sync remote and start live sync with it.

        Args:
            target: http(s) URL, database handle, or None/"" to disconnect
            callbacks: Session callbacks
            username: Basic auth user for URL targets
            password: Basic auth password for URL targets
            batch_size: Documents per replication batch

        Raises:
            InvalidRemoteError: Unsupported target; the current session is
                left untouched
            ReplicationError: The remote could not be reached
        """
        callbacks = callbacks or SyncCallbacks()
        previous_state = self._state
        self._state = SyncState.VALIDATING
        try:
            validated = self._validate(target)
        except InvalidRemoteError as e:
            self._state = previous_state
            self._call_soon(callbacks.on_error, e)
            raise

        await self._disconnect()
        if validated is None:
            return

        token = object()
        self._token = token
        if isinstance(validated, str):
            remote: DocumentDatabase | RemoteDatabase = RemoteDatabase(
                validated, username=username, password=password
            )
            self._owns_remote = True
        else:
            remote = validated
            self._owns_remote = False
        self._remote = remote
        self._state = SyncState.CONNECTING

        try:
            local_info = await self._db.info()
            remote_info = await remote.info()
        except AppError as e:
            if self._token is not token:
                # Superseded while connecting
                return
            await self._disconnect()
            self._state = SyncState.ERROR
            log_sync_failed(remote.name, str(e), error_type=type(e).__name__, recoverable=False)
            self._call_soon(callbacks.on_error, e)
            raise

        if self._token is not token:
            return

        tracker = ProgressTracker(local_info.update_seq, parse_seq(remote_info.update_seq))
        session = SyncSession(self._db, remote, batch_size=batch_size)
        self._session = session
        self._bind(session, token, tracker, callbacks)
        self._state = SyncState.SYNCING_INITIAL

        # Replication tasks inherit the session id for log correlation
        context_token = sync_session_var.set(generate_id())
        try:
            session.start()
            log_sync_started(
                remote.name,
                local_info.update_seq,
                parse_seq(remote_info.update_seq),
                batch_size=batch_size,
            )
        finally:
            sync_session_var.reset(context_token)

    def _bind(
        self,
        session: SyncSession,
        token: object,
        tracker: ProgressTracker,
        callbacks: SyncCallbacks,
    ) -> None:
        async def on_change(change: ReplicationChange) -> None:
            if self._token is not token:
                return
            if change.direction == "pull" and change.docs:
                try:
                    await self._resolver.resolve_docs(change.docs)
                except AppError as e:
                    logger.warning(f"Conflict resolution failed: {e}")
                if self._token is not token:
                    return
            progress = tracker.update(change.last_seq)
            log_sync_progress(change.direction, len(change.docs), change.last_seq, progress)
            self._dispatch(token, callbacks.on_progress, progress)

        def on_paused() -> None:
            if self._token is not token:
                return
            tracker.stop()
            self._state = SyncState.SYNCING_STEADY
            self._dispatch(token, callbacks.on_idle)

        def on_active() -> None:
            self._dispatch(token, callbacks.on_active)

        def on_error(error: AppError) -> None:
            if self._token is not token or self._remote is None:
                return
            log_sync_failed(self._remote.name, str(error), error_type=type(error).__name__)
            self._dispatch(token, callbacks.on_error, error)

        def on_denied(result: Any) -> None:
            self._dispatch(token, callbacks.on_error, result.error)

        session.on("change", on_change)
        session.on("paused", on_paused)
        session.on("active", on_active)
        session.on("error", on_error)
        session.on("denied", on_denied)

    # ---------- Callback delivery ----------

    def _call_soon(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is not None:
            asyncio.get_running_loop().call_soon(self._invoke, callback, args)

    def _dispatch(self, token: object, callback: Callable[..., Any] | None, *args: Any) -> None:
        """Deliver on the next loop iteration, unless the session is superseded by then."""
        if callback is None:
            return

        def deliver() -> None:
            if self._token is token:
                self._invoke(callback, args)

        asyncio.get_running_loop().call_soon(deliver)

    def _invoke(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Sync callback failed")
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._callback_done)

    def _callback_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.opt(exception=future.exception()).error("Sync callback failed")

    # ---------- Teardown ----------

    async def _disconnect(self) -> None:
        session, remote, owns_remote = self._session, self._remote, self._owns_remote
        # Drop the token first so nothing from the old session gets through
        self._token = None
        self._session = None
        self._remote = None
        self._owns_remote = False
        self._state = SyncState.IDLE

        if session is not None:
            await session.cancel()
            log_sync_cancelled(remote.name if remote is not None else "")
        if owns_remote and isinstance(remote, RemoteDatabase):
            await remote.close()

    async def close(self) -> None:
        """Cancel sync and wait for callbacks already handed out."""
        await self._disconnect()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
