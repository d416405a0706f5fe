"""Schemas for the sync module."""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import Field

from tensai.shared.schemas import BaseSchema


class SyncState(StrEnum):
    """Enumeration of sync coordinator states."""

    IDLE = "idle"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    SYNCING_INITIAL = "syncing_initial"
    SYNCING_STEADY = "syncing_steady"
    ERROR = "error"


class SyncCallbacks(BaseSchema):
    """Handlers for one sync session.

    Each handler may be a plain function or a coroutine function. Handlers
    are never called synchronously from ``set_remote`` and never after the
    session has been superseded.

    Attributes:
        on_progress: Initial sync progress in [0, 1], or None when it
            cannot be determined.
        on_idle: Both directions caught up.
        on_active: Replication resumed.
        on_error: A replication or validation error.
    """

    on_progress: Callable[[float | None], Any] | None = Field(default=None, description="Progress handler")
    on_idle: Callable[[], Any] | None = Field(default=None, description="Caught-up handler")
    on_active: Callable[[], Any] | None = Field(default=None, description="Resumed handler")
    on_error: Callable[[Exception], Any] | None = Field(default=None, description="Error handler")
