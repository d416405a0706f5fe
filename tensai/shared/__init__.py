"""
Shared module - cross-cutting concerns and utilities.

This module provides shared functionality used across the store:
- Context variables for sync session correlation
- Logging utilities with Loguru
- Identifier generation
- Topic-based event emitter
"""

from .context import get_sync_session, set_sync_session, sync_session_var
from .events import EventEmitter
from .ids import IdGenerator, generate_id
from .logging import (
    get_logger,
    log_conflict_resolved,
    log_sync_cancelled,
    log_sync_failed,
    log_sync_progress,
    log_sync_started,
    logger,
    setup_logger,
)

__all__ = [
    # Context
    "get_sync_session",
    "set_sync_session",
    "sync_session_var",
    # Events
    "EventEmitter",
    # Identifiers
    "IdGenerator",
    "generate_id",
    # Logging
    "logger",
    "setup_logger",
    "get_logger",
    "log_sync_started",
    "log_sync_progress",
    "log_sync_cancelled",
    "log_sync_failed",
    "log_conflict_resolved",
]
