"""Sync module: live replication with a remote replica."""

from .conflicts import ConflictResolver, DEFAULT_POLICIES
from .remote import RemoteDatabase
from .replication import Replication, ReplicationChange, SyncSession, parse_seq, skip_design_docs
from .schemas import SyncCallbacks, SyncState
from .service import ProgressTracker, SyncCoordinator

__all__ = [
    "ConflictResolver",
    "DEFAULT_POLICIES",
    "ProgressTracker",
    "RemoteDatabase",
    "Replication",
    "ReplicationChange",
    "SyncCallbacks",
    "SyncCoordinator",
    "SyncSession",
    "SyncState",
    "parse_seq",
    "skip_design_docs",
]
