"""tensai - Event Logger.

Structured event logging for replication and conflict handling.
Provides type-safe logging functions for observability.
"""

from loguru import logger


def log_sync_started(
    remote: str,
    local_seq: int,
    remote_seq: int,
    *,
    batch_size: int | None = None,
) -> None:
    """Log the start of a live sync session.

    Args:
        remote: Display name of the remote replica
        local_seq: Local update sequence at connection time
        remote_seq: Remote update sequence at connection time
        batch_size: Optional replication batch size
    """
    logger.info(
        "Sync session started",
        event="sync.started",
        remote=remote,
        local_seq=local_seq,
        remote_seq=remote_seq,
        batch_size=batch_size,
    )


def log_sync_progress(
    direction: str,
    docs: int,
    last_seq: int | str,
    progress: float | None,
) -> None:
    """Log a replicated batch.

    Args:
        direction: "push" or "pull"
        docs: Number of documents written by the batch
        last_seq: Source sequence reached by the batch
        progress: Initial sync progress fraction, None when indeterminate
    """
    logger.debug(
        "Sync batch replicated",
        event="sync.progress",
        direction=direction,
        docs=docs,
        last_seq=last_seq,
        progress=progress,
    )


def log_sync_cancelled(remote: str) -> None:
    """Log cancellation of a live sync session.

    Args:
        remote: Display name of the remote replica
    """
    logger.info(
        "Sync session cancelled",
        event="sync.cancelled",
        remote=remote,
    )


def log_sync_failed(
    remote: str,
    error: str,
    *,
    error_type: str | None = None,
    recoverable: bool = True,
) -> None:
    """Log a sync failure.

    Args:
        remote: Display name of the remote replica
        error: Error message describing the failure
        error_type: Optional error class name
        recoverable: Whether the session keeps retrying
    """
    log_func = logger.warning if recoverable else logger.error
    log_func(
        "Sync failed",
        event="sync.failed",
        remote=remote,
        error=error,
        error_type=error_type,
        recoverable=recoverable,
    )


def log_conflict_resolved(
    doc_id: str,
    winner_rev: str,
    losing_revs: list[str],
) -> None:
    """Log the resolution of a replication conflict.

    Args:
        doc_id: Id of the conflicted document
        winner_rev: Revision kept
        losing_revs: Revisions discarded
    """
    logger.info(
        "Conflict resolved",
        event="conflict.resolved",
        doc_id=doc_id,
        winner_rev=winner_rev,
        losing_revs=losing_revs,
    )
