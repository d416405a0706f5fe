"""
Context variables for correlating log records across the store.

Sync sessions run as long-lived background tasks; every record they emit
carries the id of the session that produced it so that output from a
superseded session can be told apart from the current one.
"""

from contextvars import ContextVar

sync_session_var: ContextVar[str] = ContextVar("sync_session", default="")


def get_sync_session() -> str:
    """Get the current sync session id.

    Returns:
        Session id string or empty string if not set.
    """
    return sync_session_var.get()


def set_sync_session(session_id: str) -> None:
    """Set the sync session id in context.

    Args:
        session_id: Session id to set.
    """
    sync_session_var.set(session_id)
