"""Context variables for error handling.

Re-exports from shared.context for consistency.
"""

from tensai.shared.context import sync_session_var

__all__ = ["sync_session_var"]
