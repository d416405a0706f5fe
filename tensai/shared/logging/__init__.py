"""tensai - Shared Logging Configuration.

Loguru-based logging module with:
- Structured JSON logging for production
- Colored console output for development
- Sync session correlation
- Automatic sensitive data redaction
"""

from loguru import logger

from .config import (
    InterceptHandler,
    configure_third_party_loggers,
    get_logger,
    setup_logger,
)
from .event_logger import (
    log_conflict_resolved,
    log_sync_cancelled,
    log_sync_failed,
    log_sync_progress,
    log_sync_started,
)

__all__ = [
    # Core logging
    "logger",
    "setup_logger",
    "get_logger",
    "InterceptHandler",
    "configure_third_party_loggers",
    # Event logging
    "log_sync_started",
    "log_sync_progress",
    "log_sync_cancelled",
    "log_sync_failed",
    "log_conflict_resolved",
]
