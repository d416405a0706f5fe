"""tensai - Logger Configuration.

Loguru-based structured logging configuration.

This module configures a unified logger for the store:
- Loguru for application logs (pretty format, colors, structured data)
- Intercept handler for third-party library logs (sqlalchemy, aiosqlite, httpx)
- Sync session correlation via context variables
"""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import TYPE_CHECKING, Any

from loguru import logger

from tensai.shared.context import sync_session_var

if TYPE_CHECKING:
    from tensai.core.config import Settings

# Placeholder when no sync session is active
NO_SESSION = "-"

# Sensitive field patterns for redaction
SENSITIVE_PATTERNS = re.compile(
    r"(password|token|secret|auth|credential)",
    re.IGNORECASE,
)

# Cache for settings to avoid repeated imports
_settings_cache: Settings | None = None


def _get_settings() -> Settings:
    """Get settings lazily to avoid circular imports."""
    global _settings_cache
    if _settings_cache is None:
        from tensai.core.config import settings
        _settings_cache = settings
    return _settings_cache


class InterceptHandler(logging.Handler):
    """Handler for intercepting standard logging and redirecting to Loguru.

    SQLAlchemy, aiosqlite and httpx use the standard logging module.
    To have all logs in unified Loguru format, we intercept them through this handler.
    """

    def emit(self, record: logging.LogRecord) -> None:
        """Process a single log record from standard logging.

        Args:
            record: Log record from standard logging with all information
                   (level, message, file, line, exception, etc.)
        """
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        frame = logging.currentframe()
        depth = 2

        if frame:
            while frame.f_code.co_filename == logging.__file__:
                if frame.f_back:
                    frame = frame.f_back
                    depth += 1
                else:
                    break

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _session_patcher(record: dict[str, Any]) -> None:
    """Inject the current sync session id into every record."""
    record["extra"].setdefault("sync_session", sync_session_var.get() or NO_SESSION)


def _redact_sensitive_value(key: str, value: Any) -> Any:
    """Redact sensitive values based on key name.

    Args:
        key: The field name
        value: The field value

    Returns:
        Redacted value if sensitive, original value otherwise
    """
    if SENSITIVE_PATTERNS.search(key):
        return "***REDACTED***"
    return value


def _create_json_sink(service_name: str) -> Any:
    """Create a JSON sink for stdout logging.

    Args:
        service_name: Name of the service for log entries

    Returns:
        Sink function for Loguru
    """
    def json_sink(message: Any) -> None:
        """Write JSON formatted log to stdout."""
        record = message.record
        log_entry: dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name,
            "message": record["message"],
            "module": record["extra"].get("name", record["name"]),
            "function": record["function"],
            "line": record["line"],
            "sync_session": record["extra"].get("sync_session", NO_SESSION),
            "service": service_name,
        }

        excluded_keys = {"sync_session", "name"}
        for key, value in record["extra"].items():
            if key not in excluded_keys:
                log_entry[key] = _redact_sensitive_value(key, value)

        if record.get("exception"):
            exc = record["exception"]
            log_entry["exception"] = {
                "type": exc.type.__name__ if exc.type else None,
                "value": str(exc.value) if exc.value else None,
            }

        sys.stdout.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
        sys.stdout.flush()

    return json_sink


def setup_logger() -> None:
    """Configure Loguru logger.

    Sets up:
    - Console handler with colored output (dev) or JSON format (prod)
    - Sync session correlation
    - Third-party library log interception
    - Thread-safe async logging with enqueue=True
    """
    settings = _get_settings()

    logger.remove()
    logger.configure(patcher=_session_patcher)

    is_prod = settings.logging.format.lower() == "json"

    if is_prod:
        logger.add(
            _create_json_sink(settings.app.name),
            level=settings.logging.level.upper(),
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )
    else:
        dev_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level> | "
            "<dim>sync={extra[sync_session]}</dim>"
        )
        logger.add(
            sys.stdout,
            format=dev_format,
            level=settings.logging.level.upper(),
            colorize=True,
            backtrace=True,
            diagnose=settings.app.debug,
            enqueue=True,
        )

    configure_third_party_loggers()

    logger.info(
        "Logger configured",
        level=settings.logging.level,
        format="json" if is_prod else "console",
    )


def configure_third_party_loggers() -> None:
    """Route third-party standard logging through Loguru.

    SQLAlchemy echoes every statement at INFO and aiosqlite is chatty at
    DEBUG, so both are capped at WARNING.
    """
    logging.root.handlers = []
    logging.root.setLevel(logging.INFO)

    loggers_to_configure = [
        "",
        "sqlalchemy",
        "sqlalchemy.engine",
        "aiosqlite",
        "httpx",
        "httpcore",
    ]

    for logger_name in loggers_to_configure:
        logging_logger = logging.getLogger(logger_name)
        logging_logger.handlers.clear()
        logging_logger.addHandler(InterceptHandler())
        logging_logger.propagate = False

        if logger_name in ["sqlalchemy", "sqlalchemy.engine", "aiosqlite"]:
            logging_logger.setLevel(logging.WARNING)
        elif logger_name in ["httpx", "httpcore"]:
            logging_logger.setLevel(logging.WARNING)
        else:
            logging_logger.setLevel(logging.INFO)

    logger.debug("Third-party loggers configured")


def get_logger(name: str):
    """Get a logger with the specified name.

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        Configured Loguru logger with bound name
    """
    return logger.bind(name=name)
