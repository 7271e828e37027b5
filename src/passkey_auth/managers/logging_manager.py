"""
Centralized logging manager for the application.

Handlers attached by get_logger():
- Console (stdout) StreamHandler, always.
- Per-worker log file in LOG_DIR when LOG_TO_FILE is enabled. One file per
  process so several uvicorn workers never interleave writes.
- LokiLoggerHandler when LOKI_URL is configured. Logs produced while Loki is
  unreachable are dropped by the handler; the console and file copies remain.

Usage:
- Use get_logger(prefix="[Component]") to obtain a logger instance. The prefix is
  prepended to every message emitted through that logger.
"""

import logging
import os
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from passkey_auth.config import settings

DEFAULT_LOGGER_NAME: str = "Passkey_Auth"
LOG_FORMAT: str = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
LOKI_TAGS: dict[str, str] = {
    "app": os.getenv("APP_NAME", settings.APP_NAME),
    "env": os.getenv("ENV", settings.ENV),
}


class PrefixFilter(logging.Filter):
    """Prepend a fixed prefix to each record passing through a logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return True


def get_worker_log_filename() -> str:
    return os.path.join(settings.LOG_DIR, f"worker_{os.getpid()}.log")


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter) -> None:
    log_filename = os.path.abspath(get_worker_log_filename())
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == log_filename
        for h in logger.handlers
    ):
        return
    try:
        os.makedirs(os.path.dirname(log_filename), exist_ok=True)
        file_handler = logging.FileHandler(log_filename)
    except OSError as e:
        logger.warning("[LoggingManager] Could not open worker log file %s: %s", log_filename, e)
        return
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def _ensure_loki_handler(logger: logging.Logger) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=settings.LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        return
    logger.addHandler(loki_handler)
    logger.info(
        "[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s, labels=%s)",
        logger.name,
        settings.LOKI_URL,
        LOKI_TAGS,
    )


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Logger name; loggers sharing a name share their handlers
        add_loki: Attach the Loki handler when LOKI_URL is configured
        prefix: Text prepended to every message, e.g. "[Challenge Lifecycle]"

    Returns:
        logging.Logger: The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    _ensure_console_handler(logger, formatter)

    if settings.LOG_TO_FILE:
        _ensure_file_handler(logger, formatter)

    if add_loki and settings.LOKI_URL:
        _ensure_loki_handler(logger)

    if prefix:
        # Loggers are shared by name, so the prefix lives on a child logger.
        child = logging.getLogger(f"{name}.{prefix.strip('[]').replace(' ', '_')}")
        child.setLevel(logger.level)
        if not any(isinstance(f, PrefixFilter) for f in child.filters):
            child.addFilter(PrefixFilter(prefix))
        return child

    return logger
