"""Logging configuration with per-session context."""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from pydantic import BaseModel, Field

_current_session: ContextVar[str] = ContextVar("current_session", default="-")


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(session_id)s] %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    quiet_loggers: list[str] = ["anthropic", "httpx", "httpcore", "uvicorn.access"]


class SessionContextFilter(logging.Filter):
    """Stamps each record with the session being served, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _current_session.get()
        return True


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block (and tasks it starts) with a session id."""
    token = _current_session.set(session_id)
    try:
        yield
    finally:
        _current_session.reset(token)


def setup_logging(config: LogConfig | None = None) -> None:
    """Set up logging configuration for the service."""
    config = config or LogConfig()

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(SessionContextFilter())

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)
        level: Optional level override, defaults to the LOG_LEVEL env var

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    log_level = level if level else os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(log_level.upper())

    return logger
