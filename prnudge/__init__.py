"""PRNudge - Keeps pull requests moving by nudging whoever is blocking them."""

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

# Workflow run being logged, "-" outside a run
current_run_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "current_run_id", default="-"
)

# Repository ("acme/api") or pull request ("acme/api#7") being worked on
current_target: contextvars.ContextVar[str] = contextvars.ContextVar(
    "current_target", default="-"
)


@contextmanager
def log_target(target: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with a repository or PR."""
    token = current_target.set(target)
    try:
        yield
    finally:
        current_target.reset(token)


class LogContextFilter(logging.Filter):
    """Copies the run id and the current target onto log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = current_run_id.get("-")
        record.target = current_target.get("-")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", "-"),
            "target": getattr(record, "target", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(level: Optional[str] = None, log_format: str = "text") -> logging.Logger:
    """Configure the prnudge logger.

    Args:
        level: Log level name, INFO when not given.
        log_format: 'text' for a console line per record, 'json' for JSONFormatter.

    Returns:
        The prnudge logger.
    """
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | run=%(run_id)s %(target)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(LogContextFilter())

    logger = logging.getLogger("prnudge")
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger


__version__ = "0.1.0"
__all__ = [
    "setup_logging",
    "log_target",
    "current_run_id",
    "current_target",
    "LogContextFilter",
    "JSONFormatter",
    "__version__",
]
