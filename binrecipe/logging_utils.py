"""Structured logging helpers shared across the application."""

from __future__ import annotations

import contextvars
import logging
import sys
from typing import Any
from uuid import uuid4

LOGGER_NAME = "binrecipe"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(run_id)s] %(message)s"
_RUN_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "binrecipe_run_id",
    default="-",
)


def build_run_id() -> str:
    """Return a fresh id for one install run."""
    return uuid4().hex


def set_run_id(run_id: str) -> contextvars.Token[str]:
    """Store the run id in the current context."""
    return _RUN_ID.set(run_id)


def reset_run_id(token: contextvars.Token[str]) -> None:
    """Reset the context to the previous run id."""
    _RUN_ID.reset(token)


def get_run_id() -> str:
    """Return the current run id from context."""
    return _RUN_ID.get()


class _RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = get_run_id()
        return True


def configure_logging(*, verbose: bool = False) -> None:
    """Attach a stderr handler to the package logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO if verbose else logging.ERROR)
    for handler in logger.handlers:
        if getattr(handler, "_binrecipe_handler", False):
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_RunIdFilter())
    handler._binrecipe_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event with run context fields."""
    payload: dict[str, Any] = {
        "event": event,
        "run_id": get_run_id(),
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, event, extra=payload, exc_info=exc_info)
