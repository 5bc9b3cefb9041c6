"""Structured logging setup for the bid analysis pipeline."""

import contextvars
import logging
from pathlib import Path
from typing import Any, Dict, Optional

# Context is per asyncio task so concurrent model calls keep their own fields
_log_context: contextvars.ContextVar = contextvars.ContextVar("bidcore_log_context", default={})

CONTEXT_FIELDS = ("request_id", "model_id", "task_type")


class ContextFilter(logging.Filter):
    """Add context information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        for key in CONTEXT_FIELDS:
            setattr(record, key, context.get(key, "-"))
        for key, value in context.items():
            setattr(record, key, value)
        return True


_context_filter = ContextFilter()

# Third-party loggers that flood the output below INFO
NOISY_LOGGERS = ("botocore", "urllib3", "PyPDF2")


def _attach(root: logging.Logger, handler: logging.Handler, level: int, fmt: str) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(_context_filter)
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the root logger for the pipeline.

    Context fields (request_id, model_id, task_type) are available to the
    format string and default to "-" outside a request.

    Args:
        level: Logging level name; unknown names fall back to INFO
        log_format: Format string for log messages
        log_file: Optional path of a log file, created with its parent directory

    Returns:
        Configured root logger
    """
    threshold = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(threshold)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    _attach(root, logging.StreamHandler(), threshold, log_format)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _attach(root, logging.FileHandler(log_file), threshold, log_format)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(threshold, logging.INFO))

    return root


def get_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def set_context(**kwargs):
    """
    Set context fields for subsequent log messages in the current task.

    Example:
        set_context(request_id="bid-42", task_type="takeoff")
        logger.info("Starting consensus round")
    """
    context = dict(_log_context.get())
    context.update(kwargs)
    _log_context.set(context)


def clear_context():
    """Clear all context fields."""
    _log_context.set({})
