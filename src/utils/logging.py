"""
Logging setup for change feed runs.

Provides JSON-structured logging with a run id propagated through a context
variable, so every line of one read pass can be correlated.
"""

import json
import logging
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for run ID propagation
_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_run_id() -> Optional[str]:
    """Get the current run ID from context."""
    return _run_id.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set run ID in context.

    Args:
        run_id: Optional run ID. If None, generates a new UUID.

    Returns:
        The run ID that was set
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    _run_id.set(run_id)
    return run_id


def clear_run_id():
    """Clear the run ID from context."""
    _run_id.set(None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as one JSON line.

        Fields passed with ``extra={...}`` are merged into the top level.
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'function': record.funcName,
            'line': record.lineno,
        }

        run_id = get_run_id()
        if run_id:
            log_data['run_id'] = run_id

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure the root logger once for a process.

    Args:
        level: Log level name
        json_format: Emit JSON lines (for log shippers) instead of plain text
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


class RunContext:
    """Context manager that stamps a run ID on every log line inside it."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        self._previous_id = get_run_id()
        return set_run_id(self.run_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous_id is not None:
            set_run_id(self._previous_id)
        else:
            clear_run_id()
