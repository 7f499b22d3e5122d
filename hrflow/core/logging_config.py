"""
Structured Logging Configuration for HRFlow

Provides:
- JSON logs for production, readable lines for development
- Correlation fields (request_id, run_id) carried through context variables,
  so every line written while a run advances names that run
- Console handler plus an optional file handler
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
})


def _correlation_fields() -> Dict[str, str]:
    fields = {}
    request_id = request_id_var.get()
    if request_id:
        fields["request_id"] = request_id
    run_id = run_id_var.get()
    if run_id:
        fields["run_id"] = run_id
    return fields


class JSONFormatter(logging.Formatter):
    """
    Outputs one JSON object per record.

    Keys: timestamp, level, logger, message, the correlation ids that are
    set, exception text, and a `context` object with any `extra` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_correlation_fields())

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Format: [TIMESTAMP] LEVEL - logger - message (run_id=..., request_id=...)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        fields = _correlation_fields()
        if fields:
            base += " (" + ", ".join(f"{k}={v}" for k, v in fields.items()) + ")"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure the root logger for HRFlow processes.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Use the JSON formatter (production) instead of the standard one
        log_file: Optional file path to also write logs to

    Environment Variables:
        LOG_LEVEL: Override log level
        JSON_LOGS: "true" enables JSON logging
        LOG_FILE: File path for log output
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "level": level,
            "json_logs": json_logs,
            "log_file": log_file or "none"
        }
    )


def set_request_id(request_id: Optional[str]) -> None:
    """Set the request ID for the current context (None clears it)."""
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_run_id() -> Optional[str]:
    return run_id_var.get()


@contextmanager
def run_log_context(run_id: str) -> Iterator[None]:
    """
    Tag every log line emitted inside the block with `run_id`.

    Usage:
        with run_log_context(run.id):
            logger.info("Dispatching frontier")
    """
    token = run_id_var.set(run_id)
    try:
        yield
    finally:
        run_id_var.reset(token)
