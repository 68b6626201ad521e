"""JSON logger helpers with request trace support."""
from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_TRACE_ID: "contextvars.ContextVar[Optional[str]]" = contextvars.ContextVar("trace_id", default=None)
_CONFIGURED = False

_RESERVED_ATTRS = frozenset(
    {
        "args",
        "levelname",
        "levelno",
        "msg",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "asctime",
        "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """Serialize log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        trace_id = getattr(record, "trace_id", None) or _TRACE_ID.get()
        if trace_id:
            payload["trace_id"] = trace_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED_ATTRS:
                continue
            payload.setdefault(key, value)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def bind_trace_id(trace_id: Optional[str]) -> None:
    _TRACE_ID.set(trace_id)


def clear_trace_id() -> None:
    _TRACE_ID.set(None)


def current_trace_id() -> Optional[str]:
    return _TRACE_ID.get()


def log_job_event(logger: logging.Logger, *, job_id: str, event: str, status: str, **details: Any) -> None:
    """Record a job lifecycle transition with a uniform shape."""

    logger.info(
        event,
        extra={"job_id": job_id, "job_status": status, "details": details or None},
    )
