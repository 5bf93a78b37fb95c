"""Logging setup shared by the CLI, the queue and the proxy.

Every log line carries two correlation ids held in context variables:
``record_id`` (the queue record being submitted or polled) and
``request_id`` (the proxy request being served). asyncio tasks copy the
context at creation, so ids set inside a task never leak into its siblings.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

_ctx_record_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("record_id", default=None)
_ctx_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [record=%(record_id)s request=%(request_id)s] %(message)s"


class _ContextFilter(logging.Filter):
    """Copy the context ids onto each record so formatters can use them."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_log_context()
        record.record_id = context["record_id"] or "-"
        record.request_id = context["request_id"] or "-"
        return True


class _JsonLogFormatter(logging.Formatter):
    """Serialize log records into single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_context = get_log_context()
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "record_id": log_context["record_id"],
            "request_id": log_context["request_id"],
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: Union[int, str] = logging.INFO, json_format: bool = False) -> None:
    """Install a single stdout handler on the root logger.

    Safe to call repeatedly (the CLI calls it once per invocation, tests may
    call it many times); previous handlers are replaced.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_nano_studio", False):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(_ContextFilter())
    handler.setFormatter(_JsonLogFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    handler._nano_studio = True
    root_logger.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.setLevel(level)
        uvicorn_logger.propagate = True

    # Per-request httpx lines drown out queue logs at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def set_record_context(record_id: Optional[str]) -> contextvars.Token:
    """Set the queue record id for log lines emitted in this context."""
    return _ctx_record_id.set(record_id)


def reset_record_context(token: contextvars.Token) -> None:
    _ctx_record_id.reset(token)


def set_request_id(value: Optional[str]) -> contextvars.Token:
    """Set the current proxy request identifier in the logging context."""
    return _ctx_request_id.set(value)


def reset_request_id(token: contextvars.Token) -> None:
    _ctx_request_id.reset(token)


def get_log_context() -> Dict[str, Any]:
    """Return a shallow copy of the current logging context values."""
    return {
        "record_id": _ctx_record_id.get(),
        "request_id": _ctx_request_id.get(),
    }
