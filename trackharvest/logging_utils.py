"""Structured logging helpers shared across the application."""

from __future__ import annotations

import contextvars
import logging
from typing import Any
from uuid import uuid4

REQUEST_ID_HEADER = "x-request-id"
_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trackharvest_request_id",
    default="-",
)
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"


class _RequestIdFilter(logging.Filter):
    """Fill ``request_id`` on records emitted outside ``log_event``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


def configure_logging(level: int | str = logging.INFO) -> None:
    """Attach a stream handler to the package logger once."""
    package_logger = logging.getLogger("trackharvest")
    package_logger.setLevel(level)
    if any(getattr(handler, "_trackharvest", False) for handler in package_logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(_RequestIdFilter())
    handler._trackharvest = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)


def build_request_id(header_value: str | None) -> str:
    """Return a normalized request id from an incoming header value."""
    candidate = (header_value or "").strip()
    if not candidate:
        return uuid4().hex
    return candidate[:128]


def set_request_id(request_id: str) -> contextvars.Token[str]:
    """Store the request id in request-local context."""
    return _REQUEST_ID.set(request_id)


def reset_request_id(token: contextvars.Token[str]) -> None:
    """Reset request-local context to the previous request id."""
    _REQUEST_ID.reset(token)


def get_request_id() -> str:
    """Return the current request id from context."""
    return _REQUEST_ID.get()


def preview(value: str | None, limit: int = 120) -> str | None:
    """Shorten long values (URLs, page text) before they are logged."""
    if value is None or len(value) <= limit:
        return value
    return f"{value[: limit - 3]}..."


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event with request context fields."""
    payload: dict[str, Any] = {
        "event": event,
        "request_id": get_request_id(),
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, event, extra=payload, exc_info=exc_info)
