"""Structured log events for database access, delivery and webhook handling."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional


EVENT_LOGGER = logging.getLogger("course_relay.events")

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a short loggable form of *value*, or ``None`` when it is empty."""

    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple, set)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def _clean(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        value = sanitize_context_value(raw)
        if key and value is not None:
            cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = EVENT_LOGGER,
) -> None:
    """Log ``[TYPE] message (key=value, ...)`` with the fields attached as ``event_*``."""

    context_fields = _clean(context)
    payload_fields = _clean(payload)
    details = ", ".join(f"{key}={value}" for key, value in {**context_fields, **payload_fields}.items())
    text = f"[{event_type}] {str(message).strip()}"
    if details:
        text = f"{text} ({details})"

    extra: Dict[str, Any] = {
        "event_type": event_type,
        "event_context": context_fields,
        "event_payload": payload_fields,
    }
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, text, extra=extra)


def emit_db_event(action: str, *, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
    kwargs.setdefault("level", logging.DEBUG)
    emit_structured_event("DB_QUERY", action, context=context, **kwargs)


def emit_relay_event(outcome: str, *, user_id: str, **kwargs: Any) -> None:
    emit_structured_event("RELAY", outcome, context={"user_id": user_id}, **kwargs)


def emit_webhook_event(source: str, message: str, **kwargs: Any) -> None:
    emit_structured_event("WEBHOOK", message, context={"source": source}, **kwargs)


__all__ = [
    "EVENT_LOGGER",
    "emit_db_event",
    "emit_relay_event",
    "emit_structured_event",
    "emit_webhook_event",
    "sanitize_context_value",
]
