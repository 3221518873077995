"""Event helper functions for creating and validating Event objects."""

import json
import math
import time
from typing import Any

from loglens.core.exceptions import ValidationError
from loglens.core.models import Event, Level

DEFAULT_MAX_EVENT_BYTES = 64 * 1024


def encoded_size(event: Event) -> int:
    """Return the size in bytes of the event's JSON encoding."""
    return len(json.dumps(event.to_dict(), default=str).encode("utf-8"))


def validate_event(event: Event, max_bytes: int = DEFAULT_MAX_EVENT_BYTES) -> None:
    """Check an event before it is stored.

    Raises:
        ValidationError: If the timestamp is absent or not finite, or the
            encoded event exceeds max_bytes.
    """
    if not isinstance(event, Event):
        raise ValidationError(f"expected an Event, got {type(event).__name__}")
    if event.timestamp is None:
        raise ValidationError("event timestamp is required")
    if not math.isfinite(event.timestamp):
        raise ValidationError(f"event timestamp must be finite, got {event.timestamp}")
    size = encoded_size(event)
    if size > max_bytes:
        raise ValidationError(f"event is {size} bytes, limit is {max_bytes}")


def event(
    level: str | Level,
    entity: str,
    message: str,
    **properties: Any,
) -> Event:
    """Create an event with automatic timestamp.

    Args:
        level: Severity (e.g., "Info", "ERROR", Level.WARNING)
        entity: Emitting entity, such as a function name
        message: The log message
        **properties: Additional structured fields

    Returns:
        Event with current timestamp
    """
    return Event(
        timestamp=time.time(),
        entity=entity,
        level=Level.parse(level),
        message=message,
        properties=properties,
    )


def info(entity: str, message: str, **properties: Any) -> Event:
    """Create an Info event with automatic timestamp."""
    return event(Level.INFO, entity, message, **properties)


def warning(entity: str, message: str, **properties: Any) -> Event:
    """Create a Warning event with automatic timestamp."""
    return event(Level.WARNING, entity, message, **properties)


def error(entity: str, message: str, **properties: Any) -> Event:
    """Create an Error event with automatic timestamp."""
    return event(Level.ERROR, entity, message, **properties)


def critical(entity: str, message: str, **properties: Any) -> Event:
    """Create a Critical event with automatic timestamp."""
    return event(Level.CRITICAL, entity, message, **properties)
