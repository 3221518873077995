"""Python logging handler adapter for loglens.

This adapter bridges Python's standard library logging module to an event
store, so log records become Events that can be queried and windowed.
"""

import logging
import traceback
from typing import Any, Protocol

from loglens.core.models import Event, Level

# Standard LogRecord attributes that should not be treated as extra fields
_STANDARD_LOGRECORD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        "entity",
        "category",
        "resource_id",
    }
)

_DEFAULT_INCLUDE_ATTRS = ["funcName", "lineno", "pathname"]


class SyncAppender(Protocol):
    def append_sync(self, event: Event) -> None: ...


def level_for(levelno: int) -> Level:
    """Map a logging level number onto an event Level."""
    if levelno >= logging.CRITICAL:
        return Level.CRITICAL
    if levelno >= logging.ERROR:
        return Level.ERROR
    if levelno >= logging.WARNING:
        return Level.WARNING
    return Level.INFO


class EventStoreHandler(logging.Handler):
    """Logging handler that appends log records to an event store.

    The record's logger name becomes the event entity unless the call
    passes ``extra={"entity": ...}``. ``category`` and ``resource_id`` can
    be passed the same way.

    Example:
        ```python
        from loglens import EventStoreHandler, InMemoryEventStore

        store = InMemoryEventStore()
        logging.getLogger().addHandler(EventStoreHandler(store))
        ```
    """

    def __init__(
        self,
        store: SyncAppender,
        include_attrs: list[str] | None = None,
        category: str = "log",
        level: int = logging.NOTSET,
    ) -> None:
        """Initialize the handler with an event store.

        Args:
            store: Store exposing append_sync, e.g. InMemoryEventStore.
            include_attrs: LogRecord attributes copied into properties.
                Defaults to ["funcName", "lineno", "pathname"].
            category: Category used when the record carries none.
            level: Minimum record level handled.
        """
        super().__init__(level)
        self._store = store
        self._include_attrs = include_attrs or _DEFAULT_INCLUDE_ATTRS
        self._category = category

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._store.append_sync(self.to_event(record))
        except Exception:
            self.handleError(record)

    def to_event(self, record: logging.LogRecord) -> Event:
        attr_mapping: dict[str, Any] = {
            "funcName": record.funcName or "",
            "lineno": record.lineno,
            "pathname": record.pathname,
            "module": record.module,
        }
        properties: dict[str, Any] = {
            key: attr_mapping[key] for key in self._include_attrs if key in attr_mapping
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_LOGRECORD_ATTRS and isinstance(
                value, (str, int, float, bool)
            ):
                properties[key] = value

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None:
                properties["exc_type"] = exc_type.__name__
            if exc_value is not None:
                properties["exc_message"] = str(exc_value)
            if exc_tb is not None:
                properties["exc_traceback"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        return Event(
            timestamp=record.created,
            entity=str(getattr(record, "entity", record.name)),
            category=str(getattr(record, "category", self._category)),
            level=level_for(record.levelno),
            message=record.getMessage(),
            resource_id=str(getattr(record, "resource_id", "")),
            properties=properties,
        )
