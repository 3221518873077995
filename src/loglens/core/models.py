"""Core domain models for log analytics."""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from loglens.core.exceptions import InvalidRangeError, ValidationError

_LEVEL_ALIASES = {
    "DEBUG": "Info",
    "TRACE": "Info",
    "VERBOSE": "Info",
    "INFO": "Info",
    "INFORMATION": "Info",
    "WARN": "Warning",
    "WARNING": "Warning",
    "ERROR": "Error",
    "ERR": "Error",
    "CRITICAL": "Critical",
    "FATAL": "Critical",
}

_LEVEL_RANKS = {"Info": 0, "Warning": 1, "Error": 2, "Critical": 3}


class Level(StrEnum):
    """Event severity, ordered Info < Warning < Error < Critical."""

    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self.value]

    @classmethod
    def parse(cls, value: "str | Level") -> "Level":
        """Parse a level name case-insensitively, accepting common aliases.

        Raises:
            ValidationError: If the name is not a recognised level.
        """
        if isinstance(value, Level):
            return value
        name = _LEVEL_ALIASES.get(str(value).strip().upper())
        if name is None:
            raise ValidationError(f"unknown level: {value!r}")
        return cls(name)

    def __lt__(self, other: object) -> bool:
        if isinstance(other, Level):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other: object) -> bool:
        if isinstance(other, Level):
            return self.rank <= other.rank
        return NotImplemented

    def __gt__(self, other: object) -> bool:
        if isinstance(other, Level):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other: object) -> bool:
        if isinstance(other, Level):
            return self.rank >= other.rank
        return NotImplemented


def to_timestamp(value: float | int | datetime | None) -> float | None:
    """Convert a datetime or number to Unix seconds, passing None through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, bool):
        raise ValidationError("timestamp must be a number or datetime")
    if isinstance(value, (int, float)):
        return float(value)
    raise ValidationError(f"timestamp must be a number or datetime, got {value!r}")


def align(timestamp: float, size: float) -> float:
    """Return the start of the bucket containing timestamp.

    Buckets are aligned to multiples of size from the Unix epoch.
    """
    return math.floor(timestamp / size) * size


EVENT_FIELDS = (
    "timestamp",
    "entity",
    "category",
    "level",
    "message",
    "resource_id",
    "properties",
)


@dataclass(frozen=True)
class Event:
    """A structured log event.

    Attributes:
        timestamp: Unix timestamp in seconds.
        entity: Emitting entity (e.g., function name).
        category: Log category.
        level: Severity level.
        message: Free text message.
        resource_id: Identifier of the emitting resource.
        properties: Additional structured fields (read-only).
    """

    timestamp: float | None
    entity: str = ""
    category: str = ""
    level: Level = Level.INFO
    message: str = ""
    resource_id: str = ""
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_timestamp(self.timestamp))
        object.__setattr__(self, "level", Level.parse(self.level))
        object.__setattr__(
            self, "properties", MappingProxyType(dict(self.properties))
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible representation."""
        return {
            "timestamp": self.timestamp,
            "entity": self.entity,
            "category": self.category,
            "level": self.level.value,
            "message": self.message,
            "resource_id": self.resource_id,
            "properties": dict(self.properties),
        }

    def to_row(self) -> dict[str, Any]:
        """Return the mutable row form used by query pipelines."""
        return {
            "timestamp": self.timestamp,
            "entity": self.entity,
            "category": self.category,
            "level": self.level,
            "message": self.message,
            "resource_id": self.resource_id,
            "properties": dict(self.properties),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Event":
        """Build an Event from a mapping.

        Accepts ``resourceId`` as an alias of ``resource_id``. Unknown keys
        are merged into properties.

        Raises:
            ValidationError: If the mapping is not a valid event.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("event must be a mapping")
        known = dict(data)
        if "resourceId" in known and "resource_id" not in known:
            known["resource_id"] = known.pop("resourceId")
        properties = dict(known.pop("properties", None) or {})
        for key in list(known):
            if key not in EVENT_FIELDS:
                properties[key] = known.pop(key)
        if known.get("timestamp") is None:
            raise ValidationError("event timestamp is required")
        try:
            return cls(
                timestamp=known["timestamp"],
                entity=str(known.get("entity", "")),
                category=str(known.get("category", "")),
                level=known.get("level", Level.INFO),
                message=str(known.get("message", "")),
                resource_id=str(known.get("resource_id", "")),
                properties=properties,
            )
        except TypeError as e:
            raise ValidationError(str(e)) from e


@dataclass(frozen=True)
class TimeRange:
    """Half-open time interval [start, end) in Unix seconds."""

    start: float
    end: float

    def __post_init__(self) -> None:
        start = to_timestamp(self.start)
        end = to_timestamp(self.end)
        if start is None or end is None:
            raise InvalidRangeError("time range needs both start and end")
        if not (math.isfinite(start) and math.isfinite(end)):
            raise InvalidRangeError("time range bounds must be finite")
        if end <= start:
            raise InvalidRangeError(f"time range end {end} must be after start {start}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp < self.end

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class Bucket:
    """Aggregated statistics for one time window and group.

    Attributes:
        window_start: Inclusive window start (aligned to the bucket size).
        window_end: Exclusive window end.
        group: Group-key values, in the order of group_keys.
        values: Aggregation alias to computed statistic.
        group_keys: Names of the group-key fields.
    """

    window_start: float
    window_end: float
    group: tuple[Any, ...] = ()
    values: Mapping[str, Any] = field(default_factory=dict)
    group_keys: tuple[str, ...] = ()

    @property
    def entity(self) -> str:
        """Group rendered as a single entity label."""
        if not self.group:
            return ""
        if len(self.group) == 1:
            return str(self.group[0])
        return "|".join(str(g) for g in self.group)

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "window_start": self.window_start,
            "window_end": self.window_end,
        }
        row.update(zip(self.group_keys, self.group))
        row.update(self.values)
        return row


class Decision(StrEnum):
    """Outcome of scoring one bucket against its baseline."""

    ANOMALOUS = "anomalous"
    NORMAL = "normal"
    INSUFFICIENT_BASELINE = "insufficient_baseline"


@dataclass(frozen=True)
class AnomalyRecord:
    """Score of one bucket against the rolling baseline of its series."""

    bucket: Bucket
    metric: str
    observed: float | None
    baseline_mean: float | None
    baseline_stddev: float | None
    baseline_samples: int
    score: float | None
    decision: Decision
    threshold: float

    @property
    def is_anomalous(self) -> bool:
        return self.decision is Decision.ANOMALOUS

    @property
    def entity(self) -> str:
        return self.bucket.entity

    @property
    def series_key(self) -> tuple[tuple[Any, ...], str]:
        return (self.bucket.group, self.metric)

    @property
    def timestamp(self) -> float:
        return self.bucket.window_start

    def to_row(self) -> dict[str, Any]:
        row = self.bucket.to_row()
        row.update(
            {
                "entity": self.entity,
                "metric": self.metric,
                "observed": self.observed,
                "baseline_mean": self.baseline_mean,
                "baseline_stddev": self.baseline_stddev,
                "baseline_samples": self.baseline_samples,
                "score": self.score,
                "decision": self.decision.value,
                "threshold": self.threshold,
            }
        )
        return row


@dataclass(frozen=True)
class AlertRule:
    """Alert rule definition.

    Attributes:
        rule_id: Unique rule identifier.
        predicate: Condition (or callable) over an anomaly/aggregate row.
        cooldown: Minimum seconds between firings per entity.
        channel: Name of the notification channel to deliver to.
        severity: Severity stamped on emitted alerts.
        message: Optional ``str.format`` template over the row fields.
        entity_field: Row field identifying the entity.
    """

    rule_id: str
    predicate: Any
    cooldown: float = 0.0
    channel: str = "default"
    severity: Level = Level.WARNING
    message: str | None = None
    entity_field: str = "entity"


@dataclass(frozen=True)
class AlertEvent:
    """A fired alert, handed to a notification channel."""

    rule_id: str
    entity: str
    timestamp: float
    message: str
    severity: Level
    channel: str = "default"
    context: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "entity": self.entity,
            "timestamp": self.timestamp,
            "message": self.message,
            "severity": self.severity.value,
            "channel": self.channel,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention settings for an event store.

    Attributes:
        max_age_seconds: Events older than this are purged. None keeps all.
    """

    max_age_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_age_seconds is not None and self.max_age_seconds <= 0:
            raise ValidationError("max_age_seconds must be positive")

    def cutoff(self, now: float) -> float | None:
        """Return the timestamp before which events are expired."""
        if self.max_age_seconds is None:
            return None
        return now - self.max_age_seconds
