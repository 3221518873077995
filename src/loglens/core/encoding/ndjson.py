"""NDJSON encoders for events, query rows, buckets and alerts."""

import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from enum import Enum
from typing import Any

from loglens.core.models import AlertEvent, AnomalyRecord, Bucket, Event


def _default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def encode_line(obj: Mapping[str, Any]) -> str:
    """Encode one object as a JSON line, newline included."""
    return json.dumps(obj, default=_default) + "\n"


def to_object(item: Event | Bucket | AnomalyRecord | AlertEvent | Mapping[str, Any]) -> dict[str, Any]:
    """Return the JSON object form of a model or row."""
    if isinstance(item, (Event, AlertEvent)):
        return item.to_dict()
    if isinstance(item, (Bucket, AnomalyRecord)):
        return item.to_row()
    return dict(item)


def encode_rows(items: Iterable[Any]) -> str:
    """Encode rows or models to newline-delimited JSON.

    Returns:
        NDJSON string with one JSON object per line.
        Empty string if there are no items.
    """
    return "".join(encode_line(to_object(item)) for item in items)


def encode_events(events: Iterable[Event]) -> str:
    return encode_rows(events)


def encode_buckets(buckets: Iterable[Bucket]) -> str:
    return encode_rows(buckets)


def encode_alerts(alerts: Iterable[AlertEvent]) -> str:
    return encode_rows(alerts)


async def iter_ndjson(items: AsyncIterable[Any]) -> AsyncIterator[bytes]:
    """Encode an async stream of rows, one UTF-8 line per item."""
    async for item in items:
        yield encode_line(to_object(item)).encode("utf-8")


def decode_lines(body: str | bytes) -> list[dict[str, Any]]:
    """Parse an NDJSON body, skipping blank lines."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return [json.loads(line) for line in body.splitlines() if line.strip()]
