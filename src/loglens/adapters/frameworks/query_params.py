"""Shared query parameter parsing utilities for the HTTP adapter."""

import math
import time

from loglens.core.exceptions import ValidationError
from loglens.core.models import Level, TimeRange


def _parse_float_param(params: dict[str, list[str]], name: str) -> float | None:
    """Parse a finite float query parameter.

    Returns:
        The value, or None if the parameter is missing.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    values = params.get(name)
    if not values:
        return None
    return _parse_float_value(name, values[0])


def _parse_float_value(name: str, raw: object) -> float | None:
    """Parse a finite float from a query string or JSON body value.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ValidationError(f"{name} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from e
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {raw!r}")
    return value


def _parse_level_param(params: dict[str, list[str]]) -> Level | None:
    """Parse the 'level' query parameter.

    Returns:
        The minimum Level, or None if missing or not a known level.
    """
    level_list = params.get("level", [None])
    level_raw = level_list[0] if level_list else None
    if not level_raw:
        return None
    try:
        return Level.parse(level_raw)
    except ValidationError:
        return None


def _parse_entity_param(params: dict[str, list[str]]) -> str | None:
    entities = params.get("entity")
    return entities[0] if entities else None


def _parse_time_range(params: dict[str, list[str]], now: float | None = None) -> TimeRange:
    """Build a TimeRange from 'start' and 'end'.

    A missing start means the epoch; a missing end means one second past now.

    Raises:
        InvalidRangeError: If end is not after start.
    """
    start = _parse_float_param(params, "start")
    end = _parse_float_param(params, "end")
    if end is None:
        end = (time.time() if now is None else now) + 1.0
    return TimeRange(0.0 if start is None else start, end)
