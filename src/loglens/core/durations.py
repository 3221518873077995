"""Duration parsing for configuration values and pipeline descriptors."""

import re

from loglens.core.exceptions import ValidationError

_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")


def parse_duration(value: str | int | float) -> float:
    """Parse ``"5m"``, ``"1h"``, ``"250ms"`` or a number of seconds.

    Raises:
        ValidationError: If the value is not a positive duration.
    """
    if isinstance(value, bool):
        raise ValidationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if match is None:
            raise ValidationError(f"invalid duration: {value!r}")
        seconds = float(match.group(1)) * _UNITS[match.group(2) or "s"]
    if seconds <= 0:
        raise ValidationError(f"duration must be positive: {value!r}")
    return seconds
