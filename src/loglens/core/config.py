"""Engine configuration.

Settings can come from a mapping (camelCase or snake_case keys), from
``LOGLENS_*`` environment variables, or from a TOML file.
"""

import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from loglens.core.anomaly import DEFAULT_MIN_BASELINE_SAMPLES, DEFAULT_THRESHOLD
from loglens.core.durations import parse_duration
from loglens.core.events import DEFAULT_MAX_EVENT_BYTES
from loglens.core.exceptions import ValidationError
from loglens.core.models import AlertRule, Level, RetentionPolicy
from loglens.core.predicates import parse_predicate
from loglens.core.sketch import DEFAULT_EXACT_LIMIT

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOGLENS_"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from e
    if number < 1 or number != float(value):
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
    return number


def _positive_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number, got {value!r}") from e
    if not number > 0:
        raise ValidationError(f"{name} must be positive, got {value!r}")
    return number


def parse_rule(data: Mapping[str, Any]) -> AlertRule:
    """Build an AlertRule from its config form.

    Example::

        {"id": "spike", "when": {"field": "decision", "op": "==",
         "value": "anomalous"}, "cooldown": "15m", "channel": "ops"}

    Raises:
        ValidationError: If the rule is malformed.
    """
    if not isinstance(data, Mapping):
        raise ValidationError(f"rule must be a mapping, got {data!r}")
    normalized = {_snake(k): v for k, v in data.items()}
    rule_id = normalized.get("id") or normalized.get("rule_id")
    if not rule_id:
        raise ValidationError("rule is missing 'id'")
    if "when" not in normalized:
        raise ValidationError(f"rule {rule_id!r} is missing 'when'")
    cooldown = normalized.get("cooldown", 0)
    return AlertRule(
        rule_id=str(rule_id),
        predicate=parse_predicate(normalized["when"]),
        cooldown=0.0 if cooldown in (0, "0", None) else parse_duration(cooldown),
        channel=str(normalized.get("channel", "default")),
        severity=Level.parse(normalized.get("severity", Level.WARNING)),
        message=normalized.get("message"),
        entity_field=str(normalized.get("entity_field", "entity")),
    )


@dataclass(frozen=True)
class EngineConfig:
    """Administrative settings of an analytics engine.

    Attributes:
        retention_days: Days events are kept. None keeps everything.
        bucket_size: Default window width in seconds.
        anomaly_threshold: Scores strictly above this are anomalous.
        min_baseline_samples: Baseline size needed before scoring.
        baseline_buckets: Trailing buckets in a baseline. None means seven
            days at the bucket size.
        max_event_bytes: Largest accepted encoded event.
        dcount_exact_limit: Distinct values counted exactly by dcount.
        shard_seconds: Time span of one in-memory store shard.
        rules: Alert rules.
    """

    retention_days: int | None = None
    bucket_size: float = 300.0
    anomaly_threshold: float = DEFAULT_THRESHOLD
    min_baseline_samples: int = DEFAULT_MIN_BASELINE_SAMPLES
    baseline_buckets: int | None = None
    max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES
    dcount_exact_limit: int = DEFAULT_EXACT_LIMIT
    shard_seconds: float = 3600.0
    rules: tuple[AlertRule, ...] = field(default_factory=tuple)

    @property
    def retention(self) -> RetentionPolicy:
        if self.retention_days is None:
            return RetentionPolicy()
        return RetentionPolicy(max_age_seconds=self.retention_days * 86400.0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from camelCase or snake_case keys.

        Raises:
            ValidationError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            name = _snake(key)
            if name not in known:
                raise ValidationError(f"unknown config key {key!r}")
            values[name] = raw

        parsed: dict[str, Any] = {}
        if values.get("retention_days") is not None:
            parsed["retention_days"] = _positive_int("retentionDays", values["retention_days"])
        if "bucket_size" in values:
            parsed["bucket_size"] = parse_duration(values["bucket_size"])
        if "anomaly_threshold" in values:
            parsed["anomaly_threshold"] = _positive_float(
                "anomalyThreshold", values["anomaly_threshold"]
            )
        if "min_baseline_samples" in values:
            parsed["min_baseline_samples"] = _positive_int(
                "minBaselineSamples", values["min_baseline_samples"]
            )
        if values.get("baseline_buckets") is not None:
            parsed["baseline_buckets"] = _positive_int(
                "baselineBuckets", values["baseline_buckets"]
            )
        if "max_event_bytes" in values:
            parsed["max_event_bytes"] = _positive_int("maxEventBytes", values["max_event_bytes"])
        if "dcount_exact_limit" in values:
            parsed["dcount_exact_limit"] = _positive_int(
                "dcountExactLimit", values["dcount_exact_limit"]
            )
        if "shard_seconds" in values:
            parsed["shard_seconds"] = parse_duration(values["shard_seconds"])
        if "rules" in values:
            rules = values["rules"]
            if not isinstance(rules, list):
                raise ValidationError("rules must be a list")
            parsed["rules"] = tuple(parse_rule(r) for r in rules)
        return cls(**parsed)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """Build a config from ``LOGLENS_*`` variables, e.g. LOGLENS_BUCKET_SIZE=5m.

        Rules cannot be set from the environment.
        """
        environ = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            name = key[len(ENV_PREFIX) :].lower()
            if name == "rules":
                raise ValidationError("rules cannot be configured from the environment")
            data[name] = value
        return cls.from_mapping(data)

    def merge(self, data: Mapping[str, Any]) -> "EngineConfig":
        """Return a copy with the settings in data applied on top."""
        override = EngineConfig.from_mapping(data)
        explicit = {_snake(k) for k in data}
        changes = {name: getattr(override, name) for name in explicit}
        return replace(self, **changes)


def load_config(path: str | Path, *, env: bool = False) -> EngineConfig:
    """Load a TOML config file.

    Settings may sit at the top level or in a ``[loglens]`` table. With
    env=True, ``LOGLENS_*`` variables override the file.

    Raises:
        ValidationError: If the file is not valid TOML or has bad values.
    """
    try:
        with open(path, "rb") as f:
            document = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"invalid config file {path}: {e}") from e
    data = document.get("loglens", document)
    config = EngineConfig.from_mapping(data)
    if env:
        overrides = {
            key[len(ENV_PREFIX) :].lower(): value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }
        if overrides:
            config = config.merge(overrides)
    logger.debug("Loaded config from %s", path)
    return config
