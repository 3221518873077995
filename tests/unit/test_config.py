"""Tests for engine configuration."""

from pathlib import Path

import pytest

from loglens.core.config import EngineConfig, load_config, parse_rule
from loglens.core.durations import parse_duration
from loglens.core.exceptions import ValidationError
from loglens.core.models import Level


class TestParseDuration:
    """Duration strings."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("raw", "seconds"),
        [("5m", 300.0), ("1h", 3600.0), ("250ms", 0.25), ("2d", 172800.0), ("30", 30.0), (90, 90.0)],
    )
    def test_valid(self, raw: object, seconds: float) -> None:
        assert parse_duration(raw) == seconds  # type: ignore[arg-type]

    @pytest.mark.core
    @pytest.mark.parametrize("raw", ["", "5x", "-5m", 0, True, "0s"])
    def test_invalid(self, raw: object) -> None:
        with pytest.raises(ValidationError):
            parse_duration(raw)  # type: ignore[arg-type]


class TestFromMapping:
    """Building a config from camelCase or snake_case keys."""

    @pytest.mark.core
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.anomaly_threshold == 2.0
        assert config.min_baseline_samples == 2
        assert config.retention.max_age_seconds is None

    @pytest.mark.core
    def test_camel_case_keys(self) -> None:
        config = EngineConfig.from_mapping(
            {
                "retentionDays": 7,
                "bucketSize": "5m",
                "anomalyThreshold": 3.5,
                "minBaselineSamples": 4,
            }
        )
        assert config.retention_days == 7
        assert config.retention.max_age_seconds == 7 * 86400
        assert config.bucket_size == 300.0
        assert config.anomaly_threshold == 3.5
        assert config.min_baseline_samples == 4

    @pytest.mark.core
    def test_snake_case_keys(self) -> None:
        config = EngineConfig.from_mapping({"bucket_size": 60, "shard_seconds": "2h"})
        assert (config.bucket_size, config.shard_seconds) == (60.0, 7200.0)

    @pytest.mark.core
    @pytest.mark.parametrize(
        "data",
        [
            {"retentionDays": 0},
            {"retentionDays": 1.5},
            {"anomalyThreshold": -1},
            {"minBaselineSamples": "two"},
            {"bucketSize": "fast"},
            {"unknownKey": 1},
            {"rules": {"id": "x"}},
        ],
    )
    def test_invalid_values(self, data: dict) -> None:
        with pytest.raises(ValidationError):
            EngineConfig.from_mapping(data)

    @pytest.mark.core
    def test_rules(self) -> None:
        config = EngineConfig.from_mapping(
            {
                "rules": [
                    {
                        "id": "spike",
                        "when": {"field": "decision", "op": "==", "value": "anomalous"},
                        "cooldown": "15m",
                        "channel": "ops",
                        "severity": "error",
                    }
                ]
            }
        )
        [rule] = config.rules
        assert rule.rule_id == "spike"
        assert rule.cooldown == 900.0
        assert rule.channel == "ops"
        assert rule.severity is Level.ERROR
        assert rule.predicate({"decision": "anomalous"}) is True

    @pytest.mark.core
    def test_merge_overrides_only_given_keys(self) -> None:
        base = EngineConfig.from_mapping({"bucketSize": "5m", "anomalyThreshold": 3})
        merged = base.merge({"anomalyThreshold": 4})
        assert (merged.bucket_size, merged.anomaly_threshold) == (300.0, 4.0)


class TestParseRule:
    """Rule descriptors."""

    @pytest.mark.core
    def test_rule_requires_id_and_when(self) -> None:
        with pytest.raises(ValidationError, match="id"):
            parse_rule({"when": {"field": "x"}})
        with pytest.raises(ValidationError, match="when"):
            parse_rule({"id": "x"})

    @pytest.mark.core
    def test_rule_defaults(self) -> None:
        rule = parse_rule({"id": "x", "when": {"field": "count", "op": ">", "value": 1}})
        assert (rule.cooldown, rule.channel, rule.severity) == (0.0, "default", Level.WARNING)


class TestFromEnv:
    """LOGLENS_* environment variables."""

    @pytest.mark.core
    def test_reads_prefixed_variables(self) -> None:
        config = EngineConfig.from_env(
            {"LOGLENS_BUCKET_SIZE": "1m", "LOGLENS_RETENTION_DAYS": "3", "HOME": "/root"}
        )
        assert config.bucket_size == 60.0
        assert config.retention_days == 3

    @pytest.mark.core
    def test_rules_cannot_come_from_env(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig.from_env({"LOGLENS_RULES": "[]"})


class TestLoadConfig:
    """TOML config files."""

    @pytest.mark.core
    def test_load_toml_with_table(self, tmp_path: Path) -> None:
        path = tmp_path / "loglens.toml"
        path.write_text(
            """
[loglens]
retentionDays = 14
bucketSize = "5m"
anomalyThreshold = 2.5

[[loglens.rules]]
id = "spike"
cooldown = "10m"
when = { field = "decision", op = "==", value = "anomalous" }
"""
        )
        config = load_config(path)
        assert config.retention_days == 14
        assert config.anomaly_threshold == 2.5
        assert config.rules[0].cooldown == 600.0

    @pytest.mark.core
    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "loglens.toml"
        path.write_text('bucketSize = "5m"\n')
        monkeypatch.setenv("LOGLENS_BUCKET_SIZE", "1m")
        assert load_config(path, env=True).bucket_size == 60.0

    @pytest.mark.core
    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text("bucketSize = ")
        with pytest.raises(ValidationError, match="invalid config file"):
            load_config(path)
