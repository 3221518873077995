"""Tests for alert evaluation, cooldown and delivery."""

import logging

import pytest

from loglens.adapters.notify import InMemoryChannel
from loglens.core.alerts import AlertDispatcher, anomaly_rule
from loglens.core.models import (
    AlertEvent,
    AlertRule,
    AnomalyRecord,
    Bucket,
    Decision,
    Level,
)
from loglens.core.predicates import Condition

T0 = 1_699_999_200.0


def record(entity: str = "F2", decision: Decision = Decision.ANOMALOUS, score=11.0) -> AnomalyRecord:
    return AnomalyRecord(
        bucket=Bucket(T0, T0 + 300, (entity,), {"count": 7}, ("entity",)),
        metric="count",
        observed=7,
        baseline_mean=1.5,
        baseline_stddev=0.5,
        baseline_samples=2,
        score=score,
        decision=decision,
        threshold=2.0,
    )


class TestEvaluate:
    """Rule matching."""

    @pytest.mark.core
    def test_matching_rule_fires_once(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike")])
        alerts = dispatcher.evaluate(record(), now=T0)
        assert len(alerts) == 1
        alert = alerts[0]
        assert (alert.rule_id, alert.entity, alert.timestamp) == ("spike", "F2", T0)
        assert alert.severity is Level.WARNING
        assert "score 11.00" in alert.message

    @pytest.mark.core
    def test_normal_record_does_not_fire(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike")])
        assert dispatcher.evaluate(record(decision=Decision.NORMAL, score=0.5), now=T0) == []

    @pytest.mark.core
    def test_min_score(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("big", min_score=20)])
        assert dispatcher.evaluate(record(score=11.0), now=T0) == []

    @pytest.mark.core
    def test_rows_are_accepted(self) -> None:
        rule = AlertRule("errors", Condition("count", ">", 10), message="{entity}: {count} errors")
        alerts = AlertDispatcher([rule]).evaluate({"entity": "F1", "count": 12}, now=T0)
        assert [a.message for a in alerts] == ["F1: 12 errors"]

    @pytest.mark.core
    def test_explicit_rules_override_registered(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("a")])
        alerts = dispatcher.evaluate(record(), [anomaly_rule("b")], now=T0)
        assert [a.rule_id for a in alerts] == ["b"]


class TestCooldown:
    """Per-(rule, entity) suppression."""

    @pytest.mark.core
    def test_identical_anomaly_within_cooldown_is_suppressed(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", cooldown=600)])
        assert len(dispatcher.evaluate(record(), now=T0)) == 1
        assert dispatcher.evaluate(record(), now=T0 + 0.001) == []
        assert len(dispatcher.evaluate(record(), now=T0 + 600.001)) == 1

    @pytest.mark.core
    def test_fires_exactly_at_cooldown_boundary(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", cooldown=600)])
        dispatcher.evaluate(record(), now=T0)
        assert len(dispatcher.evaluate(record(), now=T0 + 600)) == 1

    @pytest.mark.core
    def test_cooldown_is_per_entity(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", cooldown=600)])
        dispatcher.evaluate(record("F1"), now=T0)
        assert len(dispatcher.evaluate(record("F2"), now=T0 + 1)) == 1
        assert dispatcher.last_fired("spike", "F1") == T0

    @pytest.mark.core
    def test_cooldown_is_per_rule(self) -> None:
        dispatcher = AlertDispatcher(
            [anomaly_rule("a", cooldown=600), anomaly_rule("b", cooldown=600)]
        )
        dispatcher.evaluate(record(), [dispatcher.rules[0]], now=T0)
        alerts = dispatcher.evaluate(record(), now=T0 + 1)
        assert [a.rule_id for a in alerts] == ["b"]

    @pytest.mark.core
    def test_expired_cooldowns_are_forgotten(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", cooldown=600)])
        dispatcher.evaluate(record("F1"), now=T0)
        dispatcher.evaluate(record("F2"), now=T0 + 300)

        dispatcher.evaluate({"decision": "normal"}, now=T0 + 700)

        assert dispatcher.last_fired("spike", "F1") is None
        assert dispatcher.last_fired("spike", "F2") == T0 + 300

    @pytest.mark.core
    def test_clock_is_used_when_now_is_omitted(self) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", cooldown=60)], clock=lambda: T0)
        assert dispatcher.evaluate(record())[0].timestamp == T0


class TestRuleIsolation:
    """A broken rule is logged and skipped; other rules still run."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        "broken",
        [
            AlertRule("raises", lambda row: 1 / 0),
            AlertRule("unknown-field", Condition("nope", "==", 1)),
            AlertRule("non-bool", lambda row: "yes"),
            AlertRule("bad-template", lambda row: True, message="{missing}"),
        ],
        ids=lambda r: r.rule_id,
    )
    def test_broken_rule_is_skipped(
        self, broken: AlertRule, caplog: pytest.LogCaptureFixture
    ) -> None:
        dispatcher = AlertDispatcher([broken, anomaly_rule("spike")])
        with caplog.at_level(logging.ERROR, logger="loglens.core.alerts"):
            alerts = dispatcher.evaluate(record(), now=T0)
        assert [a.rule_id for a in alerts] == ["spike"]
        assert dispatcher.rule_errors[broken.rule_id] == 1
        assert broken.rule_id in caplog.text


class FailingChannel:
    async def send(self, alert: AlertEvent) -> None:
        raise ConnectionError("down")


class TestDispatch:
    """Delivery to notification channels."""

    @pytest.mark.core
    async def test_dispatch_delivers_to_named_channel(self) -> None:
        ops = InMemoryChannel()
        dispatcher = AlertDispatcher(
            [anomaly_rule("spike", channel="ops")], channels={"ops": ops}
        )
        alerts = await dispatcher.dispatch([record("F1"), record("F2")], now=T0)
        assert [a.entity for a in ops.alerts] == ["F1", "F2"]
        assert alerts == ops.alerts

    @pytest.mark.core
    async def test_failing_channel_does_not_stop_others(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        good = InMemoryChannel()
        dispatcher = AlertDispatcher(
            [anomaly_rule("a", channel="bad"), anomaly_rule("b", channel="good")],
            channels={"bad": FailingChannel(), "good": good},
        )
        with caplog.at_level(logging.ERROR, logger="loglens.core.alerts"):
            alerts = await dispatcher.dispatch([record()], now=T0)
        assert len(alerts) == 2
        assert [a.rule_id for a in good.alerts] == ["b"]
        assert "Delivering alert a" in caplog.text

    @pytest.mark.core
    async def test_missing_channel_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        dispatcher = AlertDispatcher([anomaly_rule("spike", channel="nowhere")])
        with caplog.at_level(logging.WARNING, logger="loglens.core.alerts"):
            await dispatcher.dispatch([record()], now=T0)
        assert "nowhere" in caplog.text
