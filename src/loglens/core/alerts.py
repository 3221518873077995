"""Alert rule evaluation, cooldown suppression and delivery."""

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from loglens.core.exceptions import PipelineError
from loglens.core.models import AlertEvent, AlertRule, AnomalyRecord, Decision, Level
from loglens.core.ports import NotificationChannelPort
from loglens.core.predicates import AllOf, Condition, resolve

logger = logging.getLogger(__name__)


def anomaly_rule(
    rule_id: str,
    *,
    cooldown: float = 0.0,
    min_score: float | None = None,
    metric: str | None = None,
    channel: str = "default",
    severity: Level = Level.WARNING,
    message: str | None = None,
) -> AlertRule:
    """Build a rule that fires on anomalous records."""
    conditions = [Condition("decision", "==", Decision.ANOMALOUS.value)]
    if min_score is not None:
        conditions.append(Condition("score", ">=", min_score))
    if metric is not None:
        conditions.append(Condition("metric", "==", metric))
    return AlertRule(
        rule_id=rule_id,
        predicate=AllOf(tuple(conditions)),
        cooldown=cooldown,
        channel=channel,
        severity=severity,
        message=message,
    )


class _TemplateRow(dict):
    def __missing__(self, key: str) -> Any:
        raise PipelineError(f"message template references unknown field {key!r}")


class AlertDispatcher:
    """Evaluates alert rules and applies per-(rule, entity) cooldown.

    Rule failures are isolated: a rule whose predicate raises, returns a
    non-bool or whose message template cannot be rendered is logged and
    skipped, and the remaining rules still run.

    Args:
        rules: Rules evaluated when evaluate() gets no explicit rules.
        channels: Notification channels by name, used by dispatch().
        clock: Time source for ``now`` when the caller omits it.
    """

    def __init__(
        self,
        rules: Sequence[AlertRule] = (),
        channels: Mapping[str, NotificationChannelPort] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rules: list[AlertRule] = list(rules)
        self._channels: dict[str, NotificationChannelPort] = dict(channels or {})
        self._clock = clock
        self._last_fired: dict[tuple[str, str], float] = {}
        self._expired_at: float | None = None
        self._lock = threading.Lock()
        self.rule_errors: Counter[str] = Counter()

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    def add_rule(self, rule: AlertRule) -> None:
        self._rules.append(rule)

    def add_channel(self, name: str, channel: NotificationChannelPort) -> None:
        self._channels[name] = channel

    def last_fired(self, rule_id: str, entity: str) -> float | None:
        with self._lock:
            return self._last_fired.get((rule_id, entity))

    def reset_cooldowns(self) -> None:
        with self._lock:
            self._last_fired.clear()

    def evaluate(
        self,
        subject: AnomalyRecord | Mapping[str, Any],
        rules: Sequence[AlertRule] | None = None,
        *,
        now: float | None = None,
    ) -> list[AlertEvent]:
        """Return the alerts fired for subject, at most one per rule."""
        row = subject.to_row() if isinstance(subject, AnomalyRecord) else dict(subject)
        if now is None:
            now = self._clock()
        active = self._rules if rules is None else list(rules)
        self._expire(active, now)
        fired: list[AlertEvent] = []
        for rule in active:
            try:
                matched = rule.predicate(row)
                if not isinstance(matched, bool):
                    raise PipelineError(
                        f"predicate returned {type(matched).__name__}, expected bool"
                    )
                if not matched:
                    continue
                entity = resolve(row, rule.entity_field)
                entity = "" if entity is None else str(entity)
                message = self._render(rule, row, entity)
            except Exception:
                self.rule_errors[rule.rule_id] += 1
                logger.exception("Alert rule %s failed and was skipped", rule.rule_id)
                continue

            key = (rule.rule_id, entity)
            with self._lock:
                last = self._last_fired.get(key)
                if last is not None and now - last < rule.cooldown:
                    logger.debug(
                        "Alert %s for %s suppressed by cooldown", rule.rule_id, entity
                    )
                    continue
                self._last_fired[key] = now
            fired.append(
                AlertEvent(
                    rule_id=rule.rule_id,
                    entity=entity,
                    timestamp=now,
                    message=message,
                    severity=rule.severity,
                    channel=rule.channel,
                    context=row,
                )
            )
        return fired

    def _expire(self, rules: Sequence[AlertRule], now: float) -> None:
        """Forget cooldowns of rules that have run out by now."""
        cooldowns = {rule.rule_id: rule.cooldown for rule in rules}
        with self._lock:
            if now == self._expired_at:
                return
            self._expired_at = now
            expired = [
                key
                for key, last in self._last_fired.items()
                if key[0] in cooldowns and now - last >= cooldowns[key[0]]
            ]
            for key in expired:
                del self._last_fired[key]

    @staticmethod
    def _render(rule: AlertRule, row: Mapping[str, Any], entity: str) -> str:
        if rule.message is not None:
            return rule.message.format_map(_TemplateRow(row))
        message = f"{rule.rule_id} fired for {entity or 'unknown entity'}"
        score = row.get("score")
        if isinstance(score, (int, float)):
            message += f" (score {score:.2f})"
        return message

    async def dispatch(
        self,
        subjects: Iterable[AnomalyRecord | Mapping[str, Any]],
        *,
        now: float | None = None,
    ) -> list[AlertEvent]:
        """Evaluate subjects and deliver fired alerts to their channels.

        Returns every fired alert, delivered or not. Delivery failures are
        logged and do not stop delivery of the remaining alerts.
        """
        alerts: list[AlertEvent] = []
        for subject in subjects:
            alerts.extend(self.evaluate(subject, now=now))
        for alert in alerts:
            channel = self._channels.get(alert.channel)
            if channel is None:
                logger.warning(
                    "No channel named %r for alert %s", alert.channel, alert.rule_id
                )
                continue
            try:
                await channel.send(alert)
            except Exception:
                logger.exception(
                    "Delivering alert %s to %r failed", alert.rule_id, alert.channel
                )
        return alerts
