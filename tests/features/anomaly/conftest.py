"""BDD step definitions for end-to-end anomaly detection.

Steps build events up front and run ingestion, detection and dispatch
inside a single event loop per ``When`` step.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest
from pytest_bdd import given, parsers, then, when

from loglens.adapters.notify import InMemoryChannel
from loglens.core.alerts import anomaly_rule
from loglens.core.config import EngineConfig
from loglens.core.models import (
    AlertEvent,
    AlertRule,
    AnomalyRecord,
    Decision,
    Event,
    TimeRange,
)
from loglens.service import AnalyticsService

# Aligned to 300s and 3600s boundaries
T0 = 1_699_999_200.0
HOUR = 3600.0


@dataclass
class DetectionScenarioContext:
    """Shared state between steps in a detection scenario."""

    bucket_size: float = 300.0
    threshold: float = 2.0
    rules: list[AlertRule] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    channel: InMemoryChannel = field(default_factory=InMemoryChannel)
    service: AnalyticsService | None = None
    records: list[AnomalyRecord] = field(default_factory=list)

    def build(self) -> AnalyticsService:
        if self.service is None:
            config = EngineConfig(
                bucket_size=self.bucket_size,
                anomaly_threshold=self.threshold,
                rules=tuple(self.rules),
            )
            self.service = AnalyticsService(config, channels={"ops": self.channel})
        return self.service

    @property
    def alerts(self) -> list[AlertEvent]:
        return self.channel.alerts


def run_async(coro: Any) -> Any:
    """Run a coroutine synchronously."""
    return asyncio.run(coro)


async def _ingest_and_analyse(ctx: DetectionScenarioContext, now: float) -> None:
    service = ctx.build()
    for event in ctx.events:
        await service.ingest(event)
    ctx.events = []
    records, _ = await service.run_cycle(TimeRange(T0, T0 + HOUR), now=now)
    ctx.records = records


@pytest.fixture
def ctx() -> DetectionScenarioContext:
    """Fresh scenario context for each test."""
    return DetectionScenarioContext()


# === Background Steps ===
@given(
    parsers.parse(
        "an engine with {minutes:d} minute buckets and anomaly threshold {threshold:f}"
    )
)
def step_engine(ctx: DetectionScenarioContext, minutes: int, threshold: float) -> None:
    ctx.bucket_size = minutes * 60.0
    ctx.threshold = threshold


@given(
    parsers.parse(
        'an alert rule "{rule_id}" on anomalous buckets with a {minutes:d} minute cooldown'
    )
)
def step_rule(ctx: DetectionScenarioContext, rule_id: str, minutes: int) -> None:
    ctx.rules.append(anomaly_rule(rule_id, cooldown=minutes * 60.0, channel="ops"))


# === Event Steps ===
@given(parsers.parse('{count:d} events for "{entity}" spread evenly over one hour'))
def step_even_events(ctx: DetectionScenarioContext, count: int, entity: str) -> None:
    spacing = HOUR / count
    ctx.events.extend(
        Event(timestamp=T0 + i * spacing, entity=entity, message=f"tick {i}")
        for i in range(count)
    )


@given(
    parsers.parse(
        'events for "{entity}" with counts {first:d}, {second:d} in the first two '
        "windows and {burst:d} in window {slot:d}"
    )
)
def step_burst_events(
    ctx: DetectionScenarioContext,
    entity: str,
    first: int,
    second: int,
    burst: int,
    slot: int,
) -> None:
    for window, count in ((0, first), (1, second), (slot, burst)):
        start = T0 + window * ctx.bucket_size
        ctx.events.extend(
            Event(timestamp=start + i * 10, entity=entity, level="error", message="timeout")
            for i in range(count)
        )


@given(parsers.parse('{count:d} events for "{entity}" in window {slot:d}'))
def step_window_events(ctx: DetectionScenarioContext, count: int, entity: str, slot: int) -> None:
    start = T0 + slot * ctx.bucket_size
    ctx.events.extend(
        Event(timestamp=start + i * 10, entity=entity, level="error", message="timeout")
        for i in range(count)
    )


# === Analysis Steps ===
@when("the hour is analysed")
def step_analyse(ctx: DetectionScenarioContext) -> None:
    run_async(_ingest_and_analyse(ctx, now=T0 + HOUR))


@when("the same hour is analysed again")
def step_analyse_repeat(ctx: DetectionScenarioContext) -> None:
    run_async(_ingest_and_analyse(ctx, now=T0 + HOUR + 60))


@when(parsers.parse('the same hour is analysed again after rebaselining "{entity}"'))
def step_analyse_again(ctx: DetectionScenarioContext, entity: str) -> None:
    service = ctx.build()
    service.detector.rebaseline((entity,), "count")
    run_async(_ingest_and_analyse(ctx, now=T0 + HOUR + 60))


# === Outcome Steps ===
@then(parsers.parse("exactly {count:d} bucket is anomalous"))
@then(parsers.parse("exactly {count:d} buckets are anomalous"))
def step_anomaly_count(ctx: DetectionScenarioContext, count: int) -> None:
    assert sum(r.is_anomalous for r in ctx.records) == count


@then(
    parsers.parse(
        'the anomalous bucket is window {slot:d} of "{entity}" with score {score:f}'
    )
)
def step_anomalous_bucket(
    ctx: DetectionScenarioContext, slot: int, entity: str, score: float
) -> None:
    [record] = [r for r in ctx.records if r.is_anomalous]
    assert record.entity == entity
    assert record.bucket.window_start == T0 + slot * ctx.bucket_size
    assert record.score == pytest.approx(score)


@then(parsers.parse('every bucket of "{entity}" scores below {limit:f}'))
def step_scores_below(ctx: DetectionScenarioContext, entity: str, limit: float) -> None:
    records = [r for r in ctx.records if r.entity == entity]
    assert records
    assert all(r.score is None or r.score < limit for r in records)


@then(parsers.parse('{count:d} alert is delivered for "{entity}"'))
def step_alerts_for(ctx: DetectionScenarioContext, count: int, entity: str) -> None:
    assert [a.entity for a in ctx.alerts] == [entity] * count


@then(parsers.parse("{count:d} alerts are delivered"))
def step_alert_count(ctx: DetectionScenarioContext, count: int) -> None:
    assert len(ctx.alerts) == count


@then("no bucket is scored")
def step_nothing_scored(ctx: DetectionScenarioContext) -> None:
    assert ctx.records == []


@then(
    parsers.parse('the bucket at window {slot:d} of "{entity}" has an insufficient baseline')
)
def step_insufficient(ctx: DetectionScenarioContext, slot: int, entity: str) -> None:
    [record] = [r for r in ctx.records if r.entity == entity]
    assert record.bucket.window_start == T0 + slot * ctx.bucket_size
    assert record.decision is Decision.INSUFFICIENT_BASELINE
    assert record.score is None
