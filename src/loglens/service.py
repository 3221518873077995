"""Wires stores, query engine, detector and dispatcher from an EngineConfig."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from loglens.adapters.frameworks.asgi import ASGIApp, create_asgi_app
from loglens.adapters.storage.in_memory import InMemoryEventStore
from loglens.core.alerts import AlertDispatcher
from loglens.core.anomaly import AnomalyDetector
from loglens.core.cache import QueryCache
from loglens.core.cancellation import CancellationToken
from loglens.core.config import EngineConfig
from loglens.core.exceptions import PipelineError
from loglens.core.ingestion import IngestionBuffer
from loglens.core.models import AlertEvent, AnomalyRecord, Event, TimeRange
from loglens.core.pipeline import Pipeline, Summarize
from loglens.core.ports import EventStoragePort, NotificationChannelPort
from loglens.core.query import QueryEngine
from loglens.core.windower import count
from loglens.runtime.embedded import EmbeddedRuntime

logger = logging.getLogger(__name__)


class AnalyticsService:
    """One engine instance: ingestion, queries, detection and alerting.

    Example:
        ```python
        service = AnalyticsService(EngineConfig(bucket_size=300))
        await service.ingest(event)
        records, alerts = await service.run_cycle(TimeRange(t0, t1))
        ```

    Args:
        config: Engine settings.
        store: Event store. An InMemoryEventStore is built from config
            when omitted.
        channels: Notification channels by name.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: EventStoragePort | None = None,
        channels: Mapping[str, NotificationChannelPort] | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        if store is None:
            store = InMemoryEventStore(
                shard_seconds=self.config.shard_seconds,
                max_event_bytes=self.config.max_event_bytes,
            )
        self.store = store
        self.cache = QueryCache()
        self.engine = QueryEngine(
            store, cache=self.cache, dcount_exact_limit=self.config.dcount_exact_limit
        )
        self.ingestion = IngestionBuffer(store, max_event_bytes=self.config.max_event_bytes)
        self.detector = AnomalyDetector(
            threshold=self.config.anomaly_threshold,
            min_baseline_samples=self.config.min_baseline_samples,
            baseline_buckets=self.config.baseline_buckets,
        )
        self.dispatcher = AlertDispatcher(self.config.rules, channels)
        self.runtime = EmbeddedRuntime(store, self.config.retention)

    async def ingest(self, event: Event) -> None:
        await self.ingestion.submit(event)

    async def query(
        self,
        pipeline: Pipeline | Sequence[Any],
        time_range: TimeRange,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        return await self.engine.execute(pipeline, time_range, token=token, timeout=timeout)

    def default_pipeline(self, by: Sequence[str] = ("entity",)) -> Pipeline:
        """Count events per group in bucket_size windows."""
        return Pipeline((Summarize((count(),), by=tuple(by), bin=self.config.bucket_size),))

    async def detect(
        self,
        time_range: TimeRange,
        pipeline: Pipeline | Sequence[Any] | None = None,
        metric: str = "count",
        *,
        timeout: float | None = None,
    ) -> list[AnomalyRecord]:
        """Window the range and score new buckets against their baselines.

        Buckets at or before a series' last scored window are skipped, so
        consecutive cycles may overlap.

        Raises:
            PipelineError: If the pipeline does not produce metric.
        """
        if pipeline is None:
            pipeline = self.default_pipeline()
        buckets = await self.engine.buckets(pipeline, time_range, timeout=timeout)
        if buckets and metric not in buckets[0].values:
            raise PipelineError(f"pipeline does not produce metric {metric!r}")
        return self.detector.evaluate_new(buckets, metric)

    async def run_cycle(
        self,
        time_range: TimeRange,
        pipeline: Pipeline | Sequence[Any] | None = None,
        metric: str = "count",
        *,
        now: float | None = None,
    ) -> tuple[list[AnomalyRecord], list[AlertEvent]]:
        """Detect anomalies in the range and dispatch the resulting alerts."""
        records = await self.detect(time_range, pipeline, metric)
        alerts = await self.dispatcher.dispatch(records, now=now)
        if alerts:
            logger.info("Cycle over %s fired %d alerts", time_range, len(alerts))
        return records, alerts

    def asgi_app(self) -> ASGIApp:
        return create_asgi_app(self.store, engine=self.engine, ingestion=self.ingestion)

    async def start(self) -> None:
        await self.runtime.start()

    async def stop(self) -> None:
        await self.runtime.stop()
