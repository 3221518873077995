"""Example ASGI service with ingestion, query and anomaly alerting.

Run with:
    uvicorn examples.asgi_example:app --reload

Endpoints:
    POST /events                 - Ingest one JSON event or a list of them
    GET  /events?start=&end=     - NDJSON events in a time range
    GET  /events?entity=<name>   - NDJSON events for one entity
    GET  /events?level=<level>   - NDJSON events at or above a level
    POST /query                  - Run a pipeline, rows returned as NDJSON

Detection:
    Run this module directly to seed a quiet and a bursty entity and print
    the anomalies and alerts of one detection cycle:

        python -m examples.asgi_example
"""

import asyncio
import logging

from loglens import (
    AnalyticsService,
    EngineConfig,
    Event,
    EventStoreHandler,
    LoggingChannel,
    TimeRange,
    anomaly_rule,
)

logging.basicConfig(level=logging.INFO)

config = EngineConfig(
    retention_days=7,
    bucket_size=300.0,
    anomaly_threshold=2.0,
    rules=(anomaly_rule("burst", cooldown=900, channel="log"),),
)
service = AnalyticsService(config, channels={"log": LoggingChannel()})

# Application logs from this process become queryable events too
logging.getLogger("examples").addHandler(EventStoreHandler(service.store))

app = service.asgi_app()


async def seed_and_detect(t0: float) -> None:
    """Seed one hour of traffic and run a detection cycle over it."""
    for i in range(100):
        await service.ingest(Event(timestamp=t0 + i * 36, entity="checkout"))
    for window, count in ((0, 1), (1, 2), (5, 7)):
        for i in range(count):
            await service.ingest(
                Event(
                    timestamp=t0 + window * 300 + i * 10,
                    entity="payments",
                    level="error",
                    message="upstream timeout",
                )
            )

    records, alerts = await service.run_cycle(TimeRange(t0, t0 + 3600), now=t0 + 3600)
    for record in records:
        if record.is_anomalous:
            print(
                f"{record.entity} @ {record.bucket.window_start:.0f}: "
                f"observed={record.observed} score={record.score:.2f}"
            )
    print(f"{len(alerts)} alert(s) delivered")


if __name__ == "__main__":
    asyncio.run(seed_and_detect(1_699_999_200.0))
