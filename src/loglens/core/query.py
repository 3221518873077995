"""Query engine: runs pipelines over a time range of stored events.

Filter, extract, project and limit stages stream rows one at a time.
Summarize and order-by stages materialize their input, since aggregation
and sorting need every row of the group.
"""

import functools
import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from loglens.core.cache import QueryCache
from loglens.core.cancellation import CancellationToken
from loglens.core.exceptions import PipelineError
from loglens.core.models import Bucket, TimeRange
from loglens.core.pipeline import (
    CASTS,
    Extract,
    Filter,
    Limit,
    OrderBy,
    Pipeline,
    Project,
    Summarize,
    parse_pipeline,
)
from loglens.core.ports import EventStoragePort
from loglens.core.predicates import resolve
from loglens.core.sketch import DEFAULT_EXACT_LIMIT
from loglens.core.windower import window

logger = logging.getLogger(__name__)

Row = dict[str, Any]


@functools.lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


async def _filter(rows: AsyncIterator[Row], stage: Filter) -> AsyncIterator[Row]:
    async for row in rows:
        if stage.predicate(row):
            yield row


async def _extract(rows: AsyncIterator[Row], stage: Extract) -> AsyncIterator[Row]:
    pattern = _compiled(stage.pattern)
    cast = CASTS[stage.cast] if stage.cast else None
    async for row in rows:
        source = resolve(row, stage.source)
        value: Any = None
        if source is not None:
            match = pattern.search(str(source))
            if match is not None:
                try:
                    value = match.group(stage.group)
                except IndexError as e:
                    raise PipelineError(
                        f"extract pattern has no group {stage.group!r}"
                    ) from e
        if value is not None and cast is not None:
            try:
                value = cast(value)
            except ValueError:
                value = None
        row[stage.target] = value
        yield row


async def _project(rows: AsyncIterator[Row], stage: Project) -> AsyncIterator[Row]:
    columns = stage.columns()
    async for row in rows:
        yield {alias: resolve(row, source) for alias, source in columns}


async def _limit(rows: AsyncIterator[Row], stage: Limit) -> AsyncIterator[Row]:
    if stage.n == 0:
        return
    taken = 0
    async for row in rows:
        yield row
        taken += 1
        if taken >= stage.n:
            break


def _sort_key(field: str, descending: bool) -> Any:
    def key(row: Row) -> tuple[bool, Any]:
        value = resolve(row, field)
        # None sorts last in both directions
        return (value is not None, value) if descending else (value is None, value)

    return key


async def _order(rows: AsyncIterator[Row], stage: OrderBy) -> AsyncIterator[Row]:
    collected = [row async for row in rows]
    descending = stage.direction == "desc"
    try:
        collected.sort(key=_sort_key(stage.field, descending), reverse=descending)
    except TypeError as e:
        raise PipelineError(f"cannot order by {stage.field!r}: mixed value types") from e
    for row in collected:
        yield row


class QueryEngine:
    """Evaluates pipelines against an EventStoragePort.

    Args:
        store: Event storage to read from.
        cache: Optional result cache for aggregating pipelines. When the
            store supports listeners, the cache is invalidated on append.
        dcount_exact_limit: Distinct values counted exactly by dcount.
    """

    def __init__(
        self,
        store: EventStoragePort,
        cache: QueryCache | None = None,
        dcount_exact_limit: int = DEFAULT_EXACT_LIMIT,
    ) -> None:
        self._store = store
        self._cache = cache
        self._dcount_exact_limit = dcount_exact_limit
        if cache is not None:
            add_listener = getattr(store, "add_listener", None)
            if add_listener is None:
                logger.warning(
                    "Store %s cannot report appends; query cache disabled",
                    type(store).__name__,
                )
                self._cache = None
            else:
                add_listener(cache.on_event)
                add_purge_listener = getattr(store, "add_purge_listener", None)
                if add_purge_listener is not None:
                    add_purge_listener(cache.invalidate_before)

    def stream(
        self,
        pipeline: Pipeline | Sequence[Any],
        time_range: TimeRange,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[Row]:
        """Run a pipeline and yield output rows.

        The pipeline is validated before any event is read.

        Raises:
            PipelineError: If a stage references an undefined field.
            InvalidRangeError: If the range is empty or inverted.
        """
        pipeline = self._prepare(pipeline)
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        events = self._store.query(
            time_range,
            entity=pipeline.entity_pushdown(),
            timeout=timeout,
            token=token,
        )
        return self._run(pipeline, time_range, events)

    async def execute(
        self,
        pipeline: Pipeline | Sequence[Any],
        time_range: TimeRange,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> list[Row]:
        """Run a pipeline and return all output rows."""
        pipeline = self._prepare(pipeline)
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        key = self._cache_key(pipeline, time_range)
        generation = None
        if key is not None:
            assert self._cache is not None
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            # Read before the store snapshot so racing appends refuse the put
            generation = self._cache.generation
        rows = [r async for r in self.stream(pipeline, time_range, token=token, timeout=timeout)]
        if key is not None:
            assert self._cache is not None
            self._cache.put(key, rows, generation)
        return rows

    async def buckets(
        self,
        pipeline: Pipeline | Sequence[Any],
        time_range: TimeRange,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> list[Bucket]:
        """Run a pipeline that ends in a summarize stage and return Buckets.

        Raises:
            PipelineError: If the last stage is not a summarize.
        """
        pipeline = self._prepare(pipeline)
        if not pipeline.stages or not isinstance(pipeline.stages[-1], Summarize):
            raise PipelineError("buckets() needs a pipeline ending in summarize")
        if not isinstance(time_range, TimeRange):
            time_range = TimeRange(*time_range)
        head = Pipeline(pipeline.stages[:-1])
        summarize = pipeline.stages[-1]
        rows = [r async for r in self.stream(head, time_range, token=token, timeout=timeout)]
        return window(
            rows,
            summarize.bin,
            summarize.by,
            summarize.aggregations,
            time_range=time_range,
            dcount_exact_limit=self._dcount_exact_limit,
        )

    def _prepare(self, pipeline: Pipeline | Sequence[Any]) -> Pipeline:
        if not isinstance(pipeline, Pipeline):
            pipeline = parse_pipeline(pipeline)
        pipeline.validate()
        return pipeline

    def _cache_key(self, pipeline: Pipeline, time_range: TimeRange) -> Any:
        if self._cache is None or not pipeline.aggregating:
            return None
        if not pipeline.hashable:
            return None
        bins = [s.bin for s in pipeline.stages if isinstance(s, Summarize)]
        return QueryCache.key(pipeline, time_range, bins[0])

    async def _run(
        self, pipeline: Pipeline, time_range: TimeRange, events: AsyncIterator[Any]
    ) -> AsyncIterator[Row]:
        rows: AsyncIterator[Row] = self._rows(events)
        for stage in pipeline.stages:
            rows = self._apply(stage, rows, time_range)
        async for row in rows:
            yield row

    @staticmethod
    async def _rows(events: AsyncIterator[Any]) -> AsyncIterator[Row]:
        async for event in events:
            yield event.to_row()

    def _apply(
        self, stage: Any, rows: AsyncIterator[Row], time_range: TimeRange
    ) -> AsyncIterator[Row]:
        if isinstance(stage, Filter):
            return _filter(rows, stage)
        if isinstance(stage, Extract):
            return _extract(rows, stage)
        if isinstance(stage, Project):
            return _project(rows, stage)
        if isinstance(stage, Limit):
            return _limit(rows, stage)
        if isinstance(stage, OrderBy):
            return _order(rows, stage)
        return self._summarize(rows, stage, time_range)

    async def _summarize(
        self, rows: AsyncIterator[Row], stage: Summarize, time_range: TimeRange
    ) -> AsyncIterator[Row]:
        collected = [row async for row in rows]
        for bucket in window(
            collected,
            stage.bin,
            stage.by,
            stage.aggregations,
            time_range=time_range,
            dcount_exact_limit=self._dcount_exact_limit,
        ):
            yield bucket.to_row()
