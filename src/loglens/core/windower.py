"""Aggregation windower: fixed time buckets with per-group statistics.

Buckets are aligned to multiples of the bucket size from the Unix epoch and
only emitted for (slot, group) pairs with at least one contributing row.

Percentiles materialize every value of a group within its window and
interpolate linearly between order statistics, so they are exact. Distinct
counts are exact up to ``dcount_exact_limit`` values and HyperLogLog
estimates beyond it (see loglens.core.sketch).
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from loglens.core.exceptions import PipelineError
from loglens.core.models import Bucket, Event, TimeRange, align
from loglens.core.predicates import referenced_fields, resolve
from loglens.core.sketch import DEFAULT_EXACT_LIMIT, DistinctCounter

AGGREGATION_FUNCTIONS = frozenset(
    {"count", "countif", "dcount", "sum", "avg", "min", "max", "percentile", "stddev"}
)


@dataclass(frozen=True)
class Aggregation:
    """One aggregation within a summarize stage.

    Attributes:
        func: Aggregation function name.
        field: Input field (not used by count/countif).
        alias: Output column name. Defaults to e.g. ``avg_duration``.
        predicate: Row predicate for countif.
        p: Percentile in [0, 100] for percentile.
    """

    func: str
    field: str | None = None
    alias: str | None = None
    predicate: Any = None
    p: float | None = None

    def __post_init__(self) -> None:
        if self.func not in AGGREGATION_FUNCTIONS:
            raise PipelineError(f"unknown aggregation: {self.func!r}")
        if self.func not in ("count", "countif") and not self.field:
            raise PipelineError(f"{self.func} needs a field")
        if self.func == "countif" and self.predicate is None:
            raise PipelineError("countif needs a predicate")
        if self.func == "percentile":
            if self.p is None or not 0 <= self.p <= 100:
                raise PipelineError("percentile needs p between 0 and 100")

    @property
    def name(self) -> str:
        if self.alias:
            return self.alias
        if self.func in ("count", "countif"):
            return self.func
        if self.func == "percentile":
            return f"percentile_{self.field}_{self.p:g}"
        return f"{self.func}_{self.field}"

    def fields(self) -> set[str] | None:
        names: set[str] = set()
        if self.field:
            names.add(self.field)
        if self.predicate is not None:
            extra = referenced_fields(self.predicate)
            if extra is None:
                return None
            names |= extra
        return names


def count(alias: str | None = None) -> Aggregation:
    return Aggregation("count", alias=alias)


def countif(predicate: Any, alias: str | None = None) -> Aggregation:
    return Aggregation("countif", predicate=predicate, alias=alias)


def dcount(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("dcount", field, alias=alias)


def sum_(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("sum", field, alias=alias)


def avg(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("avg", field, alias=alias)


def min_(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("min", field, alias=alias)


def max_(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("max", field, alias=alias)


def percentile(field: str, p: float, alias: str | None = None) -> Aggregation:
    return Aggregation("percentile", field, alias=alias, p=p)


def stddev(field: str, alias: str | None = None) -> Aggregation:
    return Aggregation("stddev", field, alias=alias)


def _numeric(value: Any, agg: Aggregation) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PipelineError(
            f"{agg.func}({agg.field}) needs numeric values, got {value!r}"
        )
    return value


class RunningStats:
    """Welford running mean and population variance."""

    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def push(self, x: float) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (x - self.mean)

    @property
    def variance(self) -> float | None:
        if self.n == 0:
            return None
        return self.m2 / self.n

    @property
    def stddev(self) -> float | None:
        var = self.variance
        return None if var is None else math.sqrt(max(var, 0.0))


def interpolated_percentile(sorted_values: Sequence[float], p: float) -> float | None:
    """Linear interpolation between the order statistics around rank p."""
    if not sorted_values:
        return None
    rank = p / 100 * (len(sorted_values) - 1)
    lo = math.floor(rank)
    hi = math.ceil(rank)
    if lo == hi:
        return float(sorted_values[lo])
    frac = rank - lo
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * frac


class _Accumulator:
    def __init__(self, agg: Aggregation, dcount_exact_limit: int) -> None:
        self.agg = agg
        self.n = 0
        self.total = 0.0
        self.low: float | None = None
        self.high: float | None = None
        self.stats = RunningStats()
        self.values: list[float] = []
        self.distinct = (
            DistinctCounter(dcount_exact_limit) if agg.func == "dcount" else None
        )

    def push(self, row: Mapping[str, Any]) -> None:
        func = self.agg.func
        if func == "count":
            self.n += 1
            return
        if func == "countif":
            if self.agg.predicate(row):
                self.n += 1
            return
        assert self.agg.field is not None
        raw = resolve(row, self.agg.field)
        if func == "dcount":
            assert self.distinct is not None
            self.distinct.add(raw)
            return
        value = _numeric(raw, self.agg)
        if value is None:
            return
        if func == "sum":
            self.total += value
        elif func in ("avg", "stddev"):
            self.stats.push(value)
        elif func == "min":
            self.low = value if self.low is None else min(self.low, value)
        elif func == "max":
            self.high = value if self.high is None else max(self.high, value)
        elif func == "percentile":
            self.values.append(value)

    def result(self) -> Any:
        func = self.agg.func
        if func in ("count", "countif"):
            return self.n
        if func == "dcount":
            assert self.distinct is not None
            return self.distinct.count()
        if func == "sum":
            return self.total
        if func == "avg":
            return self.stats.mean if self.stats.n else None
        if func == "stddev":
            return self.stats.stddev
        if func == "min":
            return self.low
        if func == "max":
            return self.high
        assert self.agg.p is not None
        return interpolated_percentile(sorted(self.values), self.agg.p)


def window(
    rows: Iterable[Mapping[str, Any] | Event],
    bucket_size: float | None,
    group_keys: Sequence[str],
    aggregations: Sequence[Aggregation],
    *,
    time_range: TimeRange | None = None,
    time_field: str = "timestamp",
    dcount_exact_limit: int = DEFAULT_EXACT_LIMIT,
) -> list[Bucket]:
    """Bucket rows into aligned time windows and aggregate per group.

    Args:
        rows: Row mappings or Events.
        bucket_size: Window width in seconds. None aggregates over the
            whole time_range as a single window.
        group_keys: Fields whose values form the group.
        aggregations: Aggregations computed for each bucket.
        time_range: Required when bucket_size is None.
        time_field: Field holding the row timestamp.
        dcount_exact_limit: Distinct values kept exactly before dcount
            switches to the HyperLogLog estimate.

    Returns:
        Buckets ordered by window start, then by first appearance of the
        group within the window.

    Raises:
        PipelineError: On bad arguments or non-numeric inputs.
    """
    if bucket_size is not None and bucket_size <= 0:
        raise PipelineError("bucket size must be positive")
    if bucket_size is None and time_range is None:
        raise PipelineError("summarize without a bucket size needs a time range")
    if not aggregations:
        raise PipelineError("summarize needs at least one aggregation")
    names = [a.name for a in aggregations]
    if len(set(names)) != len(names):
        raise PipelineError(f"duplicate aggregation names: {names}")

    keys = tuple(group_keys)
    slots: dict[tuple[float, tuple[Any, ...]], list[_Accumulator]] = {}
    for item in rows:
        row = item.to_row() if isinstance(item, Event) else item
        if bucket_size is None:
            assert time_range is not None
            start = time_range.start
        else:
            ts = resolve(row, time_field)
            if ts is None:
                raise PipelineError(f"row has no {time_field}")
            start = align(ts, bucket_size)
        group = tuple(resolve(row, k) for k in keys)
        accs = slots.get((start, group))
        if accs is None:
            accs = [_Accumulator(a, dcount_exact_limit) for a in aggregations]
            slots[(start, group)] = accs
        for acc in accs:
            acc.push(row)

    buckets = []
    for (start, group), accs in slots.items():
        if bucket_size is None:
            assert time_range is not None
            end = time_range.end
        else:
            end = start + bucket_size
        buckets.append(
            Bucket(
                window_start=start,
                window_end=end,
                group=group,
                values={acc.agg.name: acc.result() for acc in accs},
                group_keys=keys,
            )
        )
    buckets.sort(key=lambda b: b.window_start)
    return buckets
