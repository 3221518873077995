"""Rolling-baseline anomaly detection over windowed series.

Every (group, metric) series owns a baseline of its trailing bucket values.
A bucket is scored against the baseline that precedes it, then joins the
baseline. Scoring a series is serialized by that series' lock; different
series share nothing and can be evaluated in parallel.
"""

import logging
import threading
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from loglens.core.exceptions import OutOfOrderBucketError, PipelineError, ValidationError
from loglens.core.models import AnomalyRecord, Bucket, Decision
from loglens.core.windower import RunningStats

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 2.0
DEFAULT_MIN_BASELINE_SAMPLES = 2
DEFAULT_BASELINE_SECONDS = 7 * 24 * 3600.0

SeriesKey = tuple[tuple[Any, ...], str]


@dataclass
class SeriesState:
    """Baseline observations of one series, oldest first."""

    observations: deque[tuple[float, float]] = field(default_factory=deque)
    last_window: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class BaselineStore:
    """Keyed owner of per-series baseline state."""

    def __init__(self) -> None:
        self._series: dict[SeriesKey, SeriesState] = {}
        self._lock = threading.Lock()

    def get(self, key: SeriesKey) -> SeriesState:
        """Return the state for key, creating it on first use."""
        with self._lock:
            state = self._series.get(key)
            if state is None:
                state = SeriesState()
                self._series[key] = state
            return state

    def reset(self, key: SeriesKey) -> None:
        with self._lock:
            self._series.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._series.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._series

    def __len__(self) -> int:
        return len(self._series)

    def __iter__(self) -> Iterator[SeriesKey]:
        with self._lock:
            return iter(list(self._series))


class AnomalyDetector:
    """Scores buckets against the rolling baseline of their series.

    Args:
        threshold: Scores strictly above this are anomalous.
        min_baseline_samples: Baseline size below which the decision is
            insufficient_baseline.
        baseline_buckets: Number of trailing buckets in the baseline.
            Defaults to seven days at the bucket's width.
        baselines: Baseline state owner. A fresh one is created if omitted.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        min_baseline_samples: int = DEFAULT_MIN_BASELINE_SAMPLES,
        baseline_buckets: int | None = None,
        baselines: BaselineStore | None = None,
    ) -> None:
        if threshold <= 0:
            raise ValidationError("threshold must be positive")
        if min_baseline_samples < 1:
            raise ValidationError("min_baseline_samples must be at least 1")
        if baseline_buckets is not None and baseline_buckets < 1:
            raise ValidationError("baseline_buckets must be at least 1")
        self.threshold = threshold
        self.min_baseline_samples = min_baseline_samples
        self.baseline_buckets = baseline_buckets
        self.baselines = baselines if baselines is not None else BaselineStore()

    def _window_count(self, bucket: Bucket) -> int:
        if self.baseline_buckets is not None:
            return self.baseline_buckets
        width = bucket.window_end - bucket.window_start
        return max(1, round(DEFAULT_BASELINE_SECONDS / width))

    def evaluate(self, bucket: Bucket, metric: str) -> AnomalyRecord:
        """Score one bucket and add it to its series baseline.

        Raises:
            PipelineError: If the bucket has no value named metric.
            OutOfOrderBucketError: If the bucket does not start after the
                last bucket seen for its series.
        """
        if metric not in bucket.values:
            raise PipelineError(f"bucket has no metric {metric!r}")
        observed = bucket.values[metric]
        if observed is not None and (
            isinstance(observed, bool) or not isinstance(observed, (int, float))
        ):
            raise PipelineError(f"metric {metric!r} is not numeric: {observed!r}")

        key: SeriesKey = (bucket.group, metric)
        state = self.baselines.get(key)
        width = bucket.window_end - bucket.window_start
        keep = self._window_count(bucket)
        with state.lock:
            if state.last_window is not None and bucket.window_start <= state.last_window:
                raise OutOfOrderBucketError(
                    f"series {key} got window {bucket.window_start} after "
                    f"{state.last_window}; rebaseline first"
                )
            horizon = bucket.window_start - keep * width
            while state.observations and (
                state.observations[0][0] < horizon or len(state.observations) > keep
            ):
                state.observations.popleft()

            stats = RunningStats()
            for _, value in state.observations:
                stats.push(value)
            mean = stats.mean if stats.n else None
            std = stats.stddev
            score = None
            if observed is None or stats.n < self.min_baseline_samples or not std:
                decision = Decision.INSUFFICIENT_BASELINE
            else:
                score = abs(observed - stats.mean) / std
                decision = Decision.ANOMALOUS if score > self.threshold else Decision.NORMAL

            if observed is not None:
                state.observations.append((bucket.window_start, float(observed)))
            state.last_window = bucket.window_start

        if decision is Decision.ANOMALOUS:
            logger.info(
                "Anomaly in %s/%s at %s: observed=%s score=%.2f",
                bucket.entity,
                metric,
                bucket.window_start,
                observed,
                score,
            )
        return AnomalyRecord(
            bucket=bucket,
            metric=metric,
            observed=observed,
            baseline_mean=mean,
            baseline_stddev=std,
            baseline_samples=stats.n,
            score=score,
            decision=decision,
            threshold=self.threshold,
        )

    def evaluate_series(self, buckets: Iterable[Bucket], metric: str) -> list[AnomalyRecord]:
        """Score buckets in order, e.g. the output of the windower."""
        return [self.evaluate(bucket, metric) for bucket in buckets]

    def last_window(self, group: tuple[Any, ...], metric: str) -> float | None:
        """Start of the last bucket scored for a series, None if never seen."""
        key: SeriesKey = (tuple(group), metric)
        if key not in self.baselines:
            return None
        return self.baselines.get(key).last_window

    def evaluate_new(self, buckets: Iterable[Bucket], metric: str) -> list[AnomalyRecord]:
        """Score only the buckets that start after their series' last window.

        Periodic detection over overlapping ranges re-windows buckets that
        were already scored; those are skipped instead of rejected.
        """
        records: list[AnomalyRecord] = []
        skipped = 0
        for bucket in buckets:
            last = self.last_window(bucket.group, metric)
            if last is not None and bucket.window_start <= last:
                skipped += 1
                continue
            records.append(self.evaluate(bucket, metric))
        if skipped:
            logger.debug("Skipped %d already scored buckets for %s", skipped, metric)
        return records

    def rebaseline(self, group: tuple[Any, ...], metric: str) -> None:
        """Forget a series' baseline so it can be fed from an earlier window."""
        self.baselines.reset((tuple(group), metric))

    def reset(self) -> None:
        """Forget every series."""
        self.baselines.clear()
