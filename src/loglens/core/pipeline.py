"""Query pipeline stages and their static validation.

A pipeline is an ordered tuple of stages. Field references are checked
against the fields each stage makes available before any event is read, so
a typo fails fast with PipelineError instead of producing empty results.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loglens.core.durations import parse_duration
from loglens.core.exceptions import PipelineError, ValidationError
from loglens.core.models import EVENT_FIELDS
from loglens.core.predicates import Condition, parse_predicate, referenced_fields
from loglens.core.windower import Aggregation

CASTS = {"str": str, "int": int, "float": float}


@dataclass(frozen=True)
class Filter:
    """Keep rows for which predicate is true."""

    predicate: Any


@dataclass(frozen=True)
class Extract:
    """Pull a regex capture out of a text field into a new field.

    Non-matching rows get None. With ``cast`` set, values that fail to
    convert also become None.
    """

    pattern: str
    target: str
    source: str = "message"
    group: int | str = 1
    cast: str | None = None

    def __post_init__(self) -> None:
        try:
            re.compile(self.pattern)
        except re.error as e:
            raise PipelineError(f"invalid extract pattern {self.pattern!r}: {e}") from e
        if self.cast is not None and self.cast not in CASTS:
            raise PipelineError(f"unknown cast {self.cast!r}")


@dataclass(frozen=True)
class Project:
    """Keep only the listed fields.

    Entries may rename with ``"alias=field"``.
    """

    fields: tuple[str, ...]

    def __post_init__(self) -> None:
        if isinstance(self.fields, str):
            object.__setattr__(self, "fields", (self.fields,))
        else:
            object.__setattr__(self, "fields", tuple(self.fields))
        if not self.fields:
            raise PipelineError("project needs at least one field")

    def columns(self) -> list[tuple[str, str]]:
        """Return (output name, source field) pairs."""
        pairs = []
        for column in self.fields:
            alias, sep, source = column.partition("=")
            if sep:
                pairs.append((alias.strip(), source.strip()))
            else:
                pairs.append((column, column))
        return pairs


@dataclass(frozen=True)
class Summarize:
    """Aggregate rows per group, optionally per time bucket."""

    aggregations: tuple[Aggregation, ...]
    by: tuple[str, ...] = ()
    bin: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "aggregations", tuple(self.aggregations))
        object.__setattr__(self, "by", tuple(self.by))
        if not self.aggregations:
            raise PipelineError("summarize needs at least one aggregation")
        if self.bin is not None and self.bin <= 0:
            raise PipelineError("summarize bin must be positive")


@dataclass(frozen=True)
class OrderBy:
    """Stable sort on one field; ties keep their incoming order."""

    field: str
    direction: str = "asc"

    def __post_init__(self) -> None:
        if self.direction not in ("asc", "desc"):
            raise PipelineError(f"order direction must be asc or desc, not {self.direction!r}")


@dataclass(frozen=True)
class Limit:
    """Keep at most n rows."""

    n: int

    def __post_init__(self) -> None:
        if self.n < 0:
            raise PipelineError("limit must not be negative")


Stage = Filter | Extract | Project | Summarize | OrderBy | Limit

_STREAMING = (Filter, Extract, Project)


def _check(name: str, known: set[str], index: int, stage: object) -> None:
    if name in known:
        return
    root, dot, _ = name.partition(".")
    if dot and root in known:
        return
    raise PipelineError(
        f"stage {index} ({type(stage).__name__.lower()}) references undefined field {name!r}"
    )


@dataclass(frozen=True)
class Pipeline:
    """An ordered sequence of stages."""

    stages: tuple[Stage, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        for stage in self.stages:
            if not isinstance(stage, (Filter, Extract, Project, Summarize, OrderBy, Limit)):
                raise PipelineError(f"not a pipeline stage: {stage!r}")

    @property
    def aggregating(self) -> bool:
        return any(isinstance(s, Summarize) for s in self.stages)

    @property
    def streaming(self) -> bool:
        """True when every stage can run without materializing rows."""
        return all(isinstance(s, _STREAMING + (Limit,)) for s in self.stages)

    def validate(self, fields: Iterable[str] = EVENT_FIELDS) -> set[str]:
        """Check every field reference; return the fields of the output rows.

        Raises:
            PipelineError: If a stage references an undefined field.
        """
        known = set(fields)
        for index, stage in enumerate(self.stages):
            if isinstance(stage, Filter):
                names = referenced_fields(stage.predicate)
                for name in sorted(names or ()):
                    _check(name, known, index, stage)
            elif isinstance(stage, Extract):
                _check(stage.source, known, index, stage)
                known.add(stage.target)
            elif isinstance(stage, Project):
                columns = stage.columns()
                for _, source in columns:
                    _check(source, known, index, stage)
                known = {alias for alias, _ in columns}
            elif isinstance(stage, Summarize):
                if stage.bin is not None:
                    _check("timestamp", known, index, stage)
                for key in stage.by:
                    _check(key, known, index, stage)
                for agg in stage.aggregations:
                    for name in sorted(agg.fields() or ()):
                        _check(name, known, index, stage)
                known = {"window_start", "window_end", *stage.by}
                known.update(agg.name for agg in stage.aggregations)
            elif isinstance(stage, OrderBy):
                _check(stage.field, known, index, stage)
        return known

    def entity_pushdown(self) -> str | None:
        """Entity named by a leading ``entity == X`` filter, if any."""
        for stage in self.stages:
            if not isinstance(stage, Filter):
                return None
            pred = stage.predicate
            if (
                isinstance(pred, Condition)
                and pred.field == "entity"
                and pred.op == "=="
                and isinstance(pred.value, str)
            ):
                return pred.value
        return None

    @property
    def hashable(self) -> bool:
        """True when the pipeline can be used as a cache key."""
        try:
            hash(self)
        except TypeError:
            return False
        return True


def _require(mapping: Mapping[str, Any], key: str, stage: str) -> Any:
    if key not in mapping:
        raise ValidationError(f"{stage} stage is missing {key!r}")
    return mapping[key]


def _parse_aggregation(descriptor: Any) -> Aggregation:
    if isinstance(descriptor, str):
        descriptor = {"func": descriptor}
    if not isinstance(descriptor, Mapping):
        raise ValidationError(f"aggregation must be a mapping, got {descriptor!r}")
    predicate = descriptor.get("predicate")
    try:
        return Aggregation(
            func=str(_require(descriptor, "func", "aggregation")),
            field=descriptor.get("field"),
            alias=descriptor.get("alias"),
            predicate=None if predicate is None else parse_predicate(predicate),
            p=descriptor.get("p"),
        )
    except PipelineError as e:
        raise ValidationError(str(e)) from e


def _parse_stage(descriptor: Any) -> Stage:
    if not isinstance(descriptor, Mapping) or len(descriptor) != 1:
        raise ValidationError(f"stage must be a single-key mapping, got {descriptor!r}")
    kind, body = next(iter(descriptor.items()))
    try:
        if kind == "filter":
            return Filter(parse_predicate(body))
        if kind == "extract":
            return Extract(
                pattern=_require(body, "pattern", kind),
                target=_require(body, "target", kind),
                source=body.get("source", "message"),
                group=body.get("group", 1),
                cast=body.get("cast"),
            )
        if kind == "project":
            return Project(body if isinstance(body, str) else tuple(body))
        if kind == "summarize":
            bin_ = body.get("bin")
            return Summarize(
                aggregations=tuple(
                    _parse_aggregation(a) for a in _require(body, "aggregations", kind)
                ),
                by=tuple(body.get("by", ())),
                bin=None if bin_ is None else parse_duration(bin_),
            )
        if kind in ("orderBy", "order_by"):
            if isinstance(body, str):
                return OrderBy(body)
            return OrderBy(_require(body, "field", kind), body.get("direction", "asc"))
        if kind == "limit":
            return Limit(int(body))
    except PipelineError as e:
        raise ValidationError(str(e)) from e
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"malformed {kind} stage: {body!r}") from e
    raise ValidationError(f"unknown stage: {kind!r}")


def parse_pipeline(descriptor: Sequence[Any]) -> Pipeline:
    """Build a Pipeline from a JSON-compatible list of stage mappings.

    Example:
        ```python
        parse_pipeline([
            {"filter": {"field": "level", "op": ">=", "value": "Error"}},
            {"summarize": {"aggregations": ["count"], "by": ["entity"], "bin": "5m"}},
            {"orderBy": {"field": "count", "direction": "desc"}},
        ])
        ```

    Raises:
        ValidationError: If the descriptor is malformed.
    """
    if isinstance(descriptor, (str, bytes)) or not isinstance(descriptor, Sequence):
        raise ValidationError("pipeline descriptor must be a list of stages")
    return Pipeline(tuple(_parse_stage(d) for d in descriptor))
