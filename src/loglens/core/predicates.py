"""Declarative row predicates used by filter stages and alert rules.

Predicates are plain callables over a row mapping. The declarative forms
(Condition, AllOf, AnyOf, Not) also report the fields they reference so a
pipeline can be checked before it runs.
"""

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loglens.core.exceptions import PipelineError, ValidationError
from loglens.core.models import Level

Row = Mapping[str, Any]
Predicate = Callable[[Row], bool]


def resolve(row: Row, name: str) -> Any:
    """Look up a field in a row.

    An exact key wins. Otherwise the name is treated as a dotted path whose
    first segment must exist; missing nested keys resolve to None.

    Raises:
        PipelineError: If the root field is not present in the row.
    """
    if name in row:
        return row[name]
    root, _, rest = name.partition(".")
    if not rest or root not in row:
        raise PipelineError(f"undefined field: {name}")
    value: Any = row[root]
    for part in rest.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _coerce(left: Any, right: Any) -> Any:
    if isinstance(left, Level) and isinstance(right, str):
        return Level.parse(right)
    return right


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        return op(left, _coerce(left, right))

    return compare


def _equals(left: Any, right: Any) -> bool:
    return left == _coerce(left, right)


def _in(left: Any, right: Any) -> bool:
    return any(_equals(left, item) for item in right)


def _contains(left: Any, right: Any) -> bool:
    return left is not None and str(right) in str(left)


def _has(left: Any, right: Any) -> bool:
    return left is not None and str(right).lower() in str(left).lower()


def _matches(left: Any, right: Any) -> bool:
    return left is not None and re.search(right, str(left)) is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": _equals,
    "!=": lambda left, right: not _equals(left, right),
    "<": _ordered(operator.lt),
    "<=": _ordered(operator.le),
    ">": _ordered(operator.gt),
    ">=": _ordered(operator.ge),
    "in": _in,
    "not_in": lambda left, right: not _in(left, right),
    "contains": _contains,
    "not_contains": lambda left, right: not _contains(left, right),
    "has": _has,
    "startswith": lambda left, right: left is not None and str(left).startswith(right),
    "endswith": lambda left, right: left is not None and str(left).endswith(right),
    "matches": _matches,
    "exists": lambda left, right: (left is not None) == bool(right),
}


@dataclass(frozen=True)
class Condition:
    """Compare one row field against a constant.

    Example:
        ```python
        Condition("level", ">=", "Error")
        Condition("properties.duration_ms", ">", 500)
        ```
    """

    field: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValidationError(f"unknown operator: {self.op!r}")
        if self.op in ("in", "not_in"):
            if isinstance(self.value, (str, bytes)) or not hasattr(self.value, "__iter__"):
                raise ValidationError(f"operator {self.op!r} needs a list of values")
            object.__setattr__(self, "value", tuple(self.value))
        if self.op == "matches":
            try:
                re.compile(self.value)
            except (re.error, TypeError) as e:
                raise ValidationError(f"invalid pattern {self.value!r}: {e}") from e

    def __call__(self, row: Row) -> bool:
        left = resolve(row, self.field)
        try:
            return OPERATORS[self.op](left, self.value)
        except TypeError as e:
            raise PipelineError(
                f"cannot apply {self.op!r} to field {self.field!r}: {e}"
            ) from e

    def fields(self) -> set[str]:
        return {self.field}


@dataclass(frozen=True)
class AllOf:
    """True when every child predicate is true."""

    predicates: tuple[Any, ...] = field(default_factory=tuple)

    def __call__(self, row: Row) -> bool:
        return all(p(row) for p in self.predicates)

    def fields(self) -> set[str] | None:
        return _union_fields(self.predicates)


@dataclass(frozen=True)
class AnyOf:
    """True when at least one child predicate is true."""

    predicates: tuple[Any, ...] = field(default_factory=tuple)

    def __call__(self, row: Row) -> bool:
        return any(p(row) for p in self.predicates)

    def fields(self) -> set[str] | None:
        return _union_fields(self.predicates)


@dataclass(frozen=True)
class Not:
    """Negates a predicate."""

    predicate: Any

    def __call__(self, row: Row) -> bool:
        return not self.predicate(row)

    def fields(self) -> set[str] | None:
        return referenced_fields(self.predicate)


def referenced_fields(predicate: Any) -> set[str] | None:
    """Fields a predicate reads, or None when it is an opaque callable."""
    fields = getattr(predicate, "fields", None)
    if callable(fields):
        result: set[str] | None = fields()
        return result
    return None


def _union_fields(predicates: tuple[Any, ...]) -> set[str] | None:
    found: set[str] = set()
    for p in predicates:
        names = referenced_fields(p)
        if names is None:
            return None
        found |= names
    return found


def parse_predicate(descriptor: Any) -> Any:
    """Build a predicate from its JSON-compatible descriptor.

    Accepted shapes::

        {"field": "level", "op": ">=", "value": "Error"}
        {"all": [<descriptor>, ...]}
        {"any": [<descriptor>, ...]}
        {"not": <descriptor>}

    A list is shorthand for ``{"all": [...]}``.

    Raises:
        ValidationError: If the descriptor is malformed.
    """
    if isinstance(descriptor, list):
        return AllOf(tuple(parse_predicate(d) for d in descriptor))
    if not isinstance(descriptor, Mapping):
        raise ValidationError(f"predicate must be a mapping, got {descriptor!r}")
    if "all" in descriptor:
        return AllOf(tuple(parse_predicate(d) for d in _as_list(descriptor["all"])))
    if "any" in descriptor:
        return AnyOf(tuple(parse_predicate(d) for d in _as_list(descriptor["any"])))
    if "not" in descriptor:
        return Not(parse_predicate(descriptor["not"]))
    try:
        return Condition(
            field=str(descriptor["field"]),
            op=str(descriptor.get("op", "==")),
            value=descriptor.get("value"),
        )
    except KeyError as e:
        raise ValidationError(f"predicate is missing {e.args[0]!r}") from e


def _as_list(value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise ValidationError(f"expected a list of predicates, got {value!r}")
    return value
