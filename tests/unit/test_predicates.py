"""Tests for declarative row predicates."""

import pytest

from loglens.core.exceptions import PipelineError, ValidationError
from loglens.core.models import Level
from loglens.core.predicates import (
    AllOf,
    AnyOf,
    Condition,
    Not,
    parse_predicate,
    referenced_fields,
    resolve,
)

ROW = {
    "entity": "F1",
    "level": Level.ERROR,
    "message": "timeout after 350 ms",
    "properties": {"duration_ms": 350, "region": "eu"},
}


class TestResolve:
    """Tests for field resolution."""

    @pytest.mark.core
    def test_exact_key(self) -> None:
        assert resolve(ROW, "entity") == "F1"

    @pytest.mark.core
    def test_dotted_path(self) -> None:
        assert resolve(ROW, "properties.region") == "eu"

    @pytest.mark.core
    def test_missing_nested_key_is_none(self) -> None:
        assert resolve(ROW, "properties.missing") is None

    @pytest.mark.core
    def test_missing_root_field_raises(self) -> None:
        with pytest.raises(PipelineError, match="undefined field"):
            resolve(ROW, "duration")


class TestCondition:
    """Tests for Condition operators."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("condition", "expected"),
        [
            (Condition("entity", "==", "F1"), True),
            (Condition("entity", "!=", "F1"), False),
            (Condition("level", ">=", "Warning"), True),
            (Condition("level", "<", Level.CRITICAL), True),
            (Condition("properties.duration_ms", ">", 300), True),
            (Condition("entity", "in", ["F1", "F2"]), True),
            (Condition("entity", "not_in", ["F2"]), True),
            (Condition("message", "contains", "timeout"), True),
            (Condition("message", "has", "TIMEOUT"), True),
            (Condition("message", "startswith", "time"), True),
            (Condition("message", "matches", r"\d+ ms"), True),
            (Condition("properties.missing", "exists", False), True),
        ],
    )
    def test_operators(self, condition: Condition, expected: bool) -> None:
        assert condition(ROW) is expected

    @pytest.mark.core
    def test_ordering_against_none_is_false(self) -> None:
        assert Condition("properties.missing", ">", 1)(ROW) is False

    @pytest.mark.core
    def test_unknown_operator_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown operator"):
            Condition("entity", "~=", "F1")

    @pytest.mark.core
    def test_in_requires_a_list(self) -> None:
        with pytest.raises(ValidationError):
            Condition("entity", "in", "F1")

    @pytest.mark.core
    def test_invalid_regex_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="invalid pattern"):
            Condition("message", "matches", "(")

    @pytest.mark.core
    def test_incomparable_types_raise_pipeline_error(self) -> None:
        with pytest.raises(PipelineError):
            Condition("entity", ">", 5)(ROW)


class TestCombinators:
    """Tests for AllOf, AnyOf and Not."""

    @pytest.mark.core
    def test_all_any_not(self) -> None:
        is_f1 = Condition("entity", "==", "F1")
        is_info = Condition("level", "==", "Info")
        assert AllOf((is_f1, Not(is_info)))(ROW)
        assert AnyOf((is_info, is_f1))(ROW)
        assert not AllOf((is_f1, is_info))(ROW)

    @pytest.mark.core
    def test_referenced_fields_of_nested_predicates(self) -> None:
        pred = AllOf((Condition("entity", "==", "F1"), Not(Condition("level", "==", "Info"))))
        assert referenced_fields(pred) == {"entity", "level"}

    @pytest.mark.core
    def test_opaque_callable_has_unknown_fields(self) -> None:
        assert referenced_fields(lambda row: True) is None
        assert referenced_fields(AllOf((lambda row: True,))) is None


class TestParsePredicate:
    """Tests for building predicates from descriptors."""

    @pytest.mark.core
    def test_parse_condition_defaults_to_equality(self) -> None:
        assert parse_predicate({"field": "entity", "value": "F1"}) == Condition(
            "entity", "==", "F1"
        )

    @pytest.mark.core
    def test_parse_nested(self) -> None:
        pred = parse_predicate(
            {
                "any": [
                    {"field": "entity", "op": "==", "value": "F2"},
                    {"not": {"field": "level", "op": "<", "value": "Error"}},
                ]
            }
        )
        assert pred(ROW) is True

    @pytest.mark.core
    def test_list_means_all(self) -> None:
        pred = parse_predicate([{"field": "entity", "value": "F1"}])
        assert isinstance(pred, AllOf)

    @pytest.mark.core
    def test_missing_field_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="missing 'field'"):
            parse_predicate({"op": "==", "value": 1})

    @pytest.mark.core
    def test_non_mapping_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_predicate("entity == F1")
