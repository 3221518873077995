"""Tests for pipeline stages, descriptors and static validation."""

import pytest

from loglens.core.exceptions import PipelineError, ValidationError
from loglens.core.pipeline import (
    Extract,
    Filter,
    Limit,
    OrderBy,
    Pipeline,
    Project,
    Summarize,
    parse_pipeline,
)
from loglens.core.predicates import Condition
from loglens.core.windower import avg, count


class TestStages:
    """Tests for stage construction."""

    @pytest.mark.core
    def test_project_accepts_single_field(self) -> None:
        assert Project("entity").fields == ("entity",)

    @pytest.mark.core
    def test_project_columns_with_alias(self) -> None:
        assert Project(("who=entity", "message")).columns() == [
            ("who", "entity"),
            ("message", "message"),
        ]

    @pytest.mark.core
    def test_extract_rejects_bad_pattern(self) -> None:
        with pytest.raises(PipelineError):
            Extract("(", "x")

    @pytest.mark.core
    def test_order_direction(self) -> None:
        with pytest.raises(PipelineError):
            OrderBy("timestamp", "up")

    @pytest.mark.core
    def test_negative_limit(self) -> None:
        with pytest.raises(PipelineError):
            Limit(-1)

    @pytest.mark.core
    def test_summarize_needs_aggregations(self) -> None:
        with pytest.raises(PipelineError):
            Summarize(())


class TestValidation:
    """Field references are checked before anything runs."""

    @pytest.mark.core
    def test_filter_on_unknown_field(self) -> None:
        pipeline = Pipeline((Filter(Condition("duration", ">", 1)),))
        with pytest.raises(PipelineError, match="undefined field 'duration'"):
            pipeline.validate()

    @pytest.mark.core
    def test_properties_paths_are_allowed(self) -> None:
        Pipeline((Filter(Condition("properties.duration", ">", 1)),)).validate()

    @pytest.mark.core
    def test_extract_adds_its_target(self) -> None:
        pipeline = Pipeline(
            (
                Extract(r"took (\d+)", "took", cast="int"),
                Filter(Condition("took", ">", 5)),
            )
        )
        assert "took" in pipeline.validate()

    @pytest.mark.core
    def test_project_narrows_known_fields(self) -> None:
        pipeline = Pipeline((Project(("entity",)), OrderBy("timestamp")))
        with pytest.raises(PipelineError, match="orderby"):
            pipeline.validate()

    @pytest.mark.core
    def test_summarize_output_fields(self) -> None:
        pipeline = Pipeline(
            (Summarize((count(), avg("properties.ms")), by=("entity",), bin=300),)
        )
        assert pipeline.validate() == {
            "window_start",
            "window_end",
            "entity",
            "count",
            "avg_properties.ms",
        }

    @pytest.mark.core
    def test_summarize_bin_needs_timestamp(self) -> None:
        pipeline = Pipeline((Project(("entity",)), Summarize((count(),), bin=300)))
        with pytest.raises(PipelineError, match="timestamp"):
            pipeline.validate()

    @pytest.mark.core
    def test_opaque_filter_is_not_checked(self) -> None:
        Pipeline((Filter(lambda row: True),)).validate()


class TestPipelineProperties:
    """Tests for pushdown, cache keys and shape helpers."""

    @pytest.mark.core
    def test_entity_pushdown_from_leading_filter(self) -> None:
        pipeline = Pipeline(
            (
                Filter(Condition("level", ">=", "Error")),
                Filter(Condition("entity", "==", "F1")),
            )
        )
        assert pipeline.entity_pushdown() == "F1"

    @pytest.mark.core
    def test_no_pushdown_after_other_stage(self) -> None:
        pipeline = Pipeline((Limit(5), Filter(Condition("entity", "==", "F1"))))
        assert pipeline.entity_pushdown() is None

    @pytest.mark.core
    def test_equal_pipelines_share_a_cache_key(self) -> None:
        a = Pipeline((Summarize((count(),), bin=300),))
        b = Pipeline((Summarize((count(),), bin=300),))
        assert a.hashable
        assert a == b
        assert hash(a) == hash(b)
        assert a != Pipeline((Summarize((count(),), bin=600),))

    @pytest.mark.core
    def test_streaming_and_aggregating(self) -> None:
        assert Pipeline((Filter(Condition("entity", "==", "F1")), Limit(1))).streaming
        assert Pipeline((Summarize((count(),)),)).aggregating

    @pytest.mark.core
    def test_rejects_non_stage(self) -> None:
        with pytest.raises(PipelineError):
            Pipeline(("filter",))  # type: ignore[arg-type]


class TestParsePipeline:
    """Tests for JSON-compatible pipeline descriptors."""

    @pytest.mark.core
    def test_full_descriptor(self) -> None:
        pipeline = parse_pipeline(
            [
                {"filter": {"field": "level", "op": ">=", "value": "Error"}},
                {"extract": {"pattern": r"(\d+) ms", "target": "ms", "cast": "float"}},
                {"summarize": {"aggregations": ["count", {"func": "avg", "field": "ms"}],
                               "by": ["entity"], "bin": "5m"}},
                {"orderBy": {"field": "count", "direction": "desc"}},
                {"limit": 10},
            ]
        )
        summarize = pipeline.stages[2]
        assert isinstance(summarize, Summarize)
        assert summarize.bin == 300.0
        assert [a.name for a in summarize.aggregations] == ["count", "avg_ms"]
        assert pipeline.stages[3] == OrderBy("count", "desc")
        assert pipeline.stages[4] == Limit(10)

    @pytest.mark.core
    def test_order_by_shorthand(self) -> None:
        assert parse_pipeline([{"order_by": "timestamp"}]).stages == (OrderBy("timestamp"),)

    @pytest.mark.core
    def test_project_string_shorthand(self) -> None:
        assert parse_pipeline([{"project": "entity"}]).stages == (Project(("entity",)),)

    @pytest.mark.core
    @pytest.mark.parametrize(
        "descriptor",
        [
            "filter",
            [{"unknown": {}}],
            [{"filter": {}, "limit": 1}],
            [{"limit": "many"}],
            [{"summarize": {"aggregations": ["median"]}}],
            [{"summarize": {"aggregations": ["count"], "bin": "soon"}}],
            [{"extract": {"pattern": "x"}}],
        ],
    )
    def test_malformed_descriptors_raise_validation_error(self, descriptor: object) -> None:
        with pytest.raises(ValidationError):
            parse_pipeline(descriptor)  # type: ignore[arg-type]
