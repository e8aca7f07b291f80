"""Tests for the layered JSON repair pipeline and the normalization pass."""

from __future__ import annotations

import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from deckgen.config import Settings
from deckgen.models import Confidence, JsonClassification, JsonFailureKind
from deckgen.recovery.normalize import (
    best_enum_match,
    fallback_value,
    minimal_wrapper,
    normalize_output,
)
from deckgen.recovery.repair import (
    RepairFailedError,
    RepairPipeline,
    close_open_structures,
    strip_json_fences,
)


@pytest.fixture
def pipeline(settings: Settings) -> RepairPipeline:
    return RepairPipeline(settings)


class TestHelpers:
    def test_strip_fences(self) -> None:
        assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_json_fences('{"a": 1}') == '{"a": 1}'

    def test_strip_fences_keeps_interior_backticks(self) -> None:
        text = '{"cmd": "run ```make``` now"}'
        assert strip_json_fences(text) == text
        assert strip_json_fences("```json\n" + text + "\n```\nHope this helps.") == text
        assert strip_json_fences('```{"a": 1}```') == '{"a": 1}'

    def test_close_open_structures(self) -> None:
        assert close_open_structures('{"a": [1, {"b": "c') == '{"a": [1, {"b": "c"}]}'


class TestLocalRepair:
    def test_garbage_suffix_prefix_extraction(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('{"a":1,"b":2}, ""')
        assert outcome.value == {"a": 1, "b": 2}
        assert outcome.strategy == "prefix_extraction"
        assert outcome.classification is not None
        assert outcome.classification.kind == JsonFailureKind.GARBAGE_SUFFIX

    def test_discarded_suffix_never_in_value(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('{"title": "Intro"}\nNote: LEAKED commentary follows')
        assert outcome.value == {"title": "Intro"}
        assert "LEAKED" not in json.dumps(outcome.value)

    def test_truncated_string(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('{"a": "hello')
        assert outcome.value == {"a": "hello"}
        assert outcome.classification.kind == JsonFailureKind.TRUNCATION

    @pytest.mark.parametrize(
        "text",
        [
            '{"items": ["one", "two",',
            '{"a": 1, "b":',
            '{"slides": [{"title": "A"}, {"title": "B", "notes": "half',
            '[{"a": 1}, {',
        ],
    )
    def test_truncation_yields_well_formed_json(self, pipeline: RepairPipeline, text: str) -> None:
        outcome = pipeline.repair_locally(text)
        # Round-trips through the serializer: balanced, no dangling commas
        assert json.loads(json.dumps(outcome.value)) == outcome.value
        assert isinstance(outcome.value, (dict, list))

    def test_string_array_wrapped(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('["x","y","z"]')
        assert outcome.value == minimal_wrapper(["x", "y", "z"])
        component = outcome.value["layoutPlan"]["components"][0]
        assert component["content"] == ["x", "y", "z"]
        assert outcome.strategy == "string_array_wrap"

    def test_wrapper_keeps_at_most_five_items(self) -> None:
        wrapped = minimal_wrapper([str(i) for i in range(8)])
        assert wrapped["layoutPlan"]["components"][0]["content"] == ["0", "1", "2", "3", "4"]

    def test_escaped_json_unwrapped(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('"{\\"a\\": 1, \\"b\\": [1, 2]}"')
        assert outcome.value == {"a": 1, "b": [1, 2]}
        assert outcome.strategy == "unescape"

    def test_degenerate_repetition_does_not_hang(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally("ab" * 2000)
        assert outcome.classification.kind == JsonFailureKind.DEGENERATION
        assert outcome.fallback_used
        assert outcome.value == fallback_value()

    def test_long_degenerate_run_is_bounded(self, pipeline: RepairPipeline) -> None:
        text = '{"a": "' + "ab1" * 4666 + "z" * 12
        assert not pipeline.exceeds_ceiling(text)
        start = time.perf_counter()
        outcome = pipeline.repair_locally(text)
        assert time.perf_counter() - start < 2.0
        assert outcome.classification.kind == JsonFailureKind.DEGENERATION

    def test_degeneration_salvages_prefix(self, pipeline: RepairPipeline) -> None:
        text = '{"title": "Growth", "components": [{"type": "text-bullets", "content": ["Point one", "Point ' + "o" * 80
        outcome = pipeline.repair_locally(text)
        assert outcome.classification.kind == JsonFailureKind.DEGENERATION
        assert not outcome.fallback_used
        assert outcome.value["title"] == "Growth"
        assert outcome.value["components"][0]["type"] == "text-bullets"

    def test_overlong_enum_value_normalized(self, pipeline: RepairPipeline) -> None:
        text = '{"type": "metric-cards-' + "metric-cards-" * 5
        outcome = pipeline.repair_locally(text)
        assert outcome.value == {"type": "metric-cards"}

    def test_trailing_commas_cleaned(self, pipeline: RepairPipeline) -> None:
        outcome = pipeline.repair_locally('{"a": 1, "b": [1, 2,], ')
        assert outcome.value == {"a": 1, "b": [1, 2]}

    def test_idempotent(self, pipeline: RepairPipeline) -> None:
        for text in ('{"a": "hello', '{"a":1}, ""', "ab" * 2000, '["x","y"]'):
            first = pipeline.repair_locally(text)
            second = pipeline.repair_locally(text)
            assert first.value == second.value
            assert first.strategy == second.strategy

    def test_unrepairable_raises_with_excerpt(self, pipeline: RepairPipeline) -> None:
        with pytest.raises(RepairFailedError) as exc_info:
            pipeline.repair_locally("Sorry, I cannot produce that.")
        assert exc_info.value.kind == JsonFailureKind.UNKNOWN
        assert exc_info.value.excerpt.startswith("Sorry")

    def test_size_ceiling_skips_classification(self, settings: Settings) -> None:
        classifier = MagicMock()
        pipeline = RepairPipeline(settings, classifier=classifier)
        text = '{"a": "' + "long text " * 2000
        outcome = pipeline.repair_locally(text)
        assert outcome.value == fallback_value()
        assert outcome.strategy == "size_ceiling"
        classifier.classify.assert_not_called()


class TestEscalation:
    @pytest.mark.asyncio
    async def test_escalates_after_local_layers(self, settings: Settings) -> None:
        escalate = AsyncMock(return_value='```json\n{"fixed": true}\n```')
        pipeline = RepairPipeline(settings, escalate=escalate)
        outcome = await pipeline.repair("Sorry, no JSON today.", schema={"type": "object"})
        assert outcome.value == {"fixed": True}
        assert outcome.strategy == "model_escalation"
        escalate.assert_awaited_once_with("Sorry, no JSON today.", {"type": "object"})

    @pytest.mark.asyncio
    async def test_no_escalation_when_local_repair_succeeds(self, settings: Settings) -> None:
        escalate = AsyncMock()
        pipeline = RepairPipeline(settings, escalate=escalate)
        outcome = await pipeline.repair('{"a": "hello')
        assert outcome.value == {"a": "hello"}
        escalate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_degeneration_never_escalates(self, settings: Settings) -> None:
        escalate = AsyncMock()
        pipeline = RepairPipeline(settings, escalate=escalate)
        outcome = await pipeline.repair("ab" * 2000)
        assert outcome.fallback_used
        escalate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_schema_drift_goes_to_escalation(self, settings: Settings) -> None:
        escalate = AsyncMock(return_value='{"title": "x"}')
        pipeline = RepairPipeline(settings, escalate=escalate)
        drift = JsonClassification(kind=JsonFailureKind.SCHEMA_DRIFT, confidence=Confidence.MEDIUM)
        outcome = await pipeline.repair('{"heading": "x"}', drift, {"type": "object", "required": ["title"]})
        assert outcome.value == {"title": "x"}
        escalate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_escalation_error_becomes_repair_failure(self, settings: Settings) -> None:
        escalate = AsyncMock(side_effect=TimeoutError("repair call timed out"))
        pipeline = RepairPipeline(settings, escalate=escalate)
        with pytest.raises(RepairFailedError):
            await pipeline.repair("Sorry, no JSON today.")


class TestNormalize:
    def test_self_critique_backfilled(self) -> None:
        value = normalize_output({"layoutPlan": {"title": "T"}, "selfCritique": None, "speakerNotesLines": ["", "  "]})
        assert value["selfCritique"] == {
            "layoutAction": "keep",
            "readabilityScore": 0.8,
            "textDensityStatus": "optimal",
        }
        assert value["speakerNotesLines"] == ["Generated slide."]

    def test_partial_self_critique_completed(self) -> None:
        value = normalize_output({"layoutPlan": {}, "selfCritique": {"layoutAction": "simplify", "readabilityScore": "bad"}})
        assert value["selfCritique"]["layoutAction"] == "simplify"
        assert value["selfCritique"]["readabilityScore"] == 0.8
        assert value["selfCritique"]["textDensityStatus"] == "optimal"

    def test_non_slide_values_untouched_except_defaults(self) -> None:
        value = normalize_output({"outline": ["a"], "theme": None}, defaults={"theme": "light", "count": 1})
        assert value == {"outline": ["a"], "theme": "light", "count": 1}

    def test_idempotent(self) -> None:
        once = normalize_output({"layoutPlan": {}, "speakerNotesLines": []})
        twice = normalize_output(json.loads(json.dumps(once)))
        assert once == twice

    def test_best_enum_match(self) -> None:
        legal = ["text-bullets", "metric-cards", "chart-frame"]
        assert best_enum_match("metric-cards-metric-cards", legal) == "metric-cards"
        assert best_enum_match("bar-chart-frame-extra", legal) == "chart-frame"
        assert best_enum_match("zzz", legal) == "text-bullets"
