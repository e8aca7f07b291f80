"""Tests for repetition-loop detection strategies."""

import json

import pytest

from deckgen.recovery.degeneration import DegenerationDetector


@pytest.fixture
def detector() -> DegenerationDetector:
    return DegenerationDetector()


def _slide() -> str:
    return json.dumps(
        {
            "layoutPlan": {
                "title": "Quarterly revenue",
                "components": [{"type": "metric-cards", "content": ["Revenue up 12%", "Churn down 3%"]}],
            },
            "speakerNotesLines": ["Open with the headline number."],
        }
    )


def test_character_run_in_trailing_window(detector: DegenerationDetector) -> None:
    text = '{"title": "' + "a" * 60
    match = detector.first_match(text)
    assert match is not None
    assert match.strategy == "char_run"
    assert detector.is_degenerate(text)


def test_character_run_outside_window_is_ignored(detector: DegenerationDetector) -> None:
    """Only the tail is inspected for character runs."""
    text = "z" * 20 + " " + " ".join(f"word{i}" for i in range(40))
    assert detector.first_match(text, ["char_run"]) is None


def test_enum_phrase_loop(detector: DegenerationDetector) -> None:
    text = '{"type": "' + "icon-grid-" * 5 + '"'
    match = detector.first_match(text)
    assert match is not None
    assert match.strategy == "phrase_loop"
    assert match.unit.lower() == "icon-grid-"


def test_word_loop_is_proactive(detector: DegenerationDetector) -> None:
    text = "the slide shows the slide shows the slide shows the slide shows the result"
    assert detector.is_degenerate(text)
    match = detector.earliest_match(text, ["word_loop"])
    assert match is not None
    assert match.start == 0
    assert match.unit.strip() == "the slide shows"


def test_zero_pattern(detector: DegenerationDetector) -> None:
    assert detector.is_degenerate("values: 0, 0, 0, 0, 0, 0, 0")


def test_low_entropy(detector: DegenerationDetector) -> None:
    assert detector.is_degenerate("ab" * 20)


def test_generic_substring_loop_on_failed_parse(detector: DegenerationDetector) -> None:
    match = detector.first_match("ab" * 2000)
    assert match is not None
    assert match.strategy == "substring_loop"


def test_punctuation_only_loop_is_not_a_substring_loop(detector: DegenerationDetector) -> None:
    assert detector.first_match('}, {"": ""}, ' * 10, ["substring_loop"]) is None


def test_valid_slide_is_not_degenerate(detector: DegenerationDetector) -> None:
    assert not detector.is_degenerate(_slide())
    assert detector.first_match(_slide()) is None


def test_empty_text_is_not_degenerate(detector: DegenerationDetector) -> None:
    assert not detector.is_degenerate("")


def test_earliest_match_prefers_first_loop(detector: DegenerationDetector) -> None:
    text = '{"a": "' + "process-flow-" * 4 + '", "b": "' + "x" * 30
    match = detector.earliest_match(text)
    assert match is not None
    assert match.start == text.index("process-flow-")


def test_custom_enum_vocabulary() -> None:
    detector = DegenerationDetector(["bar-chart"])
    match = detector.first_match("bar-chart_" * 5, ["enum_concat"])
    assert match is not None
    assert match.strategy == "enum_concat"
