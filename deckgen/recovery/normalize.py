"""
Post-repair normalization and the fixed fallback shapes.

Every value that leaves the recovery layer passes through ``normalize_output``
so partial repairs never hand a hole (missing or null field the consumer
expects populated) to downstream code.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Optional

import structlog

logger = structlog.get_logger()

DEFAULT_SELF_CRITIQUE = {
    "layoutAction": "keep",
    "readabilityScore": 0.8,
    "textDensityStatus": "optimal",
}
DEFAULT_SPEAKER_NOTES = ["Generated slide."]


def minimal_wrapper(items: list[Any]) -> dict[str, Any]:
    """Wrap a flat list of strings into the smallest valid slide shape."""
    return {
        "layoutPlan": {
            "title": "Content",
            "background": "solid",
            "components": [
                {
                    "type": "text-bullets",
                    "title": "Key Points",
                    "content": list(items[:5]),
                }
            ],
        },
        "speakerNotesLines": ["Generated from extracted content."],
        "selfCritique": {
            "readabilityScore": 0.6,
            "textDensityStatus": "high",
            "layoutAction": "simplify",
        },
    }


def fallback_value() -> dict[str, Any]:
    """The fixed minimal value returned when recovery is abandoned."""
    return minimal_wrapper(["Content could not be generated for this slide."])


def best_enum_match(value: str, enum_values: Iterable[str], default: Optional[str] = None) -> str:
    """
    Map an over-long enum-like string to a legal value by substring containment.

    Tries, in order: a legal value the string starts with, a legal value it
    contains, then a legal value whose first word it contains.
    """
    legal = list(enum_values)
    lowered = value.lower()
    for candidate in legal:
        if lowered.startswith(candidate):
            return candidate
    for candidate in legal:
        if candidate in lowered:
            return candidate
    for candidate in legal:
        head = candidate.split("-")[0]
        if head and head in lowered:
            return candidate
    return default if default is not None else (legal[0] if legal else value)


def _normalize_self_critique(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return dict(DEFAULT_SELF_CRITIQUE)
    value["layoutAction"] = value.get("layoutAction") or DEFAULT_SELF_CRITIQUE["layoutAction"]
    score = value.get("readabilityScore")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        value["readabilityScore"] = DEFAULT_SELF_CRITIQUE["readabilityScore"]
    value["textDensityStatus"] = value.get("textDensityStatus") or DEFAULT_SELF_CRITIQUE["textDensityStatus"]
    return value


def _normalize_speaker_notes(value: Any) -> list[str]:
    if not isinstance(value, list):
        return list(DEFAULT_SPEAKER_NOTES)
    lines = [line for line in value if isinstance(line, str) and line.strip()]
    return lines or list(DEFAULT_SPEAKER_NOTES)


def normalize_output(value: Any, defaults: Optional[dict[str, Any]] = None) -> Any:
    """
    Backfill expected fields on a parsed value.

    Slide-shaped values (those carrying ``layoutPlan`` or ``selfCritique``) get
    a well-formed ``selfCritique`` and a non-empty ``speakerNotesLines``.
    ``defaults`` then fills any top-level key that is missing or None.
    Non-dict values are returned unchanged. Idempotent.
    """
    if not isinstance(value, dict):
        return value
    if "layoutPlan" in value or "selfCritique" in value:
        value["selfCritique"] = _normalize_self_critique(value.get("selfCritique"))
        value["speakerNotesLines"] = _normalize_speaker_notes(value.get("speakerNotesLines"))
    return backfill_defaults(value, defaults)


def backfill_defaults(value: Any, defaults: Optional[dict[str, Any]]) -> Any:
    """Set each default on a dict value whose key is missing or None."""
    if not isinstance(value, dict):
        return value
    for key, default in (defaults or {}).items():
        if value.get(key) is None:
            value[key] = copy.deepcopy(default)
    return value
