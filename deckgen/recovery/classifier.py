"""
Failure classification for model text that did not parse as the expected JSON.

Classification runs before any repair because the strategies conflict:
auto-closing brackets corrupts a garbage-suffix case, and cutting at the last
balanced point throws away a truncated one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

import structlog

from deckgen.models import Confidence, JsonClassification, JsonFailureKind
from deckgen.recovery.degeneration import DegenerationDetector

logger = structlog.get_logger()

_STRING_ARRAY_RE = re.compile(r'^\s*\[\s*"[^"]*"\s*(?:,\s*"[^"]*"\s*)*\]\s*$')
_JUNK_SUFFIX_RE = re.compile(r"^[\s,\"'`\]}]*$")
_CLOSERS = {"{": "}", "[": "]"}


@dataclass
class JsonScan:
    """Result of a string-aware bracket scan starting at the first ``{`` or ``[``."""

    start: int
    last_balanced_end: int = -1
    stack: list[str] = field(default_factory=list)
    in_string: bool = False

    @property
    def depth(self) -> int:
        return len(self.stack)

    @property
    def balanced(self) -> bool:
        return self.last_balanced_end != -1


def find_json_start(text: str) -> int:
    """Index of the first ``{`` or ``[``, or -1."""
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else -1


def scan_json_structure(text: str, start: Optional[int] = None) -> Optional[JsonScan]:
    """
    Track bracket depth from the first opener with string and escape awareness.

    ``last_balanced_end`` is the exclusive end offset of the last point where
    depth returned to zero. ``stack`` holds the closers still owed, innermost
    last. Stray or mismatched closers are ignored. Returns None when the text
    has no opener at all.
    """
    if start is None:
        start = find_json_start(text)
    if start == -1:
        return None
    scan = JsonScan(start=start)
    escape = False
    for i in range(start, len(text)):
        char = text[i]
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            scan.in_string = not scan.in_string
            continue
        if scan.in_string:
            continue
        if char in _CLOSERS:
            scan.stack.append(_CLOSERS[char])
        elif char in "}]":
            if scan.stack and scan.stack[-1] == char:
                scan.stack.pop()
                if not scan.stack:
                    scan.last_balanced_end = i + 1
    return scan


class FailureClassifier:
    """Classifies failed parses. Never raises; the worst case is ``unknown``/``low``."""

    def __init__(self, detector: Optional[DegenerationDetector] = None) -> None:
        self.detector = detector or DegenerationDetector()

    def classify(self, text: Optional[str]) -> JsonClassification:
        try:
            return self._classify(text or "")
        except Exception as e:
            logger.warning("json_classify_error", error=str(e))
            return JsonClassification(kind=JsonFailureKind.UNKNOWN, confidence=Confidence.LOW)

    def _classify(self, text: str) -> JsonClassification:
        trimmed = text.strip()
        if not trimmed:
            return JsonClassification(kind=JsonFailureKind.EMPTY_RESPONSE, confidence=Confidence.HIGH)

        match = self.detector.first_match(trimmed, DegenerationDetector.CLASSIFY)
        if match is not None:
            logger.warning("json_degeneration_detected", strategy=match.strategy, unit=match.unit[:40])
            return JsonClassification(kind=JsonFailureKind.DEGENERATION, confidence=Confidence.HIGH)

        if _STRING_ARRAY_RE.match(trimmed):
            return JsonClassification(kind=JsonFailureKind.STRING_ARRAY, confidence=Confidence.HIGH)

        if trimmed.startswith('"') and '\\"' in trimmed:
            return JsonClassification(kind=JsonFailureKind.ESCAPED_JSON, confidence=Confidence.MEDIUM)

        lead = len(text) - len(text.lstrip())
        scan = scan_json_structure(trimmed)
        if scan is None:
            return JsonClassification(kind=JsonFailureKind.UNKNOWN, confidence=Confidence.LOW)

        if scan.balanced and scan.last_balanced_end < len(trimmed):
            suffix = trimmed[scan.last_balanced_end :]
            confidence = (
                Confidence.HIGH
                if _JUNK_SUFFIX_RE.match(suffix) or suffix.lstrip().startswith(",")
                else Confidence.MEDIUM
            )
            return JsonClassification(
                kind=JsonFailureKind.GARBAGE_SUFFIX,
                confidence=confidence,
                valid_prefix_end=lead + scan.last_balanced_end,
            )

        if scan.depth > 0:
            return JsonClassification(kind=JsonFailureKind.TRUNCATION, confidence=Confidence.HIGH)

        return JsonClassification(kind=JsonFailureKind.UNKNOWN, confidence=Confidence.LOW)


_default_classifier = FailureClassifier()


def classify_json_failure(text: Optional[str]) -> JsonClassification:
    """Classify with the default enum vocabulary."""
    return _default_classifier.classify(text)
