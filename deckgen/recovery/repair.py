"""
Layered repair of malformed model JSON.

Given raw text and its classification, the pipeline runs a per-kind plan of
local layers in strict order and stops at the first layer whose result parses
and is accepted by the caller. Local layers are deterministic: the same input
always yields the same output. Model escalation runs only after every local
layer has failed, and never for degenerate or empty text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import json_repair
import structlog

from deckgen.config import Settings, get_settings
from deckgen.models import JsonClassification, JsonFailureKind
from deckgen.observability import metrics as obs_metrics
from deckgen.recovery.classifier import FailureClassifier, find_json_start, scan_json_structure
from deckgen.recovery.degeneration import DegenerationDetector
from deckgen.recovery.normalize import best_enum_match, fallback_value, minimal_wrapper

logger = structlog.get_logger()

_NOT_PARSED = object()

Escalator = Callable[[str, Optional[dict[str, Any]]], Awaitable[Optional[str]]]

# Ordered dangling-fragment fixes; each applied only if it matches
_TRUNCATION_FIXES: list[tuple[re.Pattern[str], Callable[[re.Match[str]], str]]] = [
    (re.compile(r"([a-z0-9])\1{5,}[^\"]*$"), lambda m: ""),
    (re.compile(r",\s*\{\s*\"[^\"]+\"\s*:\s*\"[^\"]*\"?\s*$"), lambda m: ""),
    (re.compile(r",\s*\"[a-zA-Z]{1,3}$"), lambda m: ""),
    (re.compile(r",\s*\"[^\"]+\"\s*:\s*\"[^\"]*$"), lambda m: ""),
    (re.compile(r":\s*$"), lambda m: ": null"),
    (re.compile(r":\s*\"[^\"]*$"), lambda m: m.group(0) + '"'),
    (re.compile(r",\s*$"), lambda m: ""),
    (re.compile(r",?\s*\{\s*$"), lambda m: ""),
]

_SEMANTIC_FIXES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r",\s*\"\"\s*}"), "}"),
    (re.compile(r",?\s*\"\"\s*\]"), "]"),
    (re.compile(r",\s*\"\"(\s*[}\]])"), r"\1"),
    (re.compile(r",\s*,"), ","),
    (re.compile(r",\s*}"), "}"),
    (re.compile(r",\s*\]"), "]"),
]

_OPENING_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\n```\s*$")
_STRING_ARRAY_RE = re.compile(r"\[\s*(?:\"[^\"]*\"\s*,?\s*)+\]")
# Hyphenated string value that is closed or runs to the end of the text
_ENUM_LIKE_VALUE_RE = re.compile(r":\s*\"([a-z0-9]+(?:[-_][a-z0-9]+)+)[-_]*(\"|$)", re.IGNORECASE)


class RepairFailedError(Exception):
    """All applicable layers failed for this text."""

    def __init__(self, kind: JsonFailureKind, excerpt: str) -> None:
        super().__init__(f"JSON repair failed ({kind.value}): {excerpt!r}")
        self.kind = kind
        self.excerpt = excerpt


@dataclass
class RepairOutcome:
    value: Any
    strategy: str
    classification: Optional[JsonClassification] = None
    fallback_used: bool = False


def strip_json_fences(raw: str) -> str:
    """
    Remove markdown code fences around a JSON payload.

    Only a leading fence and the fence closing it are removed. A JSON string
    cannot hold a raw newline, so a closing fence is a newline followed by
    backticks; backticks inside string values are left alone.
    """
    cleaned = raw.strip()
    opening = _OPENING_FENCE_RE.match(cleaned)
    if opening:
        cleaned = cleaned[opening.end():]
        closing = cleaned.find("\n```")
        if closing != -1:
            cleaned = cleaned[:closing]
        elif cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    else:
        cleaned = _TRAILING_FENCE_RE.sub("", cleaned)
    return cleaned.strip()


def sanitize_json(text: str) -> str:
    """Fix common model JSON errors: line comments, trailing commas, NaN/Infinity."""
    text = re.sub(r"(?m)^\s*//.*$", "", text)
    text = re.sub(r",\s*//[^\n]*", ",", text)
    text = re.sub(r",\s*([}\]])", r"\1", text)
    text = re.sub(r"\bNaN\b", "null", text)
    text = re.sub(r"-?Infinity\b", "null", text)
    return text


def try_parse(text: Optional[str]) -> Any:
    """``json.loads`` or the ``_NOT_PARSED`` sentinel."""
    if text is None:
        return _NOT_PARSED
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return _NOT_PARSED


def is_parsed(value: Any) -> bool:
    return value is not _NOT_PARSED


def close_open_structures(text: str) -> str:
    """Close a dangling string, then append the missing closers innermost first."""
    scan = scan_json_structure(text)
    if scan is None:
        return text
    if scan.in_string:
        text += '"'
    if scan.stack:
        text += "".join(reversed(scan.stack))
    return text


def _structured(value: Any) -> bool:
    return isinstance(value, (dict, list))


class RepairPipeline:
    """
    Per-kind repair plans over raw model text.

    ``accept`` decides whether a parsed candidate is good enough to stop at; by
    default any object or array is. ``escalate`` is the last-resort model call.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        classifier: Optional[FailureClassifier] = None,
        escalate: Optional[Escalator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cfg = self._settings.repair
        self.detector = DegenerationDetector(self._cfg.enum_values)
        self.classifier = classifier or FailureClassifier(self.detector)
        self.escalate = escalate
        self._plans: dict[JsonFailureKind, list[tuple[str, Callable[[str], Optional[str]]]]] = {
            JsonFailureKind.GARBAGE_SUFFIX: [
                ("prefix_extraction", self._prefix_extraction),
                ("truncation_repair", self._truncation_repair),
                ("semantic_cleanup", self._semantic_cleanup),
            ],
            JsonFailureKind.TRUNCATION: [
                ("sanitize", sanitize_json),
                ("truncation_repair", self._truncation_repair),
                ("semantic_cleanup", self._semantic_cleanup),
            ],
            JsonFailureKind.UNKNOWN: [
                ("sanitize", sanitize_json),
                ("truncation_repair", self._truncation_repair),
                ("semantic_cleanup", self._semantic_cleanup),
            ],
            # Applied to the text already cut at the start of the loop
            JsonFailureKind.DEGENERATION: [
                ("degeneration_salvage", self._close_salvaged),
                ("prefix_extraction", self._prefix_extraction),
                ("truncation_repair", self._truncation_repair),
                ("semantic_cleanup", self._semantic_cleanup),
            ],
        }

    def excerpt(self, text: str) -> str:
        return text[: self._cfg.excerpt_chars]

    def exceeds_ceiling(self, text: str) -> bool:
        return len(text) > self._cfg.max_repair_chars

    # ── Layers ──

    def _prefix_extraction(self, text: str) -> Optional[str]:
        scan = scan_json_structure(text)
        if scan is None or not scan.balanced:
            return None
        prefix = text[scan.start : scan.last_balanced_end]
        discarded = text[scan.last_balanced_end :]
        if discarded.strip():
            logger.warning("json_repair_suffix_discarded", discarded=discarded[:50], discarded_chars=len(discarded))
        return prefix

    def _truncation_repair(self, text: str) -> Optional[str]:
        repaired = text.strip()
        start = find_json_start(repaired)
        if start == -1:
            return None
        repaired = repaired[start:]
        for pattern, replacement in _TRUNCATION_FIXES:
            if pattern.search(repaired):
                repaired = pattern.sub(replacement, repaired, count=1)
        return close_open_structures(repaired)

    def _semantic_cleanup(self, text: str) -> Optional[str]:
        cleaned = self._truncation_repair(text) or text
        for pattern, replacement in _SEMANTIC_FIXES:
            cleaned = pattern.sub(replacement, cleaned)
        return cleaned

    def _degeneration_cut(self, text: str) -> str:
        """Cut right after the first repetition unit of the earliest loop, then fix enum values."""
        match = self.detector.earliest_match(text, DegenerationDetector.SALVAGE)
        if match is not None:
            text = text[: match.start + len(match.unit)]
        return self._normalize_enum_values(text)

    def _normalize_enum_values(self, text: str) -> str:
        legal = list(self._cfg.enum_values)
        longest = max((len(v) for v in legal), default=0)

        def fix(m: re.Match[str]) -> str:
            value = m.group(1)
            if value in legal:
                # Drops a trailing separator and closes a cut-off value
                return f': "{value}"'
            if len(value) <= longest:
                return m.group(0)
            if not any(v in value.lower() or v.split("-")[0] in value.lower() for v in legal):
                return m.group(0)
            best = best_enum_match(value, legal)
            logger.warning("json_repair_enum_normalized", original=value[:60], normalized=best)
            return f': "{best}"'

        return _ENUM_LIKE_VALUE_RE.sub(fix, text)

    def _close_salvaged(self, cut: str) -> Optional[str]:
        start = find_json_start(cut)
        if start == -1:
            return None
        return close_open_structures(cut[start:])

    def _library_repair(self, text: str) -> Any:
        try:
            return json_repair.repair_json(text, return_objects=True)
        except (ValueError, RecursionError) as e:
            logger.debug("json_library_repair_error", error=str(e))
            return _NOT_PARSED

    def _unescape(self, text: str) -> Optional[str]:
        inner = try_parse(text.strip())
        if isinstance(inner, str):
            return inner
        stripped = text.strip()
        if stripped.startswith('"'):
            stripped = stripped[1:]
        if stripped.endswith('"') and not stripped.endswith('\\"'):
            stripped = stripped[:-1]
        return stripped.replace('\\"', '"').replace("\\n", "\n").replace("\\\\", "\\")

    # ── Entry points ──

    def repair_locally(
        self,
        text: str,
        classification: Optional[JsonClassification] = None,
        accept: Callable[[Any], bool] = _structured,
        _nested: bool = False,
    ) -> RepairOutcome:
        """
        Run every local layer for the text's failure kind.

        Raises:
            RepairFailedError: no local layer produced an accepted value.
        """
        if self.exceeds_ceiling(text):
            logger.warning("json_repair_size_ceiling", chars=len(text), ceiling=self._cfg.max_repair_chars)
            obs_metrics.record_json_repair("oversize", "size_ceiling", "fallback")
            return RepairOutcome(value=fallback_value(), strategy="size_ceiling", fallback_used=True)

        classification = classification or self.classifier.classify(text)
        kind = classification.kind
        logger.info("json_repair_classified", kind=kind.value, confidence=classification.confidence.value)

        if kind == JsonFailureKind.STRING_ARRAY:
            match = _STRING_ARRAY_RE.search(text)
            items = try_parse(match.group(0)) if match else _NOT_PARSED
            if isinstance(items, list) and items:
                logger.warning("json_repair_schema_drift_wrapped", items=len(items))
                return self._success(minimal_wrapper(items), "string_array_wrap", classification)

        if kind == JsonFailureKind.ESCAPED_JSON and not _nested:
            inner = self._unescape(text)
            if inner is not None:
                value = try_parse(inner)
                if is_parsed(value) and accept(value):
                    return self._success(value, "unescape", classification)
                try:
                    outcome = self.repair_locally(inner, accept=accept, _nested=True)
                except RepairFailedError:
                    pass
                else:
                    outcome.strategy = f"unescape+{outcome.strategy}"
                    outcome.classification = classification
                    return outcome

        source = self._degeneration_cut(text) if kind == JsonFailureKind.DEGENERATION else text
        for name, layer in self._plans.get(kind, []):
            candidate = layer(source)
            value = try_parse(candidate)
            if is_parsed(value) and accept(value):
                return self._success(value, name, classification)
            logger.debug("json_repair_layer_failed", layer=name, kind=kind.value)

        if kind in (JsonFailureKind.GARBAGE_SUFFIX, JsonFailureKind.TRUNCATION, JsonFailureKind.UNKNOWN):
            value = self._library_repair(text)
            if is_parsed(value) and accept(value):
                return self._success(value, "library_repair", classification)

        if kind == JsonFailureKind.DEGENERATION:
            logger.warning("json_repair_degeneration_fallback", excerpt=self.excerpt(text))
            obs_metrics.record_json_repair(kind.value, "degeneration_fallback", "fallback")
            return RepairOutcome(
                value=fallback_value(),
                strategy="degeneration_fallback",
                classification=classification,
                fallback_used=True,
            )

        obs_metrics.record_json_repair(kind.value, "local", "failed")
        raise RepairFailedError(kind, self.excerpt(text))

    async def repair(
        self,
        text: str,
        classification: Optional[JsonClassification] = None,
        schema: Optional[dict[str, Any]] = None,
        accept: Callable[[Any], bool] = _structured,
    ) -> RepairOutcome:
        """Local layers, then model escalation when they are exhausted."""
        if self.exceeds_ceiling(text):
            return self.repair_locally(text)
        classification = classification or self.classifier.classify(text)
        try:
            if classification.kind == JsonFailureKind.SCHEMA_DRIFT:
                raise RepairFailedError(classification.kind, self.excerpt(text))
            return self.repair_locally(text, classification, accept=accept)
        except RepairFailedError:
            if self.escalate is None or classification.kind in (
                JsonFailureKind.DEGENERATION,
                JsonFailureKind.EMPTY_RESPONSE,
            ):
                raise
        return await self._escalate(text, classification, schema, accept)

    async def _escalate(
        self,
        text: str,
        classification: JsonClassification,
        schema: Optional[dict[str, Any]],
        accept: Callable[[Any], bool],
    ) -> RepairOutcome:
        logger.warning("json_repair_escalating", kind=classification.kind.value)
        try:
            repaired_text = await self.escalate(text, schema)
        except Exception as e:
            logger.error("json_repair_escalation_failed", error=str(e), error_type=type(e).__name__)
            obs_metrics.record_json_repair(classification.kind.value, "model_escalation", "failed")
            raise RepairFailedError(classification.kind, self.excerpt(text)) from e

        if repaired_text:
            cleaned = strip_json_fences(repaired_text)
            value = try_parse(cleaned)
            if is_parsed(value) and accept(value):
                return self._success(value, "model_escalation", classification)
            try:
                outcome = self.repair_locally(cleaned, accept=accept)
            except RepairFailedError:
                pass
            else:
                if not outcome.fallback_used:
                    outcome.strategy = f"model_escalation+{outcome.strategy}"
                    outcome.classification = classification
                    return outcome
        obs_metrics.record_json_repair(classification.kind.value, "model_escalation", "failed")
        raise RepairFailedError(classification.kind, self.excerpt(text))

    def _success(self, value: Any, strategy: str, classification: JsonClassification) -> RepairOutcome:
        logger.info("json_repair_success", strategy=strategy, kind=classification.kind.value)
        obs_metrics.record_json_repair(classification.kind.value, strategy, "repaired")
        return RepairOutcome(value=value, strategy=strategy, classification=classification)
