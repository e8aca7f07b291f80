"""
Repetition-loop detection for model output.

Degeneration is the failure mode where a model stops producing content and
loops on a character, a word, an enum value or a field name until its token
budget runs out. Each heuristic here is a named strategy returning where the
loop starts; callers pick the strategy set for their purpose:

  - classification of a failed parse (high-precision patterns)
  - proactive checks on successful completions (patterns that stay quiet on valid JSON)
  - salvage, which needs the earliest point where any loop begins
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

_CHAR_RUN_RE = re.compile(r"([A-Za-z0-9])\1{9,}")
# Unit lengths are capped so a long run without separators fails fast at every start
_PHRASE_LOOP_RE = re.compile(r"((?:[a-z0-9]{1,40}[-_]){2,8})\1{2,}", re.IGNORECASE)
_FIELD_LOOP_RE = re.compile(r"([a-z0-9]{1,40}(?:_[a-z0-9]{1,40}){2,8})(?:[^a-z0-9]{0,3}\1){2,}", re.IGNORECASE)
_SUBSTRING_LOOP_RE = re.compile(r"(.{8,30}?)\1{3,}", re.DOTALL)
_WORD_RE = re.compile(r"[A-Za-z0-9]{3,}")
_ALNUM_RE = re.compile(r"[a-z0-9]")
_ZERO_PATTERNS = (
    re.compile(r"(\b0-){2,}0\b"),
    re.compile(r"(?:\b0\b[\s,\-]*){6,}"),
    re.compile(r"(?:o0){5,}"),
)

DEFAULT_ENUM_VALUES = (
    "text-bullets",
    "metric-cards",
    "process-flow",
    "icon-grid",
    "chart-frame",
    "diagram-svg",
)


@dataclass(frozen=True)
class DegenerationMatch:
    """Where a repetition loop starts; ``unit`` is one repetition of the looping text."""

    strategy: str
    start: int
    end: int
    unit: str


Finder = Callable[[str], Optional[tuple[int, int, str]]]


def _regex_finder(pattern: re.Pattern[str], require_alnum: bool = False) -> Finder:
    def find(text: str) -> Optional[tuple[int, int, str]]:
        for match in pattern.finditer(text):
            unit = match.group(1)
            if require_alnum and not _ALNUM_RE.search(unit.lower()):
                continue
            return match.start(), match.end(), unit
        return None

    return find


def _find_word_loop(text: str) -> Optional[tuple[int, int, str]]:
    """A sequence of 1-4 words repeated at least four times in a row."""
    words = list(_WORD_RE.finditer(text))
    if len(words) < 10:
        return None
    lowered = [w.group(0).lower() for w in words]
    for i in range(len(lowered)):
        for size in range(1, 5):
            if i + size * 4 > len(lowered):
                break
            pattern = lowered[i : i + size]
            repeats = 1
            j = i + size
            while lowered[j : j + size] == pattern:
                repeats += 1
                j += size
            if repeats >= 4:
                start = words[i].start()
                unit_end = words[i + size].start()
                return start, words[j - 1].end(), text[start:unit_end]
    return None


def _find_zero_pattern(text: str) -> Optional[tuple[int, int, str]]:
    lowered = text.lower()
    for pattern in _ZERO_PATTERNS:
        match = pattern.search(lowered)
        if match:
            return match.start(), match.end(), match.group(0)[:2]
    return None


def _find_low_entropy(text: str) -> Optional[tuple[int, int, str]]:
    alnum = "".join(_ALNUM_RE.findall(text.lower()))
    if len(alnum) >= 30 and len(set(alnum)) <= 3:
        return 0, len(text), "".join(sorted(set(alnum)))
    return None


def _enum_concat_pattern(enum_values: Iterable[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(v) for v in sorted(enum_values, key=len, reverse=True))
    return re.compile(rf"((?:{alternatives})[-_]){{4,}}", re.IGNORECASE)


class DegenerationDetector:
    """Named repetition strategies, each paired with the trailing window it inspects."""

    CLASSIFY: Sequence[str] = ("char_run", "phrase_loop", "enum_concat", "field_loop", "substring_loop")
    # substring_loop is excluded: repeated keys in valid JSON arrays trip it
    PROACTIVE: Sequence[str] = (
        "zero_pattern",
        "char_run",
        "phrase_loop",
        "enum_concat",
        "word_loop",
        "low_entropy",
    )
    SALVAGE: Sequence[str] = ("char_run", "phrase_loop", "enum_concat", "field_loop", "substring_loop", "word_loop")

    def __init__(self, enum_values: Optional[Iterable[str]] = None) -> None:
        enum_values = tuple(enum_values or DEFAULT_ENUM_VALUES)
        self._strategies: dict[str, tuple[Optional[int], Finder]] = {
            "char_run": (50, _regex_finder(_CHAR_RUN_RE)),
            "phrase_loop": (500, _regex_finder(_PHRASE_LOOP_RE)),
            "enum_concat": (500, _regex_finder(_enum_concat_pattern(enum_values))),
            "field_loop": (500, _regex_finder(_FIELD_LOOP_RE)),
            "substring_loop": (2000, _regex_finder(_SUBSTRING_LOOP_RE, require_alnum=True)),
            "word_loop": (500, _find_word_loop),
            "zero_pattern": (500, _find_zero_pattern),
            "low_entropy": (500, _find_low_entropy),
        }

    @property
    def strategy_names(self) -> list[str]:
        return list(self._strategies)

    def _run(self, name: str, text: str, windowed: bool) -> Optional[DegenerationMatch]:
        window, finder = self._strategies[name]
        offset = max(len(text) - window, 0) if windowed and window else 0
        found = finder(text[offset:])
        if found is None:
            return None
        start, end, unit = found
        return DegenerationMatch(strategy=name, start=offset + start, end=offset + end, unit=unit)

    def first_match(self, text: str, strategies: Sequence[str] = CLASSIFY) -> Optional[DegenerationMatch]:
        """First strategy (in the given priority order) that fires on its trailing window."""
        for name in strategies:
            match = self._run(name, text, windowed=True)
            if match is not None:
                return match
        return None

    def earliest_match(self, text: str, strategies: Sequence[str] = SALVAGE) -> Optional[DegenerationMatch]:
        """The match starting earliest anywhere in ``text`` across all given strategies."""
        matches = [m for m in (self._run(name, text, windowed=False) for name in strategies) if m]
        if not matches:
            return None
        return min(matches, key=lambda m: (m.start, m.end))

    def is_degenerate(self, text: str) -> bool:
        """Proactive check for successful completions."""
        if not text:
            return False
        return self.first_match(text, self.PROACTIVE) is not None
