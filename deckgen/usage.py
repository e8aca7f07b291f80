"""
Token usage normalization.

Providers and API revisions report token counts under different container and
field names. Everything downstream (cost ledger, metrics, logs) only sees the
canonical ``Usage`` shape produced here.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from deckgen.models import Usage

_CONTAINER_KEYS = ("usage", "usageMetadata", "usage_metadata", "tokenUsage", "token_usage")

# First present alias wins, in order
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "total_input_tokens": (
        "total_input_tokens",
        "input_tokens",
        "prompt_tokens",
        "prompt_token_count",
        "promptTokenCount",
    ),
    "total_output_tokens": (
        "total_output_tokens",
        "output_tokens",
        "completion_tokens",
        "candidates_tokens",
        "candidates_token_count",
        "candidatesTokenCount",
    ),
    "total_reasoning_tokens": (
        "total_reasoning_tokens",
        "reasoning_tokens",
        "thought_tokens",
        "thoughts_token_count",
        "thoughtsTokenCount",
        "thinking_token_count",
    ),
    "total_tool_use_tokens": (
        "total_tool_use_tokens",
        "tool_use_tokens",
        "tool_use_prompt_token_count",
        "toolUsePromptTokenCount",
        "toolTokenCount",
    ),
}

_TOTAL_ALIASES = ("total_tokens", "total_token_count", "totalTokenCount")

_MODEL_PREFIX_RE = re.compile(r"^models?/")


def _as_count(value: Any) -> Optional[int]:
    """Coerce a reported count to a non-negative int; None when it is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(int(number), 0)


def _first_count(raw: dict[str, Any], aliases: tuple[str, ...]) -> Optional[int]:
    for key in aliases:
        if raw.get(key) is not None:
            return _as_count(raw[key])
    return None


def normalize_usage(raw: Any) -> Optional[Usage]:
    """
    Map a raw response envelope to canonical usage.

    Looks for the usage container under any known key, then reads each count
    from its first present alias. Missing or non-finite counts become 0. When no
    total is reported (or it is not a finite number) the total is the sum of
    the four component counts. Returns None when there is no usage container.
    """
    if not isinstance(raw, dict):
        return None
    container = None
    for key in _CONTAINER_KEYS:
        if isinstance(raw.get(key), dict):
            container = raw[key]
            break
    if container is None:
        return None

    counts = {name: _first_count(container, aliases) or 0 for name, aliases in _FIELD_ALIASES.items()}
    total = _first_count(container, _TOTAL_ALIASES)
    if total is None:
        total = sum(counts.values())
    return Usage(**counts, total_tokens=total)


def normalize_model_name(model: Optional[str]) -> str:
    """Strip the ``models/`` resource prefix the API sometimes echoes back."""
    if not model:
        return "unknown"
    return _MODEL_PREFIX_RE.sub("", model).strip() or "unknown"
