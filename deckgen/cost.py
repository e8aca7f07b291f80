"""
Per-run cost ledger.

Accumulates token counts and USD cost across every model call of a run, with a
per-model breakdown and the savings relative to always using the pro model.
Safe to share across concurrent tasks and threads.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any, Optional

import structlog

from deckgen.models import Usage
from deckgen.observability import metrics as obs_metrics
from deckgen.usage import normalize_model_name

logger = structlog.get_logger()

# ── USD per 1M tokens (input/output) ──
DEFAULT_PRICING: dict[str, dict[str, float]] = {
    "gemini-3-pro-preview": {"input": 2.00, "output": 12.00},
    "gemini-3-flash-preview": {"input": 0.15, "output": 3.50},
    "gemini-2.5-flash": {"input": 0.075, "output": 0.30},
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "gemini-2.0-flash-lite-preview-02-05": {"input": 0.075, "output": 0.30},
    "qwen-plus": {"input": 0.20, "output": 1.60},
}
UNKNOWN_MODEL_RATES = {"input": 0.10, "output": 0.40}
BASELINE_MODEL = "gemini-3-pro-preview"


@dataclass
class ModelUsage:
    calls: int = 0
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0


class CostLedger:
    """Accumulates usage; ``pricing`` entries override or extend the built-in table."""

    def __init__(self, pricing: Optional[dict[str, Any]] = None) -> None:
        self._rates = dict(DEFAULT_PRICING)
        for model, rates in ((pricing or {}).get("models") or {}).items():
            if isinstance(rates, dict) and "input" in rates and "output" in rates:
                self._rates[model] = {"input": float(rates["input"]), "output": float(rates["output"])}
        self._lock = threading.Lock()
        self.total_cost = 0.0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_reasoning_tokens = 0
        self.total_tokens_reported = 0
        self.total_savings_vs_pro = 0.0
        self._by_model: dict[str, ModelUsage] = {}

    def rates_for(self, model: str) -> dict[str, float]:
        return self._rates.get(normalize_model_name(model), UNKNOWN_MODEL_RATES)

    def add_usage(self, model: str, usage: Optional[Usage]) -> float:
        """Record one call's usage. Returns the cost of the call in USD."""
        if usage is None:
            return 0.0
        name = normalize_model_name(model)
        rates = self.rates_for(name)
        baseline = self._rates.get(BASELINE_MODEL, rates)
        cost = (
            usage.total_input_tokens / 1_000_000 * rates["input"]
            + usage.total_output_tokens / 1_000_000 * rates["output"]
        )
        baseline_cost = (
            usage.total_input_tokens / 1_000_000 * baseline["input"]
            + usage.total_output_tokens / 1_000_000 * baseline["output"]
        )
        computed = usage.computed_total
        if usage.total_tokens and usage.total_tokens < computed:
            logger.warning(
                "usage_total_below_sum",
                model=name,
                reported=usage.total_tokens,
                computed=computed,
            )

        with self._lock:
            self.total_input_tokens += usage.total_input_tokens
            self.total_output_tokens += usage.total_output_tokens
            self.total_reasoning_tokens += usage.total_reasoning_tokens
            self.total_tokens_reported += usage.total_tokens or computed
            self.total_cost += cost
            self.total_savings_vs_pro += baseline_cost - cost
            entry = self._by_model.setdefault(name, ModelUsage())
            entry.calls += 1
            entry.cost += cost
            entry.input_tokens += usage.total_input_tokens
            entry.output_tokens += usage.total_output_tokens
            entry.reasoning_tokens += usage.total_reasoning_tokens

        obs_metrics.record_llm_tokens(
            model=name,
            input_tokens=usage.total_input_tokens,
            output_tokens=usage.total_output_tokens,
        )
        obs_metrics.record_llm_cost(model=name, cost_usd=cost)
        logger.debug(
            "llm_call_cost",
            model=name,
            cost_usd=round(cost, 6),
            input_tokens=usage.total_input_tokens,
            output_tokens=usage.total_output_tokens,
            reasoning_tokens=usage.total_reasoning_tokens,
        )
        return cost

    def summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_cost": self.total_cost,
                "total_input_tokens": self.total_input_tokens,
                "total_output_tokens": self.total_output_tokens,
                "total_reasoning_tokens": self.total_reasoning_tokens,
                "total_tokens_reported": self.total_tokens_reported,
                "total_savings_vs_pro": self.total_savings_vs_pro,
                "model_breakdown": {name: asdict(entry) for name, entry in self._by_model.items()},
            }
