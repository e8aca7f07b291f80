"""
Prometheus metrics for the deck generation model layer.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_llm_call, record_llm_tokens/cost/fallback, record_json_repair,
record_tool_call, record_agent_run and start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

import structlog
from prometheus_client import (
    Counter,
    Histogram,
    start_http_server as prometheus_start_http_server,
)

logger = structlog.get_logger()


def _enabled() -> bool:
    from deckgen.config import get_settings

    return bool(get_settings().observability.metrics_enabled)


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False
_create_lock = threading.Lock()


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    with _create_lock:
        if not _metrics_created:
            _create_metrics()
            _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    _llm_duration = Histogram(
        "llm_call_duration_seconds",
        "Model call latency",
        ["model", "task", "provider"],
        buckets=[0.5, 1, 2, 5, 10, 30, 120],
    )
    _llm_tokens = Counter(
        "llm_call_tokens_total",
        "Tokens consumed",
        ["model", "direction"],
    )
    _llm_cost = Counter(
        "llm_call_cost_usd",
        "Cost per call in USD",
        ["model"],
    )
    _llm_errors = Counter(
        "llm_call_errors_total",
        "Model call errors",
        ["model", "task", "error_type"],
    )
    _llm_fallback = Counter(
        "llm_call_fallback_total",
        "Fallback to alternate model or provider",
        ["primary_model", "fallback_model", "reason"],
    )

    # Structured output recovery
    _json_repair = Counter(
        "json_repair_total",
        "Structured output recovery attempts",
        ["kind", "strategy", "outcome"],
    )

    # Agent loop
    _tool_calls = Counter(
        "agent_tool_calls_total",
        "Tool executions by outcome",
        ["tool", "outcome"],
    )
    _agent_iterations = Histogram(
        "agent_iterations",
        "Iterations per agent run",
        ["status"],
        buckets=[1, 2, 3, 5, 8, 10, 15],
    )

    _registry = {
        "llm_duration": _llm_duration,
        "llm_tokens": _llm_tokens,
        "llm_cost": _llm_cost,
        "llm_errors": _llm_errors,
        "llm_fallback": _llm_fallback,
        "json_repair": _json_repair,
        "tool_calls": _tool_calls,
        "agent_iterations": _agent_iterations,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- LLM ---
    @contextlib.asynccontextmanager
    async def track_llm_call(self, model: str = "", task: str = "", provider: str = ""):
        m = self._get("llm_duration")
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            err = self._get("llm_errors")
            if err:
                err.labels(
                    model=model or "unknown",
                    task=task or "unknown",
                    error_type=type(e).__name__,
                ).inc()
            raise
        finally:
            if m:
                m.labels(
                    model=model or "unknown",
                    task=task or "unknown",
                    provider=provider or "unknown",
                ).observe(time.perf_counter() - start)

    def record_llm_fallback(self, primary: str, fallback: str, reason: str = "") -> None:
        c = self._get("llm_fallback")
        if c:
            c.labels(
                primary_model=primary or "unknown",
                fallback_model=fallback or "unknown",
                reason=reason or "unknown",
            ).inc()

    def record_llm_tokens(self, model: str = "", input_tokens: int = 0, output_tokens: int = 0) -> None:
        t = self._get("llm_tokens")
        if t:
            t.labels(model=model or "unknown", direction="input").inc(input_tokens)
            t.labels(model=model or "unknown", direction="output").inc(output_tokens)

    def record_llm_cost(self, model: str = "", cost_usd: float = 0.0) -> None:
        c = self._get("llm_cost")
        if c and cost_usd > 0:
            c.labels(model=model or "unknown").inc(cost_usd)

    # --- Recovery ---
    def record_json_repair(self, kind: str, strategy: str, outcome: str) -> None:
        c = self._get("json_repair")
        if c:
            c.labels(
                kind=kind or "unknown",
                strategy=strategy or "none",
                outcome=outcome or "unknown",
            ).inc()

    # --- Agent ---
    def record_tool_call(self, tool: str, outcome: str) -> None:
        c = self._get("tool_calls")
        if c:
            c.labels(tool=(tool or "unknown")[:64], outcome=outcome or "unknown").inc()

    def record_agent_run(self, iterations: int, status: str = "completed") -> None:
        h = self._get("agent_iterations")
        if h:
            h.labels(status=status or "unknown").observe(iterations)

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError as e:
                logger.warning("metrics_server_failed", port=port, error=str(e))

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
