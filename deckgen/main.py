"""
Deck generation model layer: command-line entry point.

Usage:
    python -m deckgen.main repair broken.json
    python -m deckgen.main repair broken.json --schema slide_schema.json
    python -m deckgen.main generate "Outline a 5-slide deck on solar storage" --schema outline.json --task architect
"""

from __future__ import annotations

# Load .env before any other imports
import deckgen.config  # noqa: F401, E402

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.theme import Theme

from deckgen.config import ModelTask, get_settings
from deckgen.cost import CostLedger
from deckgen.llm_client import InteractionsClient, LLMClientError, StructuredOutputError
from deckgen.observability import metrics as obs_metrics
from deckgen.recovery.repair import RepairFailedError, RepairPipeline
from deckgen.structured import StructuredOutputOrchestrator

_CUSTOM_THEME = Theme({
    "log.info":        "dim white",
    "log.warning":     "bold #f59e0b",
    "log.error":       "bold #dc2626",
    "log.debug":       "dim #64748b",
    "primary":         "#ea580c",
    "fallback.banner": "bold yellow on #ea580c",
})

console = Console(theme=_CUSTOM_THEME, highlight=False, stderr=True)


class _RichStructlogRenderer:
    """Custom structlog processor that renders log lines via Rich."""

    _SKIP_KEYS = frozenset({"event", "level", "_record"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()

        # ── Provider fallback highlight ──
        if event == "fallback_provider_attempt":
            console.print(
                f"  [bold #f59e0b]╔══ PROVIDER FALLBACK ══╗[/bold #f59e0b]  "
                f"[#64748b]{event_dict.get('primary', '?')}[/#64748b] [bold #ea580c]→[/bold #ea580c] "
                f"[bold #0ea5e9]{event_dict.get('fallback', '?')}[/bold #0ea5e9]"
            )
            raise structlog.DropEvent()

        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            if k in ("strategy", "kind", "iteration", "tool"):
                kv_parts.append(f"[#94a3b8]{k}[/#94a3b8]=[#ea580c]{vs}[/#ea580c]")
            else:
                kv_parts.append(f"[#64748b]{k}[/#64748b]=[#94a3b8]{vs}[/#94a3b8]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix = "[bold #f59e0b]⚠[/bold #f59e0b]"
            ev_fmt = f"[bold #f59e0b]{event}[/bold #f59e0b]"
        elif level in ("error", "critical"):
            prefix = "[bold #dc2626]✗[/bold #dc2626]"
            ev_fmt = f"[bold #dc2626]{event}[/bold #dc2626]"
        elif level == "debug":
            prefix = "[#64748b]·[/#64748b]"
            ev_fmt = f"[#64748b]{event}[/#64748b]"
        else:
            prefix = "[#ea580c]▪[/#ea580c]"
            if event.startswith("json_repair"):
                ev_fmt = f"[bold #0ea5e9]{event}[/bold #0ea5e9]"
            elif event.startswith("agent_"):
                ev_fmt = f"[bold #ea580c]{event}[/bold #ea580c]"
            else:
                ev_fmt = f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: str = "INFO") -> None:
    level_no = logging.getLevelName(level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no if isinstance(level_no, int) else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


logger = structlog.get_logger()


def _load_schema(path: Optional[str]) -> Optional[dict[str, Any]]:
    if not path:
        return None
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_value(value: Any, title: str) -> None:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    rendered = json.dumps(value, indent=2, ensure_ascii=False)
    console.print(Panel(Syntax(rendered, "json", theme="ansi_dark"), title=f"[#ea580c] {title}[/#ea580c]", border_style="#ea580c"))


def _display_cost(ledger: CostLedger, elapsed: float) -> None:
    summary = ledger.summary()
    table = Table(title="Run Summary", border_style="#ea580c", title_style="bold #ea580c")
    table.add_column("Metric", style="bold #94a3b8")
    table.add_column("Value", justify="right", style="#e2e8f0")
    table.add_row("Duration", f"{elapsed:.1f}s")
    table.add_row("Input tokens", str(summary["total_input_tokens"]))
    table.add_row("Output tokens", str(summary["total_output_tokens"]))
    table.add_row("Reasoning tokens", str(summary["total_reasoning_tokens"]))
    table.add_row("Est. Cost", f"${summary['total_cost']:.6f}")
    table.add_row("Savings vs pro", f"${summary['total_savings_vs_pro']:.6f}")
    console.print(table)

    if summary["model_breakdown"]:
        mt = Table(title="Per Model", border_style="#64748b", title_style="#94a3b8")
        mt.add_column("Model")
        mt.add_column("Calls", justify="right")
        mt.add_column("Input", justify="right")
        mt.add_column("Output", justify="right")
        mt.add_column("Cost", justify="right")
        for name, entry in summary["model_breakdown"].items():
            mt.add_row(
                name,
                str(entry["calls"]),
                str(entry["input_tokens"]),
                str(entry["output_tokens"]),
                f"${entry['cost']:.6f}",
            )
        console.print(mt)


async def run_repair(path: str, schema_path: Optional[str] = None) -> int:
    """Classify and repair a saved model response offline (no model escalation)."""
    settings = get_settings()
    text = Path(path).read_text(encoding="utf-8")
    pipeline = RepairPipeline(settings)
    classification = pipeline.classifier.classify(text)
    console.print(
        f"  [bold #94a3b8]classification[/bold #94a3b8]  kind=[#ea580c]{classification.kind.value}[/#ea580c]"
        f"  confidence={classification.confidence.value}"
        f"  valid_prefix_end={classification.valid_prefix_end}"
    )
    try:
        outcome = await pipeline.repair(text, classification, _load_schema(schema_path))
    except RepairFailedError as e:
        console.print(f"[log.error]Repair failed[/log.error] ({e.kind.value}): {e.excerpt!r}")
        return 1
    if outcome.fallback_used:
        console.print("[fallback.banner] Fallback value used [/fallback.banner]")
    _print_value(outcome.value, f"Repaired ({outcome.strategy})")
    return 0


async def run_generate(
    prompt: str,
    schema_path: Optional[str] = None,
    task: Optional[str] = None,
    system: Optional[str] = None,
) -> int:
    """One orchestrated JSON generation call with a cost summary."""
    settings = get_settings()
    obs_metrics.start_server(settings.observability.metrics_port)
    ledger = CostLedger(settings.pricing)
    start = time.time()
    async with InteractionsClient(settings, ledger=ledger) as client:
        orchestrator = StructuredOutputOrchestrator(client, settings)
        try:
            value = await orchestrator.generate_json(
                prompt,
                _load_schema(schema_path),
                task=ModelTask(task) if task else None,
                system_instruction=system,
            )
        except StructuredOutputError as e:
            console.print(f"[log.error]Structured output failed[/log.error] ({e.kind}): {e.excerpt!r}")
            return 1
        except LLMClientError as e:
            console.print(f"[log.error]Model call failed[/log.error]: {e}")
            return 1
    _print_value(value, "Result")
    _display_cost(ledger, time.time() - start)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Deck generation model layer")
    sub = parser.add_subparsers(dest="command")

    rep = sub.add_parser("repair", help="Classify and repair a saved model response")
    rep.add_argument("file", help="File holding the raw model text")
    rep.add_argument("--schema", help="JSON schema file for the expected shape")

    gen = sub.add_parser("generate", help="Generate a JSON value from a prompt")
    gen.add_argument("prompt", help="Prompt text")
    gen.add_argument("--schema", help="JSON schema file for the response")
    gen.add_argument(
        "--task",
        choices=[t.value for t in ModelTask],
        default=None,
        help="Task class used for model and token-budget routing",
    )
    gen.add_argument("--system", default=None, help="System instruction")

    args = parser.parse_args()
    configure_logging(get_settings().observability.log_level)
    if args.command == "repair":
        sys.exit(asyncio.run(run_repair(args.file, args.schema)))
    elif args.command == "generate":
        sys.exit(asyncio.run(run_generate(args.prompt, args.schema, args.task, args.system)))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
