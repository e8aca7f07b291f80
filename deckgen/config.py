"""
Centralized configuration for the deck generation model layer.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion. Components accept a
``Settings`` instance explicitly; ``get_settings()`` is the process-wide
default used only when none is injected.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env then .env.local (so .env.local overrides).
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env")
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class ModelTier(str, Enum):
    """Model tier: AGENTIC for routine agent work, SIMPLE for cheap pattern tasks, REASONING for escalation."""

    AGENTIC = "agentic"
    SIMPLE = "simple"
    REASONING = "reasoning"


class ModelTask(str, Enum):
    """Per-role task identifiers used for model and token-budget routing."""

    ARCHITECT = "architect"
    ROUTER = "router"
    CONTENT_PLANNER = "content_planner"
    GENERATOR = "generator"
    RESEARCHER = "researcher"
    VISUAL_DESIGNER = "visual_designer"
    JSON_REPAIR = "json_repair"


class ContextMode(str, Enum):
    """How the agent loop transmits conversation context on turns after the first."""

    SERVER_DELTA = "server_delta"
    FULL_HISTORY = "full_history"


_SIMPLE_TASKS = frozenset({ModelTask.ROUTER, ModelTask.JSON_REPAIR})


class LLMConfig(BaseSettings):
    """Primary provider credentials, model tiers and fallback provider."""

    model_config = SettingsConfigDict(populate_by_name=True)

    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    interactions_api_base: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/interactions",
        alias="INTERACTIONS_API_BASE",
    )

    # Model tiers
    agentic_model: str = Field(default="gemini-3-flash-preview", alias="AGENTIC_MODEL")
    simple_model: str = Field(default="gemini-2.5-flash", alias="SIMPLE_MODEL")
    reasoning_model: str = Field(default="gemini-3-pro-preview", alias="REASONING_MODEL")

    # Shared generation params
    temperature: float = 0.2
    max_output_tokens: int = 8192
    thinking_level: str = "low"

    # Transport
    request_timeout_s: float = Field(default=300.0, alias="REQUEST_TIMEOUT_S")
    max_retries: int = 2
    retry_base_delay_s: float = 2.0

    # Independent OpenAI-compatible provider, used only when the primary returns nothing twice
    fallback_api_key: str = Field(default="", alias="FALLBACK_API_KEY")
    fallback_api_base: str = Field(
        default="https://dashscope-intl.aliyuncs.com/compatible-mode/v1",
        alias="FALLBACK_API_BASE",
    )
    fallback_model: str = Field(default="qwen-plus", alias="FALLBACK_MODEL")

    def model_for_tier(self, tier: ModelTier) -> str:
        if tier == ModelTier.REASONING:
            return self.reasoning_model
        if tier == ModelTier.SIMPLE:
            return self.simple_model
        return self.agentic_model


class RepairConfig(BaseSettings):
    """Structured-output recovery tuning."""

    model_config = SettingsConfigDict(populate_by_name=True)

    # Responses larger than this are abandoned to the minimal fallback value
    max_repair_chars: int = Field(default=15_000, alias="MAX_REPAIR_CHARS")
    repair_timeout_s: float = 30.0
    repair_max_output_tokens: int = 8192
    empty_retry_delay_s: float = 2.0
    empty_retry_extra_tokens: int = 2048
    excerpt_chars: int = 200
    enum_values: list[str] = Field(
        default_factory=lambda: [
            "text-bullets",
            "metric-cards",
            "process-flow",
            "icon-grid",
            "chart-frame",
            "diagram-svg",
        ]
    )


class AgentConfig(BaseSettings):
    """Agent loop behavior tuning."""

    model_config = SettingsConfigDict(populate_by_name=True)

    max_iterations: int = Field(default=10, alias="AGENT_MAX_ITERATIONS")
    max_tool_retries: int = Field(default=3, alias="AGENT_MAX_TOOL_RETRIES")
    context_mode: ContextMode = Field(default=ContextMode.SERVER_DELTA, alias="AGENT_CONTEXT_MODE")
    transient_backoff_base_s: float = 1.0
    # Sends per iteration are max_transient_retries + 1, counting the client's retries, rounded up to whole client calls
    max_transient_retries: int = 3
    poll_interval_s: float = 1.0
    max_polls: int = 60
    tool_result_preview_chars: int = 200


class ObservabilityConfig(BaseSettings):
    """Logging and Prometheus metrics."""

    model_config = SettingsConfigDict(populate_by_name=True)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        self._dir = _repo_root / config_dir

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is missing or not a mapping."""
        path = self._dir / filename
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    """Root settings container: all config from one object."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded config (populated in get_settings)
    model_routing: dict[str, Any] = Field(default_factory=dict)
    pricing: dict[str, Any] = Field(default_factory=dict)

    def resolve_task(self, task: ModelTask) -> tuple[str, int]:
        """Return (model id, max output tokens) for a task, honoring models.yaml overrides."""
        task_cfg = self.model_routing.get("tasks", {}).get(task.value, {})
        tier_str = task_cfg.get("tier", "")
        try:
            tier = ModelTier(tier_str)
        except ValueError:
            tier = ModelTier.SIMPLE if task in _SIMPLE_TASKS else ModelTier.AGENTIC
        max_tokens = int(task_cfg.get("max_output_tokens", self.llm.max_output_tokens))
        return self.llm.model_for_tier(tier), max_tokens


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide default settings instance. Cached after first call."""
    settings = Settings()
    loader = YAMLConfigLoader()
    settings.model_routing = loader.load("models.yaml")
    settings.pricing = loader.load("pricing.yaml")
    return settings
