"""
Core data models for the model interaction layer.

These Pydantic models define the typed envelopes that flow between the
transport, the structured-output recovery layer and the agent loop:
interaction requests and responses, the closed union of content blocks,
tool contracts and results, and JSON failure classifications.

Design principles:
  - Envelope invariants are enforced at validation time, so a malformed
    provider response fails loudly instead of leaking holes downstream
  - Tool failures are data (``ToolError``), never exceptions past the tool boundary
  - Everything serializes with ``model_dump(mode="json", exclude_none=True)``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class InteractionStatus(str, Enum):
    """Lifecycle status reported by the provider for one interaction turn."""

    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ThinkingLevel(str, Enum):
    """Reasoning effort requested from the model."""

    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class JsonFailureKind(str, Enum):
    """Why a model response failed direct JSON parsing."""

    GARBAGE_SUFFIX = "garbage_suffix"
    TRUNCATION = "truncation"
    ESCAPED_JSON = "escaped_json"
    SCHEMA_DRIFT = "schema_drift"
    STRING_ARRAY = "string_array"
    EMPTY_RESPONSE = "empty_response"
    DEGENERATION = "degeneration"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ToolErrorKind(str, Enum):
    """Classified tool failure, shown to the model instead of a stack trace."""

    VALIDATION = "validation"
    RUNTIME = "runtime"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"


# ═══════════════════════════════════════════════════════════
# Content blocks
# ═══════════════════════════════════════════════════════════


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class FunctionCall(BaseModel):
    name: str
    id: Optional[str] = None
    arguments: dict[str, Any] = Field(default_factory=dict)


class FunctionCallBlock(BaseModel):
    type: Literal["function_call"] = "function_call"
    function_call: FunctionCall

    @model_validator(mode="before")
    @classmethod
    def _nest_flat_call(cls, data: Any) -> Any:
        # Some API revisions return name/arguments at the block level
        if isinstance(data, dict) and "function_call" not in data and "name" in data:
            data = dict(data)
            data["function_call"] = {
                "name": data.pop("name"),
                "id": data.pop("id", None),
                "arguments": data.pop("arguments", None) or {},
            }
        return data


class FunctionResult(BaseModel):
    name: str
    call_id: str
    result: Any = None


class FunctionResultBlock(BaseModel):
    type: Literal["function_result"] = "function_result"
    function_result: FunctionResult


class ThoughtSummaryPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ThoughtBlock(BaseModel):
    type: Literal["thought"] = "thought"
    summary: Optional[list[ThoughtSummaryPart]] = None
    signature: Optional[str] = None

    def summary_text(self) -> str:
        return " ".join(part.text for part in self.summary or [] if part.text)


class SearchCallArguments(BaseModel):
    queries: list[str] = Field(default_factory=list)


class SearchCallBlock(BaseModel):
    type: Literal["google_search_call"] = "google_search_call"
    id: str = ""
    arguments: SearchCallArguments = Field(default_factory=SearchCallArguments)


class SearchResultItem(BaseModel):
    url: str = ""
    title: str = ""


class SearchResultBlock(BaseModel):
    type: Literal["google_search_result"] = "google_search_result"
    call_id: str = ""
    result: list[SearchResultItem] = Field(default_factory=list)


ContentBlock = Annotated[
    Union[
        TextBlock,
        FunctionCallBlock,
        FunctionResultBlock,
        ThoughtBlock,
        SearchCallBlock,
        SearchResultBlock,
    ],
    Field(discriminator="type"),
]

CONTENT_BLOCK_TYPES = frozenset(
    {"text", "function_call", "function_result", "thought", "google_search_call", "google_search_result"}
)


# ═══════════════════════════════════════════════════════════
# Requests and responses
# ═══════════════════════════════════════════════════════════


class GenerationConfig(BaseModel):
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    seed: Optional[int] = None
    stop_sequences: Optional[list[str]] = None
    thinking_level: Optional[ThinkingLevel] = None
    thinking_summaries: Optional[Literal["auto", "none"]] = None
    max_output_tokens: Optional[int] = None


class ToolDefinition(BaseModel):
    """A tool as declared to the model: name, description and JSON-schema parameters."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


class ToolDeclarations(BaseModel):
    function_declarations: Optional[list[ToolDefinition]] = None
    googleSearch: Optional[dict[str, Any]] = None


class InteractionRequest(BaseModel):
    """One call to the interactions endpoint."""

    model: str
    input: Union[str, list[ContentBlock]]
    system_instruction: Optional[str] = None
    tools: Optional[list[ToolDeclarations]] = None
    response_format: Optional[dict[str, Any]] = None
    response_mime_type: Optional[str] = None
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)
    previous_interaction_id: Optional[str] = None

    @field_validator("input")
    @classmethod
    def _input_not_empty(cls, v: Union[str, list[Any]]) -> Union[str, list[Any]]:
        if isinstance(v, str) and not v.strip():
            raise ValueError("input prompt must not be empty")
        if isinstance(v, list) and not v:
            raise ValueError("input content blocks must not be empty")
        return v

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Usage(BaseModel):
    """Canonical token accounting for one response."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_reasoning_tokens: int = 0
    total_tool_use_tokens: int = 0
    total_tokens: int = 0

    @property
    def computed_total(self) -> int:
        return (
            self.total_input_tokens
            + self.total_output_tokens
            + self.total_reasoning_tokens
            + self.total_tool_use_tokens
        )


class InteractionResponse(BaseModel):
    """One provider turn: status, ordered output blocks and normalized usage."""

    id: str
    model: Optional[str] = None
    status: InteractionStatus
    outputs: list[ContentBlock] = Field(default_factory=list)
    usage: Optional[Usage] = None
    previous_interaction_id: Optional[str] = None

    @field_validator("outputs", mode="before")
    @classmethod
    def _drop_unknown_blocks(cls, v: Any) -> Any:
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        kept = []
        for block in v:
            if isinstance(block, dict) and block.get("type") not in CONTENT_BLOCK_TYPES:
                logger.warning("interaction_unknown_block_dropped", block_type=block.get("type"))
                continue
            kept.append(block)
        return kept

    @model_validator(mode="after")
    def _requires_action_has_call(self) -> InteractionResponse:
        if self.status == InteractionStatus.REQUIRES_ACTION and not self.function_calls():
            raise ValueError("status requires_action without any function_call output")
        return self

    @property
    def has_outputs_field(self) -> bool:
        return "outputs" in self.model_fields_set

    def function_calls(self) -> list[FunctionCall]:
        return [b.function_call for b in self.outputs if isinstance(b, FunctionCallBlock)]

    def texts(self) -> list[str]:
        return [b.text for b in self.outputs if isinstance(b, TextBlock)]

    def first_text(self) -> Optional[str]:
        texts = self.texts()
        return texts[0] if texts else None

    def thought_signature(self) -> Optional[str]:
        signature = None
        for block in self.outputs:
            if isinstance(block, ThoughtBlock) and block.signature:
                signature = block.signature
        return signature


# ═══════════════════════════════════════════════════════════
# Tool results
# ═══════════════════════════════════════════════════════════


class ToolSuccess(BaseModel):
    success: Literal[True] = True
    data: Any = None


class ToolError(BaseModel):
    success: Literal[False] = False
    kind: ToolErrorKind
    message: str
    hint: str = ""
    retryable: bool = False


ToolResult = Union[ToolSuccess, ToolError]


# ═══════════════════════════════════════════════════════════
# Recovery and loop state
# ═══════════════════════════════════════════════════════════


class JsonClassification(BaseModel):
    """Verdict on a failed parse; computed once per attempt and never persisted."""

    kind: JsonFailureKind
    confidence: Confidence
    valid_prefix_end: Optional[int] = None


@dataclass
class ToolCallLog:
    tool: str
    arguments: dict[str, Any]
    result_preview: str
    duration_ms: int
    success: bool


@dataclass
class AgentLoopState:
    """Per-invocation loop state; owned by one run and discarded when it returns or raises."""

    history: list[Any]
    delta: list[Any] = field(default_factory=list)
    tool_failures: dict[str, int] = field(default_factory=dict)
    previous_interaction_id: Optional[str] = None
    thought_signature: Optional[str] = None
    folding_disabled: bool = False
    iteration: int = 0
    last_status: Optional[InteractionStatus] = None


class AgentRunResult(BaseModel):
    text: str
    iterations: int
    interaction_id: Optional[str] = None
    thought_signature: Optional[str] = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: int = 0
