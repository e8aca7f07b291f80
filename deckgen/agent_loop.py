"""
Multi-turn tool-calling agent loop.

The loop sends the conversation to the model, executes every function call the
model asks for, folds the results back in, and repeats until the model answers
with text or the iteration ceiling is hit.

Design decisions:
  - Tool failures become a ``ToolError`` observation for the model, never an exception
  - Turns after the first send only the newest tool results plus the previous
    interaction id; a rejected continuation switches the run to full history
  - Transient transport errors back off and retry the same iteration
  - All loop state lives in one ``AgentLoopState`` owned by a single ``run`` call
"""

from __future__ import annotations

import asyncio
import inspect
import json
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deckgen.config import ContextMode, Settings
from deckgen.llm_client import (
    InteractionFailedError,
    InteractionsClient,
    MalformedResponseError,
    MaxIterationsExceededError,
    PermanentError,
    RequestTimeoutError,
    TransientError,
)
from deckgen.models import (
    AgentLoopState,
    AgentRunResult,
    ContentBlock,
    FunctionCall,
    FunctionResult,
    FunctionResultBlock,
    GenerationConfig,
    InteractionRequest,
    InteractionResponse,
    InteractionStatus,
    TextBlock,
    ThinkingLevel,
    ThoughtBlock,
    ToolCallLog,
    ToolDeclarations,
    ToolDefinition,
    ToolError,
    ToolErrorKind,
    ToolResult,
    ToolSuccess,
)
from deckgen.observability import metrics as obs_metrics
from deckgen.prompts.templates import (
    TOOL_NOT_FOUND_HINT,
    TOOL_NOT_FOUND_MESSAGE,
    TOOL_RETRY_EXHAUSTED_HINT,
    TOOL_RETRY_EXHAUSTED_MESSAGE,
)

logger = structlog.get_logger()

ToolExecutor = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]
ToolCallback = Callable[[str, dict[str, Any], ToolResult], None]


@dataclass
class Tool:
    """A declared tool and the function that runs it (sync or async)."""

    definition: ToolDefinition
    execute: ToolExecutor
    side_effect_free: bool = False

    @property
    def name(self) -> str:
        return self.definition.name


# ── Tool error classification: message substrings first, exception type second ──

_ERROR_MARKERS: list[tuple[ToolErrorKind, tuple[str, ...]]] = [
    (ToolErrorKind.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "429", "too many requests", "quota")),
    (ToolErrorKind.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ToolErrorKind.NOT_FOUND, ("not found", "404", "no such", "does not exist")),
    (ToolErrorKind.VALIDATION, ("invalid", "validation", "required", "must be", "400")),
    (ToolErrorKind.NETWORK, ("network", "connection", "econnrefused", "econnreset", "dns", "unreachable", "socket")),
]

_ERROR_TYPES: list[tuple[tuple[type[BaseException], ...], ToolErrorKind]] = [
    ((TimeoutError, asyncio.TimeoutError, httpx.TimeoutException), ToolErrorKind.TIMEOUT),
    ((ConnectionError, httpx.TransportError), ToolErrorKind.NETWORK),
    ((FileNotFoundError,), ToolErrorKind.NOT_FOUND),
    ((ValidationError, ValueError, TypeError, KeyError), ToolErrorKind.VALIDATION),
]

_HINTS: dict[ToolErrorKind, str] = {
    ToolErrorKind.RATE_LIMIT: "The tool is rate limited. Wait before calling it again or use another tool.",
    ToolErrorKind.TIMEOUT: "The tool timed out. Retry with a smaller request.",
    ToolErrorKind.NOT_FOUND: "The requested resource does not exist. Check the identifiers in the arguments.",
    ToolErrorKind.VALIDATION: "The arguments do not match the tool's parameter schema. Fix them and retry.",
    ToolErrorKind.NETWORK: "A network error occurred. Retrying may succeed.",
    ToolErrorKind.RUNTIME: "The tool failed unexpectedly. Try a different approach.",
}

_RETRYABLE = frozenset({ToolErrorKind.RATE_LIMIT, ToolErrorKind.TIMEOUT, ToolErrorKind.NETWORK})

# Provider messages that mean the previous interaction id cannot be continued
_CONTINUATION_REJECTION_MARKERS = (
    "previous_interaction_id",
    "previous interaction",
    "interaction not found",
    "invalid interaction",
    "expired",
)


def classify_tool_error(exc: BaseException) -> ToolError:
    """Map an exception raised by a tool to a structured observation."""
    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    kind = ToolErrorKind.RUNTIME
    for candidate, markers in _ERROR_MARKERS:
        if any(marker in lowered for marker in markers):
            kind = candidate
            break
    else:
        for types, candidate in _ERROR_TYPES:
            if isinstance(exc, types):
                kind = candidate
                break
    return ToolError(kind=kind, message=message, hint=_HINTS[kind], retryable=kind in _RETRYABLE)


def _is_continuation_rejection(exc: PermanentError) -> bool:
    if exc.status_code == 404:
        return True
    lowered = str(exc).lower()
    return any(marker in lowered for marker in _CONTINUATION_REJECTION_MARKERS)


class AgentLoop:
    """
    Tool-calling loop over the interactions endpoint.

    One instance may run many times; each ``run`` owns its own state.
    """

    def __init__(
        self,
        client: InteractionsClient,
        tools: Iterable[Tool],
        *,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        settings: Optional[Settings] = None,
        max_iterations: Optional[int] = None,
        max_tool_retries: Optional[int] = None,
        context_mode: Optional[ContextMode] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        thinking_level: Optional[str] = None,
        on_tool_call: Optional[ToolCallback] = None,
        initial_thought_signature: Optional[str] = None,
    ) -> None:
        self.client = client
        self._settings = settings or client.settings
        cfg = self._settings.agent
        llm = self._settings.llm
        self._cfg = cfg
        self.tools = {tool.name: tool for tool in tools}
        self.model = model or llm.agentic_model
        self.system_instruction = system_instruction
        self.max_iterations = max_iterations or cfg.max_iterations
        self.max_tool_retries = max_tool_retries or cfg.max_tool_retries
        self.context_mode = context_mode or cfg.context_mode
        level = llm.thinking_level if thinking_level is None else thinking_level
        self._generation = GenerationConfig(
            temperature=llm.temperature if temperature is None else temperature,
            max_output_tokens=max_output_tokens or llm.max_output_tokens,
            thinking_level=ThinkingLevel(level) if level else None,
        )
        self.on_tool_call = on_tool_call
        self.initial_thought_signature = initial_thought_signature

    # ── Requests ──

    def _tool_declarations(self) -> Optional[list[ToolDeclarations]]:
        if not self.tools:
            return None
        return [ToolDeclarations(function_declarations=[t.definition for t in self.tools.values()])]

    def _uses_delta(self, state: AgentLoopState) -> bool:
        return (
            self.context_mode == ContextMode.SERVER_DELTA
            and not state.folding_disabled
            and state.iteration > 1
            and bool(state.previous_interaction_id)
            and bool(state.delta)
        )

    def _build_request(self, state: AgentLoopState) -> InteractionRequest:
        use_delta = self._uses_delta(state)
        return InteractionRequest(
            model=self.model,
            input=list(state.delta if use_delta else state.history),
            system_instruction=self.system_instruction,
            tools=self._tool_declarations(),
            generation_config=self._generation,
            previous_interaction_id=state.previous_interaction_id if use_delta else None,
        )

    async def _send_once(self, state: AgentLoopState, abort: Optional[asyncio.Event]) -> InteractionResponse:
        request = self._build_request(state)
        try:
            return await self.client.create(request, abort=abort, task="agent_loop")
        except MalformedResponseError:
            raise
        except PermanentError as e:
            if request.previous_interaction_id is None or not _is_continuation_rejection(e):
                raise
            logger.warning(
                "agent_continuation_rejected",
                iteration=state.iteration,
                previous_interaction_id=state.previous_interaction_id,
                error=str(e),
            )
            state.folding_disabled = True
            return await self.client.create(self._build_request(state), abort=abort, task="agent_loop")

    async def _send(self, state: AgentLoopState, abort: Optional[asyncio.Event]) -> InteractionResponse:
        # Each loop attempt already includes the client's own retries
        attempts = math.ceil((self._cfg.max_transient_retries + 1) / max(self._settings.llm.max_retries, 1))
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._cfg.transient_backoff_base_s, max=60),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "agent_transient_backoff",
                iteration=state.iteration,
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else "unknown",
            ),
        )
        return await retrying(self._send_once, state, abort)

    async def _await_completion(
        self,
        response: InteractionResponse,
        abort: Optional[asyncio.Event],
    ) -> InteractionResponse:
        polls = 0
        while response.status == InteractionStatus.IN_PROGRESS:
            if polls >= self._cfg.max_polls:
                raise RequestTimeoutError(
                    f"Interaction {response.id} still in progress after {polls} polls"
                )
            await asyncio.sleep(self._cfg.poll_interval_s)
            response = await self.client.get(response.id, abort=abort)
            polls += 1
        return response

    # ── Tools ──

    async def _execute_one(self, call: FunctionCall, state: AgentLoopState) -> tuple[FunctionResultBlock, ToolCallLog]:
        tool = self.tools.get(call.name)
        failures = state.tool_failures.get(call.name, 0)
        start = time.perf_counter()
        result: ToolResult
        if tool is None:
            result = ToolError(
                kind=ToolErrorKind.NOT_FOUND,
                message=TOOL_NOT_FOUND_MESSAGE.format(tool=call.name),
                hint=TOOL_NOT_FOUND_HINT.format(available=", ".join(sorted(self.tools)) or "none"),
                retryable=False,
            )
        elif failures >= self.max_tool_retries:
            result = ToolError(
                kind=ToolErrorKind.RUNTIME,
                message=TOOL_RETRY_EXHAUSTED_MESSAGE.format(tool=call.name, failures=failures),
                hint=TOOL_RETRY_EXHAUSTED_HINT,
                retryable=False,
            )
            logger.warning("agent_tool_retries_exhausted", tool=call.name, failures=failures)
        else:
            try:
                if tool.side_effect_free and not inspect.iscoroutinefunction(tool.execute):
                    # Sync executors that may run in parallel go to a worker thread
                    data = await asyncio.to_thread(tool.execute, call.arguments)
                else:
                    data = tool.execute(call.arguments)
                if inspect.isawaitable(data):
                    data = await data
                result = ToolSuccess(data=data)
                state.tool_failures[call.name] = 0
            except Exception as e:
                result = classify_tool_error(e)
                state.tool_failures[call.name] = failures + 1
                logger.warning(
                    "agent_tool_failed",
                    tool=call.name,
                    kind=result.kind.value,
                    failures=failures + 1,
                    error=result.message[:200],
                )
        duration_ms = int((time.perf_counter() - start) * 1000)

        payload = result.model_dump(mode="json")
        obs_metrics.record_tool_call(call.name, "success" if result.success else result.kind.value)
        logger.info("agent_tool_call", tool=call.name, success=result.success, duration_ms=duration_ms)
        if self.on_tool_call is not None:
            self.on_tool_call(call.name, call.arguments, result)
        block = FunctionResultBlock(
            function_result=FunctionResult(name=call.name, call_id=call.id or call.name, result=payload)
        )
        log = ToolCallLog(
            tool=call.name,
            arguments=call.arguments,
            result_preview=json.dumps(payload, default=str)[: self._cfg.tool_result_preview_chars],
            duration_ms=duration_ms,
            success=result.success,
        )
        return block, log

    async def _execute_calls(self, calls: list[FunctionCall], state: AgentLoopState) -> list[tuple[FunctionResultBlock, ToolCallLog]]:
        parallel = len(calls) > 1 and all(
            call.name in self.tools and self.tools[call.name].side_effect_free for call in calls
        )
        if parallel:
            return list(await asyncio.gather(*(self._execute_one(call, state) for call in calls)))
        return [await self._execute_one(call, state) for call in calls]

    # ── Loop ──

    def _initial_history(self, prompt: Union[str, list[ContentBlock]]) -> list[Any]:
        history: list[Any] = [TextBlock(text=prompt)] if isinstance(prompt, str) else list(prompt)
        if self.initial_thought_signature:
            history.insert(0, ThoughtBlock(signature=self.initial_thought_signature))
        return history

    async def run(
        self,
        prompt: Union[str, list[ContentBlock]],
        abort: Optional[asyncio.Event] = None,
    ) -> AgentRunResult:
        """
        Run the loop to a final answer.

        Raises:
            MaxIterationsExceededError: no final answer within ``max_iterations``.
            InteractionFailedError: the provider reported failed or cancelled.
            MalformedResponseError: a response envelope is missing ``outputs``.
            PermanentError / RequestTimeoutError: transport failures that retrying cannot fix.
        """
        state = AgentLoopState(history=self._initial_history(prompt))
        state.thought_signature = self.initial_thought_signature
        call_logs: list[ToolCallLog] = []
        start = time.perf_counter()

        while state.iteration < self.max_iterations:
            state.iteration += 1
            logger.info(
                "agent_iteration",
                iteration=state.iteration,
                mode="delta" if self._uses_delta(state) else "full_history",
                history_blocks=len(state.history),
            )
            response = await self._await_completion(await self._send(state, abort), abort)
            if not response.has_outputs_field:
                raise MalformedResponseError(f"Interaction {response.id} has no outputs field")

            state.previous_interaction_id = response.id
            state.last_status = response.status
            signature = response.thought_signature()
            if signature:
                state.thought_signature = signature
                logger.debug("agent_thought_signature", iteration=state.iteration, chars=len(signature))
            for block in response.outputs:
                if isinstance(block, ThoughtBlock) and block.summary_text():
                    logger.debug("agent_thought_summary", summary=block.summary_text()[:150])

            calls = response.function_calls()
            if calls and response.status == InteractionStatus.REQUIRES_ACTION:
                executed = await self._execute_calls(calls, state)
                results = [block for block, _ in executed]
                call_logs.extend(log for _, log in executed)
                state.history.extend(response.outputs)
                state.history.extend(results)
                state.delta = list(results)
                continue

            text = "".join(response.texts())
            if response.status == InteractionStatus.COMPLETED or text:
                obs_metrics.record_agent_run(state.iteration, "completed")
                logger.info("agent_completed", iterations=state.iteration, tool_calls=len(call_logs))
                return AgentRunResult(
                    text=text,
                    iterations=state.iteration,
                    interaction_id=response.id,
                    thought_signature=state.thought_signature,
                    tool_calls=[asdict(log) for log in call_logs],
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )

            if response.status in (InteractionStatus.FAILED, InteractionStatus.CANCELLED):
                obs_metrics.record_agent_run(state.iteration, response.status.value)
                raise InteractionFailedError(response.status.value, response.id)

        obs_metrics.record_agent_run(state.iteration, "max_iterations")
        logger.error("agent_max_iterations", iterations=state.iteration, last_status=state.last_status)
        raise MaxIterationsExceededError(
            state.iteration,
            state.last_status.value if state.last_status else None,
        )
