"""
Structured-output orchestration: from a prompt to a typed JSON value.

Per request: send, retry deterministically on degenerate text, retry on a
simpler model when nothing came back, try the fallback provider, then parse.
A failed parse is classified and handed to the repair pipeline, whose last
resort is a repair call on the simple model.

JSON malformation never reaches the caller directly: the result is a parsed
value, a repaired value, the fixed fallback value, or ``StructuredOutputError``
once every layer (model escalation included) is exhausted.
"""

from __future__ import annotations

import asyncio
import copy
import json
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ValidationError

from deckgen.config import ModelTask, Settings
from deckgen.llm_client import (
    FallbackChatClient,
    InteractionsClient,
    LLMClientError,
    RequestTimeoutError,
    StructuredOutputError,
)
from deckgen.models import (
    Confidence,
    GenerationConfig,
    InteractionRequest,
    JsonClassification,
    JsonFailureKind,
    ThinkingLevel,
    ToolDeclarations,
)
from deckgen.observability import metrics as obs_metrics
from deckgen.prompts.templates import (
    JSON_REPAIR_SCHEMA_BLOCK,
    JSON_REPAIR_SYSTEM,
    JSON_REPAIR_USER_TEMPLATE,
    TRUNCATED_INPUT_MARKER,
)
from deckgen.recovery.degeneration import DegenerationDetector
from deckgen.recovery.normalize import backfill_defaults, normalize_output
from deckgen.recovery.repair import (
    RepairFailedError,
    RepairPipeline,
    is_parsed,
    strip_json_fences,
    try_parse,
)

logger = structlog.get_logger()

JSON_MIME_TYPE = "application/json"


def matches_schema_shape(value: Any, schema: Optional[dict[str, Any]]) -> bool:
    """
    Top-level shape check against a JSON schema.

    Checks the root type, required keys of a root object, and that an array
    declared to hold objects holds only objects. Without a schema any object
    or array passes.
    """
    if not schema:
        return isinstance(value, (dict, list))
    expected = str(schema.get("type", "")).lower()
    if expected == "object":
        return isinstance(value, dict) and all(key in value for key in schema.get("required", []))
    if expected == "array":
        if not isinstance(value, list):
            return False
        item_type = str((schema.get("items") or {}).get("type", "")).lower()
        if item_type == "object":
            return all(isinstance(item, dict) for item in value)
        return True
    return True


class StructuredOutputOrchestrator:
    """Text and JSON generation with degeneration, empty-response and malformation recovery."""

    def __init__(
        self,
        client: InteractionsClient,
        settings: Optional[Settings] = None,
        fallback: Optional[FallbackChatClient] = None,
        pipeline: Optional[RepairPipeline] = None,
    ) -> None:
        self.client = client
        self._settings = settings or client.settings
        self._llm = self._settings.llm
        self._repair = self._settings.repair
        self.fallback = fallback if fallback is not None else FallbackChatClient(self._settings, ledger=client.ledger)
        self.pipeline = pipeline or RepairPipeline(self._settings, escalate=self._escalate_repair)
        if self.pipeline.escalate is None:
            self.pipeline.escalate = self._escalate_repair
        self.detector: DegenerationDetector = self.pipeline.detector

    # ── Request building ──

    def _resolve(self, model: Optional[str], task: Optional[ModelTask], max_output_tokens: Optional[int]) -> tuple[str, int]:
        if task is not None:
            task_model, task_tokens = self._settings.resolve_task(task)
        else:
            task_model, task_tokens = self._llm.agentic_model, self._llm.max_output_tokens
        return model or task_model, max_output_tokens or task_tokens

    def _thinking(self, thinking_level: Optional[str]) -> Optional[ThinkingLevel]:
        level = self._llm.thinking_level if thinking_level is None else thinking_level
        return ThinkingLevel(level) if level else None

    # ── Text ──

    async def generate_text(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        task: Optional[ModelTask] = None,
        system_instruction: Optional[str] = None,
        response_format: Optional[dict[str, Any]] = None,
        response_mime_type: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        thinking_level: Optional[str] = None,
        tools: Optional[list[ToolDeclarations]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> str:
        """
        One prompt to text, with recovery for degenerate and empty responses.

        ``thinking_level`` of None uses the configured default; an empty string
        disables thinking. Returns "" when the primary (twice) and the fallback
        provider all produced nothing; transport errors of the first call propagate.
        """
        model, max_tokens = self._resolve(model, task, max_output_tokens)
        task_name = task.value if task else ""
        request = InteractionRequest(
            model=model,
            input=prompt,
            system_instruction=system_instruction,
            response_format=response_format,
            response_mime_type=response_mime_type,
            tools=tools,
            generation_config=GenerationConfig(
                temperature=self._llm.temperature if temperature is None else temperature,
                max_output_tokens=max_tokens,
                thinking_level=self._thinking(thinking_level),
            ),
        )
        response = await self.client.create(request, abort=abort, task=task_name)
        text = response.first_text()

        if text:
            if not self.detector.is_degenerate(text):
                return text
            # Same budget: a smaller one turns repetition into truncation
            logger.warning("degenerate_output_retry", model=model, chars=len(text))
            retry = request.model_copy(
                update={
                    "generation_config": request.generation_config.model_copy(
                        update={"temperature": 0.0, "thinking_level": None}
                    )
                }
            )
            try:
                retry_text = (await self.client.create(retry, abort=abort, task=task_name)).first_text()
            except LLMClientError as e:
                self._reraise_if_aborted(e, abort)
                logger.error("degenerate_output_retry_failed", error=str(e))
                return text
            if retry_text:
                logger.info("degenerate_output_retry_succeeded", still_degenerate=self.detector.is_degenerate(retry_text))
                return retry_text
            return text

        logger.warning("empty_response_retry", model=model, outputs=len(response.outputs))
        await asyncio.sleep(self._repair.empty_retry_delay_s)
        retry = request.model_copy(
            update={
                "model": self._llm.simple_model,
                "generation_config": GenerationConfig(
                    temperature=0.1,
                    max_output_tokens=max_tokens + self._repair.empty_retry_extra_tokens,
                    thinking_level=None,
                ),
            }
        )
        try:
            retry_text = (await self.client.create(retry, abort=abort, task=task_name)).first_text()
        except LLMClientError as e:
            self._reraise_if_aborted(e, abort)
            logger.error("empty_response_retry_failed", error=str(e))
            retry_text = None
        if retry_text:
            logger.info("empty_response_retry_succeeded", model=self._llm.simple_model)
            return retry_text

        return await self._fallback_text(prompt, system_instruction, response_mime_type, model, abort)

    async def _fallback_text(
        self,
        prompt: str,
        system_instruction: Optional[str],
        response_mime_type: Optional[str],
        primary_model: str,
        abort: Optional[asyncio.Event],
    ) -> str:
        if not self.fallback.available:
            logger.info("fallback_provider_skipped", reason="no_credential")
            logger.error("empty_response_all_attempts", model=primary_model)
            return ""
        obs_metrics.record_llm_fallback(primary=primary_model, fallback=self.fallback.model_name, reason="empty_response")
        logger.warning("fallback_provider_attempt", primary=primary_model, fallback=self.fallback.model_name)
        try:
            text = await self.fallback.generate(
                prompt,
                system_prompt=system_instruction,
                json_mode=response_mime_type == JSON_MIME_TYPE,
            )
        except LLMClientError as e:
            self._reraise_if_aborted(e, abort)
            logger.error("fallback_provider_failed", error=str(e))
            text = ""
        if not text.strip():
            logger.error("empty_response_all_attempts", model=primary_model)
        return text

    @staticmethod
    def _reraise_if_aborted(exc: LLMClientError, abort: Optional[asyncio.Event]) -> None:
        if isinstance(exc, RequestTimeoutError) and abort is not None and abort.is_set():
            raise exc

    # ── JSON ──

    async def generate_json(
        self,
        prompt: str,
        schema: Optional[dict[str, Any]] = None,
        *,
        model: Optional[str] = None,
        task: Optional[ModelTask] = None,
        system_instruction: Optional[str] = None,
        output_model: Optional[type[BaseModel]] = None,
        defaults: Optional[dict[str, Any]] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        thinking_level: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> Any:
        """
        Generate and parse a JSON value conforming to ``schema`` (and ``output_model`` if given).

        Raises:
            StructuredOutputError: nothing came back, or every repair layer failed.
        """
        text = await self.generate_text(
            prompt,
            model=model,
            task=task,
            system_instruction=system_instruction,
            response_format=schema,
            response_mime_type=JSON_MIME_TYPE,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            thinking_level=thinking_level,
            abort=abort,
        )
        return await self.parse_json(text, schema, output_model=output_model, defaults=defaults)

    async def parse_json(
        self,
        text: str,
        schema: Optional[dict[str, Any]] = None,
        *,
        output_model: Optional[type[BaseModel]] = None,
        defaults: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Parse model text into the expected shape, repairing it when needed."""
        if not text or not text.strip():
            logger.error("json_empty_response")
            raise StructuredOutputError(
                "Model returned an empty response after all retries",
                kind=JsonFailureKind.EMPTY_RESPONSE.value,
            )

        # Fences are only stripped when the raw text does not parse on its own
        cleaned = text.strip()
        value = try_parse(cleaned)
        if not is_parsed(value):
            cleaned = strip_json_fences(text)
            value = try_parse(cleaned)
        classification: Optional[JsonClassification] = None
        if is_parsed(value):
            if schema is None and output_model is None:
                return backfill_defaults(value, defaults)
            if self._fits(value, schema, output_model, defaults, normalize=False):
                return self._finish(backfill_defaults(value, defaults), output_model, cleaned)
        if self.pipeline.exceeds_ceiling(cleaned):
            outcome = self.pipeline.repair_locally(cleaned)
            return self._finish(outcome.value, output_model, cleaned)

        if is_parsed(value):
            classification = self.pipeline.classifier.classify(cleaned)
            if classification.kind not in (JsonFailureKind.STRING_ARRAY, JsonFailureKind.ESCAPED_JSON):
                classification = JsonClassification(kind=JsonFailureKind.SCHEMA_DRIFT, confidence=Confidence.MEDIUM)
            logger.warning("json_shape_mismatch", kind=classification.kind.value)
        else:
            logger.warning("json_parse_failed", chars=len(cleaned), tail=cleaned[-100:])

        try:
            outcome = await self.pipeline.repair(
                cleaned,
                classification,
                schema,
                accept=lambda v: self._fits(v, schema, output_model, defaults, normalize=True),
            )
        except RepairFailedError as e:
            raise StructuredOutputError(
                "Failed to parse JSON response after all repair attempts",
                kind=e.kind.value,
                excerpt=e.excerpt,
            ) from e
        if outcome.fallback_used:
            logger.warning("json_fallback_value_used", strategy=outcome.strategy)
        return self._finish(normalize_output(outcome.value, defaults), output_model, cleaned)

    def _fits(
        self,
        value: Any,
        schema: Optional[dict[str, Any]],
        output_model: Optional[type[BaseModel]],
        defaults: Optional[dict[str, Any]],
        normalize: bool,
    ) -> bool:
        candidate = copy.deepcopy(value)
        candidate = normalize_output(candidate, defaults) if normalize else backfill_defaults(candidate, defaults)
        if not matches_schema_shape(candidate, schema):
            return False
        if output_model is not None:
            try:
                output_model.model_validate(candidate)
            except ValidationError:
                return False
        return True

    def _finish(self, value: Any, output_model: Optional[type[BaseModel]], source: str) -> Any:
        if output_model is None:
            return value
        try:
            return output_model.model_validate(value)
        except ValidationError as e:
            raise StructuredOutputError(
                f"Recovered JSON does not match {output_model.__name__}",
                kind=JsonFailureKind.SCHEMA_DRIFT.value,
                excerpt=source[: self._repair.excerpt_chars],
            ) from e

    async def _escalate_repair(self, text: str, schema: Optional[dict[str, Any]]) -> Optional[str]:
        """Ask the simple model to re-emit valid JSON; bounded by the repair timeout."""
        limit = self._repair.max_repair_chars
        safe_input = text if len(text) <= limit else text[:limit] + TRUNCATED_INPUT_MARKER
        schema_block = JSON_REPAIR_SCHEMA_BLOCK.format(schema=json.dumps(schema)) if schema else ""
        repair_model, _ = self._settings.resolve_task(ModelTask.JSON_REPAIR)
        request = InteractionRequest(
            model=repair_model,
            input=JSON_REPAIR_USER_TEMPLATE.format(schema_block=schema_block, broken_json=safe_input),
            system_instruction=JSON_REPAIR_SYSTEM,
            response_format=schema,
            response_mime_type=JSON_MIME_TYPE,
            generation_config=GenerationConfig(
                temperature=0.0,
                max_output_tokens=self._repair.repair_max_output_tokens,
            ),
        )
        response = await asyncio.wait_for(
            self.client.create(request, task=ModelTask.JSON_REPAIR.value),
            timeout=self._repair.repair_timeout_s,
        )
        return response.first_text()
