"""
Transport clients for the interactions endpoint and the fallback provider.

Provides a thin async wrapper over the model provider's interactions API and an
independent OpenAI-compatible provider used only as a last resort. Nothing in
this module parses model text; it moves envelopes and classifies failures.

Design decisions:
  - One ``httpx.AsyncClient`` per ``InteractionsClient`` so the connection pool is reused
  - Retry only on transient errors (429, 500, 503, connection failures)
  - Timeouts and caller aborts surface as ``RequestTimeoutError`` and are never retried
  - Usage is normalized before the envelope is validated, so downstream code sees one shape
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import httpx
import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deckgen.config import Settings, get_settings
from deckgen.cost import CostLedger
from deckgen.models import InteractionRequest, InteractionResponse, Usage
from deckgen.observability import metrics as obs_metrics
from deckgen.usage import normalize_model_name, normalize_usage

logger = structlog.get_logger()


# ── Error taxonomy: retry only transient, fail fast on permanent ──


class LLMClientError(Exception):
    """Base for model layer errors."""

    pass


class TransientError(LLMClientError):
    """Rate limit, 5xx, connection reset: safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentError(LLMClientError):
    """Invalid API key, bad request, rejected schema: do not retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestTimeoutError(LLMClientError):
    """The request exceeded its deadline or the caller aborted it."""

    pass


class MalformedResponseError(PermanentError):
    """The provider envelope is missing required fields or violates its invariants."""

    pass


class StructuredOutputError(LLMClientError):
    """Every recovery layer failed; carries the failure kind and a bounded excerpt."""

    def __init__(self, message: str, kind: str, excerpt: str = "") -> None:
        super().__init__(f"{message} [kind={kind}] excerpt={excerpt!r}")
        self.kind = kind
        self.excerpt = excerpt


class InteractionFailedError(LLMClientError):
    """The provider reported a failed or cancelled interaction."""

    def __init__(self, status: str, interaction_id: Optional[str] = None) -> None:
        super().__init__(f"Interaction {status}" + (f" (id={interaction_id})" if interaction_id else ""))
        self.status = status
        self.interaction_id = interaction_id


class MaxIterationsExceededError(LLMClientError):
    """The agent loop hit its iteration ceiling without a final answer."""

    def __init__(self, iterations: int, last_status: Optional[str] = None) -> None:
        super().__init__(f"Agent exceeded maximum iterations ({iterations}); last status={last_status}")
        self.iterations = iterations
        self.last_status = last_status


_TRANSIENT_STATUS = frozenset({429, 500, 503})


def _classify_error(exc: BaseException) -> type[LLMClientError]:
    """Classify an arbitrary exception as Transient or Permanent by its message."""
    msg = str(exc).lower()
    if "rate" in msg or "429" in msg or "503" in msg or "500" in msg:
        return TransientError
    if "connection" in msg or "reset" in msg or "unavailable" in msg:
        return TransientError
    if "401" in msg or "403" in msg or "invalid" in msg or "api key" in msg:
        return PermanentError
    if "400" in msg or "malformed" in msg or "schema" in msg:
        return PermanentError
    return TransientError


def schema_guidance(message: str) -> Optional[str]:
    """Actionable hint for schema rejections; None when the message is not schema related."""
    lowered = message.lower()
    if "nesting depth" in lowered:
        return (
            "Response schema exceeds the maximum nesting depth (4 levels). Flatten nested "
            "object definitions or move structure requirements into the prompt."
        )
    if "schema" in lowered or "generationconfig" in lowered:
        return (
            "Response schema rejected. Union types (oneOf/anyOf), circular references and "
            "advanced validations (minLength, pattern) are not supported."
        )
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or response.text)
    return response.text


async def _await_or_abort(coro: Awaitable[Any], abort: Optional[asyncio.Event]) -> Any:
    """Await ``coro`` unless ``abort`` fires first; an abort raises RequestTimeoutError."""
    if abort is None:
        return await coro
    request_task = asyncio.ensure_future(coro)
    if abort.is_set():
        request_task.cancel()
        raise RequestTimeoutError("request aborted before it was sent")
    abort_task = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_task.cancel()
        if not request_task.done():
            request_task.cancel()
    if request_task in done:
        return request_task.result()
    raise RequestTimeoutError("request aborted by caller")


class InteractionsClient:
    """
    Async client for create/get/cancel on the interactions endpoint.

    - ``max_retries`` is the total number of attempts for transient failures.
    - Every call is bounded by ``request_timeout_s``.
    - When a ``CostLedger`` is attached, usage from every response is recorded.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        ledger: Optional[CostLedger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._llm = self.settings.llm
        self.ledger = ledger
        self._base = self._llm.interactions_api_base.rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self._llm.request_timeout_s),
            transport=transport,
        )
        logger.info(
            "interactions_client_initialized",
            base=self._base,
            key_suffix=f"...{self._llm.gemini_api_key[-4:]}" if self._llm.gemini_api_key else None,
            max_retries=self._llm.max_retries,
        )

    async def __aenter__(self) -> InteractionsClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        if not self._llm.gemini_api_key:
            raise PermanentError("GEMINI_API_KEY is not configured; add it to .env or the environment")
        return {"Content-Type": "application/json", "x-goog-api-key": self._llm.gemini_api_key}

    async def _send(
        self,
        method: str,
        url: str,
        payload: Optional[dict[str, Any]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> dict[str, Any]:
        headers = self._headers()
        try:
            response = await asyncio.wait_for(
                _await_or_abort(self._http.request(method, url, json=payload, headers=headers), abort),
                timeout=self._llm.request_timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(
                f"Interactions API request timed out after {self._llm.request_timeout_s:g}s"
            ) from e
        except httpx.TransportError as e:
            raise TransientError(f"Interactions API connection error: {e}") from e

        status = response.status_code
        if status >= 400:
            message = _error_message(response)
            if status in _TRANSIENT_STATUS:
                raise TransientError(f"Interactions API error ({status}): {message}", status_code=status)
            guidance = schema_guidance(message)
            if guidance:
                logger.error("interactions_schema_rejected", status=status, guidance=guidance)
                message = f"{message}. {guidance}"
            raise PermanentError(f"Interactions API error ({status}): {message}", status_code=status)
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Interactions API returned non-JSON body: {response.text[:200]}") from e
        if not isinstance(body, dict):
            raise MalformedResponseError("Interactions API returned a non-object envelope")
        return body

    def _parse(self, raw: dict[str, Any], requested_model: Optional[str] = None) -> InteractionResponse:
        usage = normalize_usage(raw)
        envelope = dict(raw)
        envelope["usage"] = usage.model_dump() if usage else None
        # A null outputs field counts as missing
        if envelope.get("outputs") is None:
            envelope.pop("outputs", None)
        try:
            response = InteractionResponse.model_validate(envelope)
        except ValidationError as e:
            raise MalformedResponseError(f"Malformed interaction envelope: {e}") from e

        if requested_model and response.model:
            resolved = normalize_model_name(response.model)
            if resolved != normalize_model_name(requested_model):
                logger.info("interactions_model_resolved", requested=requested_model, resolved=resolved)
        if self.ledger is not None and response.usage is not None:
            self.ledger.add_usage(response.model or requested_model or "unknown", response.usage)
        return response

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(self._llm.max_retries, 1)),
            wait=wait_exponential(multiplier=self._llm.retry_base_delay_s, max=60),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "interactions_retry",
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else "unknown",
            ),
        )

    async def create(
        self,
        request: InteractionRequest,
        abort: Optional[asyncio.Event] = None,
        task: str = "",
    ) -> InteractionResponse:
        """
        Create a new interaction (single turn).

        Raises:
            TransientError: 429/5xx/connection failure after all attempts.
            PermanentError: any other 4xx (no retry).
            RequestTimeoutError: deadline exceeded or ``abort`` set.
            MalformedResponseError: envelope failed validation.
        """
        payload = request.to_payload()
        raw: dict[str, Any] = {}
        logger.debug("interactions_create", model=request.model, task=task or None)
        async with obs_metrics.track_llm_call(model=request.model, task=task, provider="interactions"):
            async for attempt in self._retrying():
                with attempt:
                    raw = await self._send("POST", self._base, payload, abort)
        return self._parse(raw, request.model)

    async def get(self, interaction_id: str, abort: Optional[asyncio.Event] = None) -> InteractionResponse:
        """Retrieve an existing interaction by id."""
        raw: dict[str, Any] = {}
        async for attempt in self._retrying():
            with attempt:
                raw = await self._send("GET", f"{self._base}/{interaction_id}", None, abort)
        return self._parse(raw)

    async def cancel(self, interaction_id: str) -> InteractionResponse:
        """Cancel an in-progress interaction."""
        raw = await self._send("POST", f"{self._base}/{interaction_id}:cancel")
        logger.info("interactions_cancelled", interaction_id=interaction_id)
        return self._parse(raw)


class FallbackChatClient:
    """
    Independent OpenAI-compatible provider, used once when the primary yields no text.

    ``available`` is False without a credential; callers skip silently in that case.
    """

    def __init__(self, settings: Optional[Settings] = None, ledger: Optional[CostLedger] = None) -> None:
        self._settings = settings or get_settings()
        self.ledger = ledger
        self.model_name = self._settings.llm.fallback_model
        self._model: Optional[ChatOpenAI] = None

    @property
    def available(self) -> bool:
        return bool(self._settings.llm.fallback_api_key.strip())

    def _ensure_model(self) -> ChatOpenAI:
        if self._model is None:
            llm = self._settings.llm
            self._model = ChatOpenAI(
                base_url=llm.fallback_api_base.rstrip("/"),
                api_key=llm.fallback_api_key.strip(),
                model=llm.fallback_model,
                temperature=0.2,
                max_tokens=llm.max_output_tokens,
                timeout=llm.request_timeout_s,
                max_retries=0,
            )
        return self._model

    async def generate(self, prompt: str, system_prompt: Optional[str] = None, json_mode: bool = False) -> str:
        """Single chat completion; returns the text content (possibly empty)."""
        if not self.available:
            raise PermanentError("Fallback provider credential is not configured")
        model = self._ensure_model()
        if json_mode:
            model = model.bind(response_format={"type": "json_object"})
        messages = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        async with obs_metrics.track_llm_call(model=self.model_name, task="fallback", provider="openai_compatible"):
            try:
                result = await model.ainvoke(messages)
            except Exception as e:
                if _classify_error(e) is TransientError:
                    raise TransientError(str(e)) from e
                raise PermanentError(str(e)) from e

        if self.ledger is not None:
            self.ledger.add_usage(self.model_name, _usage_from_message(result))
        content = result.content
        if isinstance(content, list):
            content = "".join(part if isinstance(part, str) else str(part.get("text", "")) for part in content)
        return content or ""


def _usage_from_message(message: Any) -> Optional[Usage]:
    """Usage from a LangChain AIMessage (usage_metadata, else response_metadata.token_usage)."""
    metadata = getattr(message, "usage_metadata", None)
    if metadata:
        return normalize_usage({"usage": dict(metadata)})
    response_metadata = getattr(message, "response_metadata", None) or {}
    return normalize_usage(response_metadata)
