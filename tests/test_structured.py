"""Tests for the structured-output orchestrator with a scripted model client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from helpers import empty_response, text_response
from pydantic import BaseModel

from deckgen.config import Settings
from deckgen.llm_client import StructuredOutputError
from deckgen.recovery.normalize import fallback_value, minimal_wrapper
from deckgen.structured import JSON_MIME_TYPE, StructuredOutputOrchestrator, matches_schema_shape


class Slide(BaseModel):
    title: str
    notes: list[str] = []


@pytest.fixture
def orchestrator(mock_client: MagicMock, settings: Settings) -> StructuredOutputOrchestrator:
    return StructuredOutputOrchestrator(mock_client, settings)


def _request(mock_client: MagicMock, index: int):
    return mock_client.create.await_args_list[index].args[0]


class TestShape:
    def test_object_required_keys(self) -> None:
        schema = {"type": "object", "required": ["title"]}
        assert matches_schema_shape({"title": "x"}, schema)
        assert not matches_schema_shape({"heading": "x"}, schema)
        assert not matches_schema_shape(["x"], schema)

    def test_array_of_objects(self) -> None:
        schema = {"type": "array", "items": {"type": "object"}}
        assert matches_schema_shape([{"a": 1}], schema)
        assert not matches_schema_shape(["a", "b"], schema)

    def test_no_schema_accepts_structures(self) -> None:
        assert matches_schema_shape({"a": 1}, None)
        assert not matches_schema_shape("text", None)


class TestGenerateJson:
    @pytest.mark.asyncio
    async def test_valid_json_skips_repair(self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock) -> None:
        mock_client.create.return_value = text_response('{"title": "Intro"}')
        with patch.object(orchestrator.pipeline, "repair", new_callable=AsyncMock) as repair:
            value = await orchestrator.generate_json("Outline", {"type": "object"})
        assert value == {"title": "Intro"}
        repair.assert_not_awaited()
        assert mock_client.create.await_count == 1
        assert _request(mock_client, 0).response_mime_type == JSON_MIME_TYPE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,expected", [("42", 42), ('"hello"', "hello"), ("true", True), ("null", None)])
    async def test_scalar_without_schema_returned_as_parsed(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock, raw: str, expected: object
    ) -> None:
        mock_client.create.return_value = text_response(raw)
        orchestrator.pipeline.escalate = AsyncMock()
        value = await orchestrator.generate_json("Count the slides")
        assert value == expected
        orchestrator.pipeline.escalate.assert_not_awaited()
        assert mock_client.create.await_count == 1

    @pytest.mark.asyncio
    async def test_backticks_inside_string_value_kept(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock
    ) -> None:
        raw = '{"title": "Use ```pip install x``` first", "n": 2}'
        mock_client.create.return_value = text_response(raw)
        with patch.object(orchestrator.pipeline, "repair", new_callable=AsyncMock) as repair:
            value = await orchestrator.generate_json("Setup slide")
        assert value == {"title": "Use ```pip install x``` first", "n": 2}
        repair.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_string_array_wrapped(self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock) -> None:
        mock_client.create.return_value = text_response('["x","y","z"]')
        value = await orchestrator.generate_json("Slide", {"type": "object"})
        assert value == minimal_wrapper(["x", "y", "z"])

    @pytest.mark.asyncio
    async def test_degenerate_output_retried_deterministically(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock
    ) -> None:
        mock_client.create.side_effect = [
            text_response('{"a": "' + "z" * 60),
            text_response('{"a": "fine"}'),
        ]
        value = await orchestrator.generate_json("Slide", max_output_tokens=4096)
        assert value == {"a": "fine"}
        first, retry = _request(mock_client, 0), _request(mock_client, 1)
        assert retry.generation_config.temperature == 0.0
        assert retry.generation_config.thinking_level is None
        # Budget is kept
        assert retry.generation_config.max_output_tokens == first.generation_config.max_output_tokens == 4096

    @pytest.mark.asyncio
    async def test_empty_response_retried_on_simple_model(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock, settings: Settings
    ) -> None:
        mock_client.create.side_effect = [empty_response(), text_response('{"a": 1}')]
        value = await orchestrator.generate_json("Slide", max_output_tokens=1000)
        assert value == {"a": 1}
        retry = _request(mock_client, 1)
        assert retry.model == settings.llm.simple_model
        assert retry.generation_config.max_output_tokens == 1000 + settings.repair.empty_retry_extra_tokens
        assert retry.generation_config.thinking_level is None

    @pytest.mark.asyncio
    async def test_empty_twice_without_fallback_credential(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock
    ) -> None:
        mock_client.create.side_effect = [empty_response(), empty_response()]
        assert not orchestrator.fallback.available
        with pytest.raises(StructuredOutputError) as exc_info:
            await orchestrator.generate_json("Slide")
        assert exc_info.value.kind == "empty_response"

    @pytest.mark.asyncio
    async def test_empty_twice_uses_fallback_provider(self, mock_client: MagicMock, settings: Settings) -> None:
        fallback = MagicMock()
        fallback.available = True
        fallback.model_name = "qwen-plus"
        fallback.generate = AsyncMock(return_value='{"a": 2}')
        orchestrator = StructuredOutputOrchestrator(mock_client, settings, fallback=fallback)
        mock_client.create.side_effect = [empty_response(), empty_response()]
        value = await orchestrator.generate_json("Slide", system_instruction="Be brief")
        assert value == {"a": 2}
        fallback.generate.assert_awaited_once_with("Slide", system_prompt="Be brief", json_mode=True)

    @pytest.mark.asyncio
    async def test_model_escalation_after_local_layers(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock, settings: Settings
    ) -> None:
        mock_client.create.side_effect = [
            text_response("I could not comply."),
            text_response('{"title": "x"}'),
        ]
        value = await orchestrator.generate_json("Slide", {"type": "object", "required": ["title"]})
        assert value == {"title": "x"}
        repair_request = _request(mock_client, 1)
        assert repair_request.model == settings.llm.simple_model
        assert repair_request.generation_config.temperature == 0.0
        assert "I could not comply." in repair_request.input

    @pytest.mark.asyncio
    async def test_terminal_failure_carries_excerpt(
        self, orchestrator: StructuredOutputOrchestrator, mock_client: MagicMock
    ) -> None:
        mock_client.create.side_effect = [
            text_response("I could not comply."),
            text_response("still not json"),
        ]
        with pytest.raises(StructuredOutputError) as exc_info:
            await orchestrator.generate_json("Slide")
        assert exc_info.value.kind == "unknown"
        assert exc_info.value.excerpt.startswith("I could not comply")


class TestParseJson:
    @pytest.mark.asyncio
    async def test_oversized_text_returns_fallback_without_repair(
        self, orchestrator: StructuredOutputOrchestrator
    ) -> None:
        orchestrator.pipeline.classifier = MagicMock()
        orchestrator.pipeline.escalate = AsyncMock()
        text = '{"notes": "' + "lorem ipsum " * 2000
        value = await orchestrator.parse_json(text)
        assert value == fallback_value()
        orchestrator.pipeline.classifier.classify.assert_not_called()
        orchestrator.pipeline.escalate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fenced_json(self, orchestrator: StructuredOutputOrchestrator) -> None:
        assert await orchestrator.parse_json('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.asyncio
    async def test_output_model_after_repair(self, orchestrator: StructuredOutputOrchestrator) -> None:
        value = await orchestrator.parse_json('{"title": "A"}, ""', output_model=Slide)
        assert value == Slide(title="A")

    @pytest.mark.asyncio
    async def test_schema_drift_escalates(self, orchestrator: StructuredOutputOrchestrator) -> None:
        orchestrator.pipeline.escalate = AsyncMock(return_value='{"title": "A"}')
        value = await orchestrator.parse_json('{"heading": "A"}', output_model=Slide)
        assert value == Slide(title="A")
        orchestrator.pipeline.escalate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_defaults_backfilled(self, orchestrator: StructuredOutputOrchestrator) -> None:
        value = await orchestrator.parse_json('{"title": "A", "theme": null}', defaults={"theme": "light"})
        assert value == {"title": "A", "theme": "light"}

    @pytest.mark.asyncio
    async def test_empty_text(self, orchestrator: StructuredOutputOrchestrator) -> None:
        with pytest.raises(StructuredOutputError):
            await orchestrator.parse_json("   ")
