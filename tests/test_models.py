"""
Unit tests for core data models.

Verifies envelope invariants independently of any provider: the content block
union, requires_action validation, missing outputs detection, unknown block
dropping and request payload serialization.
"""

import pytest
from pydantic import ValidationError

from deckgen.models import (
    FunctionCallBlock,
    InteractionRequest,
    InteractionResponse,
    InteractionStatus,
    TextBlock,
    ThoughtBlock,
    ToolError,
    ToolErrorKind,
    ToolSuccess,
    Usage,
)


class TestInteractionResponse:
    def test_parses_mixed_outputs(self) -> None:
        resp = InteractionResponse.model_validate(
            {
                "id": "int-1",
                "status": "requires_action",
                "outputs": [
                    {"type": "thought", "signature": "sig-a", "summary": [{"type": "text", "text": "Plan"}]},
                    {"type": "text", "text": "Looking it up."},
                    {"type": "function_call", "function_call": {"name": "lookup", "id": "c1", "arguments": {"q": "x"}}},
                ],
            }
        )
        assert resp.status == InteractionStatus.REQUIRES_ACTION
        assert isinstance(resp.outputs[0], ThoughtBlock)
        assert resp.outputs[0].summary_text() == "Plan"
        assert resp.thought_signature() == "sig-a"
        assert resp.texts() == ["Looking it up."]
        calls = resp.function_calls()
        assert calls[0].name == "lookup"
        assert calls[0].arguments == {"q": "x"}

    def test_requires_action_without_call_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InteractionResponse.model_validate(
                {"id": "int-1", "status": "requires_action", "outputs": [{"type": "text", "text": "hi"}]}
            )

    def test_missing_outputs_field_detected(self) -> None:
        resp = InteractionResponse.model_validate({"id": "int-1", "status": "completed"})
        assert not resp.has_outputs_field
        assert resp.outputs == []

    def test_empty_outputs_field_is_present(self) -> None:
        resp = InteractionResponse.model_validate({"id": "int-1", "status": "completed", "outputs": []})
        assert resp.has_outputs_field
        assert resp.first_text() is None

    def test_unknown_block_types_dropped(self) -> None:
        resp = InteractionResponse.model_validate(
            {
                "id": "int-1",
                "status": "completed",
                "outputs": [{"type": "image", "data": "..."}, {"type": "text", "text": "ok"}],
            }
        )
        assert len(resp.outputs) == 1
        assert resp.first_text() == "ok"

    def test_flat_function_call_is_nested(self) -> None:
        block = FunctionCallBlock.model_validate({"type": "function_call", "name": "lookup", "arguments": {"a": 1}})
        assert block.function_call.name == "lookup"
        assert block.function_call.arguments == {"a": 1}

    def test_last_signature_wins(self) -> None:
        resp = InteractionResponse.model_validate(
            {
                "id": "int-1",
                "status": "completed",
                "outputs": [
                    {"type": "thought", "signature": "first"},
                    {"type": "thought", "signature": "second"},
                    {"type": "text", "text": "done"},
                ],
            }
        )
        assert resp.thought_signature() == "second"

    def test_invalid_status_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InteractionResponse.model_validate({"id": "int-1", "status": "sleeping", "outputs": []})


class TestInteractionRequest:
    def test_empty_prompt_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InteractionRequest(model="m", input="   ")

    def test_empty_block_list_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InteractionRequest(model="m", input=[])

    def test_payload_omits_unset_fields(self) -> None:
        req = InteractionRequest(model="m", input=[TextBlock(text="hello")])
        payload = req.to_payload()
        assert payload["input"] == [{"type": "text", "text": "hello"}]
        assert "previous_interaction_id" not in payload
        assert "system_instruction" not in payload
        assert payload["generation_config"] == {}


class TestToolResults:
    def test_success_shape(self) -> None:
        assert ToolSuccess(data={"n": 1}).model_dump(mode="json") == {"success": True, "data": {"n": 1}}

    def test_error_shape(self) -> None:
        err = ToolError(kind=ToolErrorKind.TIMEOUT, message="slow", hint="retry", retryable=True)
        dumped = err.model_dump(mode="json")
        assert dumped["success"] is False
        assert dumped["kind"] == "timeout"
        assert dumped["retryable"] is True


def test_usage_computed_total() -> None:
    usage = Usage(total_input_tokens=10, total_output_tokens=5, total_reasoning_tokens=3, total_tool_use_tokens=2)
    assert usage.computed_total == 20
