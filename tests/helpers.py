"""Scripted InteractionResponse builders shared by the test modules."""

from __future__ import annotations

from typing import Any, Optional

from deckgen.models import InteractionResponse


def text_response(
    text: str,
    *,
    interaction_id: str = "int-1",
    status: str = "completed",
    signature: Optional[str] = None,
) -> InteractionResponse:
    outputs: list[dict[str, Any]] = []
    if signature:
        outputs.append({"type": "thought", "signature": signature})
    outputs.append({"type": "text", "text": text})
    return InteractionResponse.model_validate({"id": interaction_id, "status": status, "outputs": outputs})


def empty_response(interaction_id: str = "int-empty") -> InteractionResponse:
    return InteractionResponse.model_validate({"id": interaction_id, "status": "completed", "outputs": []})


def call_response(
    *calls: tuple[str, dict[str, Any]],
    interaction_id: str = "int-1",
    signature: Optional[str] = None,
) -> InteractionResponse:
    """A requires_action turn; each call is (tool name, arguments)."""
    outputs: list[dict[str, Any]] = []
    if signature:
        outputs.append({"type": "thought", "signature": signature})
    for i, (name, arguments) in enumerate(calls):
        outputs.append(
            {
                "type": "function_call",
                "function_call": {"name": name, "id": f"{interaction_id}-call-{i}", "arguments": arguments},
            }
        )
    return InteractionResponse.model_validate({"id": interaction_id, "status": "requires_action", "outputs": outputs})
