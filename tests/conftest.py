"""Shared pytest fixtures for deck generation model layer tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from deckgen.config import AgentConfig, LLMConfig, RepairConfig, Settings


@pytest.fixture
def settings() -> Settings:
    """Settings with credentials set and every delay zeroed."""
    return Settings(
        llm=LLMConfig(
            gemini_api_key="test-key",
            interactions_api_base="https://models.test/v1beta/interactions",
            fallback_api_key="",
            max_retries=2,
            retry_base_delay_s=0.0,
            request_timeout_s=5.0,
        ),
        repair=RepairConfig(empty_retry_delay_s=0.0),
        agent=AgentConfig(transient_backoff_base_s=0.0, poll_interval_s=0.0, max_polls=3),
    )


@pytest.fixture
def mock_client(settings: Settings) -> MagicMock:
    """Stand-in for InteractionsClient with scriptable create/get."""
    client = MagicMock()
    client.settings = settings
    client.ledger = None
    client.create = AsyncMock()
    client.get = AsyncMock()
    return client
