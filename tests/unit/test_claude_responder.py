"""Tests for the generative responder wrapper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from appointment_bot.infra.claude import (
    APOLOGY_MESSAGE,
    ClaudeClientError,
    ClaudeResponder,
    ClaudeResponse,
)


def response(text: str) -> ClaudeResponse:
    return ClaudeResponse(
        content=text,
        model="test-model",
        input_tokens=10,
        output_tokens=5,
        stop_reason="end_turn",
        latency_ms=1.0,
    )


class TestClaudeResponder:
    """Test that respond() always returns text."""

    @pytest.fixture
    def client(self):
        mock = MagicMock()
        mock.generate = AsyncMock(return_value=response("  Hello!  "))
        return mock

    @pytest.mark.asyncio
    async def test_returns_stripped_text(self, client):
        responder = ClaudeResponder("system", client=client, timeout_seconds=1)

        assert await responder.respond("Patient: hi", "5511987654321") == "Hello!"
        client.generate.assert_awaited_once_with(prompt="Patient: hi", system_prompt="system")

    @pytest.mark.asyncio
    async def test_client_error_returns_apology(self, client):
        client.generate.side_effect = ClaudeClientError("overloaded")
        responder = ClaudeResponder("system", client=client, timeout_seconds=1)

        assert await responder.respond("Patient: hi", "5511987654321") == APOLOGY_MESSAGE

    @pytest.mark.asyncio
    async def test_timeout_returns_apology(self, client):
        async def slow(**kwargs):
            await asyncio.sleep(1)
            return response("late")

        client.generate.side_effect = slow
        responder = ClaudeResponder("system", client=client, timeout_seconds=0.01)

        assert await responder.respond("Patient: hi", "5511987654321") == APOLOGY_MESSAGE

    @pytest.mark.asyncio
    async def test_empty_output_returns_apology(self, client):
        client.generate.return_value = response("   ")
        responder = ClaudeResponder("system", client=client, timeout_seconds=1)

        assert await responder.respond("Patient: hi", "5511987654321") == APOLOGY_MESSAGE
