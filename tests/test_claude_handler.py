from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from brain.api.claude import (
    ClaudeHandler,
    UnconfiguredLLMHandler,
    create_default_llm_handler,
)
from brain.config import ClaudeConfig


def _client(response=None, error=None) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=response, side_effect=error)
    return client


def _response(*blocks, input_tokens=3, output_tokens=5):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        model="claude-test",
        stop_reason="end_turn",
    )


class TestClaudeHandler:

    def test_requires_key_or_client(self) -> None:
        with pytest.raises(ValueError):
            ClaudeHandler(ClaudeConfig())

    @pytest.mark.asyncio
    async def test_chat_joins_text_blocks(self) -> None:
        client = _client(_response(
            SimpleNamespace(type="text", text="Hello "),
            SimpleNamespace(type="tool_use", id="t1"),
            SimpleNamespace(type="text", text="there"),
        ))
        handler = ClaudeHandler(ClaudeConfig(BRAIN_MODEL="claude-test"), client=client)

        result = await handler.chat("system", [{"role": "user", "content": "hi"}])

        assert result.content == "Hello there"
        assert result.usage.total_tokens == 8
        assert result.stop_reason == "end_turn"
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"] == "system"
        assert "tools" not in kwargs
        assert handler.telemetry["total_calls"] == 1
        assert handler.telemetry["total_output_tokens"] == 5

    @pytest.mark.asyncio
    async def test_tools_are_forwarded(self) -> None:
        client = _client(_response(SimpleNamespace(type="text", text="ok")))
        handler = ClaudeHandler(ClaudeConfig(), client=client)
        tools = [{"name": "search", "input_schema": {"type": "object"}}]
        await handler.chat("s", [{"role": "user", "content": "x"}], tools=tools)
        assert client.messages.create.await_args.kwargs["tools"] == tools

    @pytest.mark.asyncio
    async def test_api_errors_propagate(self) -> None:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        response = httpx.Response(429, request=request, headers={})
        error = anthropic.RateLimitError(message="rate limit", response=response, body={})
        handler = ClaudeHandler(ClaudeConfig(), client=_client(error=error))
        with pytest.raises(anthropic.RateLimitError):
            await handler.chat("s", [{"role": "user", "content": "x"}])
        assert handler.telemetry["total_calls"] == 0


class TestUnconfigured:

    @pytest.mark.asyncio
    async def test_explains_missing_key(self) -> None:
        reply = await UnconfiguredLLMHandler().chat(
            "s", [{"role": "user", "content": "first"}, {"role": "user", "content": "latest"}],
        )
        assert reply.content == (
            'LLM not configured. Set ANTHROPIC_API_KEY to enable Claude. Received: "latest"'
        )

    def test_factory(self, monkeypatch) -> None:
        assert isinstance(create_default_llm_handler(ClaudeConfig()), UnconfiguredLLMHandler)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert isinstance(create_default_llm_handler(ClaudeConfig()), ClaudeHandler)
