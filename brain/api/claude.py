"""
Claude Handler: The language-model boundary of the agent runtime.

Chat only needs ``chat(system_prompt, messages, tools) -> LLMResponse``.
``ClaudeHandler`` implements it on the Anthropic async client;
``UnconfiguredLLMHandler`` answers with an explanation when no API key is set,
so a caller always gets some reply. Retries are not done here: the runtime
wraps calls in the retry manager.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import anthropic
import structlog

from brain.config import ClaudeConfig

logger = structlog.get_logger(__name__)

UNCONFIGURED_REPLY = (
    "LLM not configured. Set ANTHROPIC_API_KEY to enable Claude. "
    'Received: "{message}"'
)


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    content: str
    usage: LLMUsage = field(default_factory=LLMUsage)
    model: Optional[str] = None
    stop_reason: Optional[str] = None


class LLMHandler(Protocol):
    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse: ...


class ClaudeHandler:
    """Sends chats to the Anthropic Messages API."""

    def __init__(self, config: ClaudeConfig, client: Optional[anthropic.AsyncAnthropic] = None):
        if client is None and not config.api_key:
            raise ValueError("ClaudeHandler requires ANTHROPIC_API_KEY")
        self._client = client or anthropic.AsyncAnthropic(api_key=config.api_key)
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._request_timeout_seconds = float(config.request_timeout_seconds)

        # Telemetry
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_calls = 0
        self._last_call_time: Optional[float] = None

        logger.info("claude_handler.initialized", model=self._model)

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse:
        start_time = time.monotonic()
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system_prompt,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools

        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )
        except anthropic.RateLimitError as e:
            logger.warning("claude_handler.rate_limited", error=str(e))
            raise
        except anthropic.APIError as e:
            logger.error(
                "claude_handler.api_error",
                error=str(e),
                status=getattr(e, "status_code", None),
            )
            raise

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = LLMUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

        self._total_input_tokens += usage.input_tokens
        self._total_output_tokens += usage.output_tokens
        self._total_calls += 1
        self._last_call_time = time.monotonic() - start_time
        logger.debug(
            "claude_handler.response",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            elapsed_seconds=round(self._last_call_time, 2),
        )
        return LLMResponse(
            content=text,
            usage=usage,
            model=getattr(response, "model", self._model),
            stop_reason=getattr(response, "stop_reason", None),
        )

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "last_call_seconds": self._last_call_time,
        }


class UnconfiguredLLMHandler:
    """Explains that no model is configured instead of failing."""

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse:
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        return LLMResponse(content=UNCONFIGURED_REPLY.format(message=last_user))


def create_default_llm_handler(config: ClaudeConfig) -> LLMHandler:
    if config.is_configured:
        return ClaudeHandler(config)
    logger.warning("claude_handler.not_configured")
    return UnconfiguredLLMHandler()
