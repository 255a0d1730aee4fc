"""
Agent Runtime: The explicit state object behind every agent operation.

Built once per process from a ``BrainConfig`` and passed to whatever needs
it. It owns the listener registry, the retry manager, the language-model
handler and (when an item provider is supplied) the context generator.
Nothing here is module-level state.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Optional

import structlog

from brain.agent.definition import get_agent_by_id
from brain.api.claude import LLMHandler, create_default_llm_handler
from brain.chat import ChatContext, ChatResult, MessageHandler, chat_once, format_history
from brain.config import BrainConfig
from brain.context.generator import ContextGenerator, GeneratedContext, ItemProvider
from brain.events import ListenerRegistry
from brain.harness.prompt import assemble_prompt_with_history
from brain.harness.retry import RetryManager
from brain.log import configure_logging
from brain.memory.session_store import SessionStore
from brain.messaging.mailbox import MessageEnvelope
from brain.messaging.send import (
    SendResult,
    broadcast_message,
    receive_messages,
    resolve_agent_path,
    send_to_agent,
    send_to_skill,
)

logger = structlog.get_logger(__name__)

ESCALATED_REPLY = (
    "[{name}] I could not get a response from the language model "
    "after {attempts} attempt(s). Last error: {error}"
)


class AgentRuntime:
    """Composition root for chat, context refresh and messaging."""

    def __init__(
        self,
        config: Optional[BrainConfig] = None,
        llm: Optional[LLMHandler] = None,
        item_provider: Optional[ItemProvider] = None,
    ) -> None:
        self.config = config or BrainConfig()
        configure_logging(self.config.logging.level, json_output=self.config.logging.json_output)
        self.events = ListenerRegistry()
        self.retry = RetryManager(self.config.retry.to_retry_config(), events=self.events)
        self.llm: LLMHandler = llm or create_default_llm_handler(self.config.claude)
        self.context_generator: Optional[ContextGenerator] = (
            ContextGenerator(item_provider, item_limit=self.config.context.item_limit)
            if item_provider is not None
            else None
        )
        logger.info("runtime.initialized", config=repr(self.config))

    @property
    def vault_path(self) -> Path:
        return self.config.vault_path

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def make_llm_handler(self) -> MessageHandler:
        """A chat handler that prompts the language model through the retry manager."""
        limits = self.config.prompt.to_token_limits()
        max_history = self.config.context.history_messages

        async def handler(text: str, context: ChatContext) -> str:
            if self.context_generator is not None:
                await self.context_generator.ensure_fresh_context(
                    context.agent_path,
                    context.agent.id,
                    context.agent.scope,
                    self.config.context.max_age_hours,
                )
            # the current message is already the last history entry
            history = format_history(context.history[:-1], max_history)
            prompt = await assemble_prompt_with_history(context.agent_path, history, limits)
            messages = [{"role": "user", "content": text}]

            outcome = await self.retry.execute_with_retry(
                f"chat-{context.session.id}-{uuid.uuid4().hex[:8]}",
                "llm.chat",
                lambda: self.llm.chat(prompt.system_prompt, messages),
                metadata={"agent_id": context.agent.id, "session_id": context.session.id},
            )
            if outcome.success and outcome.result is not None:
                return outcome.result.content

            last = outcome.state.errors[-1].message if outcome.state.errors else "unknown error"
            return ESCALATED_REPLY.format(
                name=context.agent.name, attempts=outcome.state.attempt, error=last,
            )

        return handler

    async def chat(
        self,
        message: str,
        agent_id: Optional[str] = None,
        new_session: bool = False,
        handler: Optional[MessageHandler] = None,
    ) -> Optional[ChatResult]:
        return await chat_once(
            self.vault_path,
            message,
            handler or self.make_llm_handler(),
            agent_id=agent_id,
            new_session=new_session,
            load_history=True,
        )

    # ------------------------------------------------------------------
    # Context and housekeeping
    # ------------------------------------------------------------------

    async def refresh_context(self, agent_id: str, force: bool = False) -> Optional[GeneratedContext]:
        """Regenerate an agent's digest when stale (always with ``force``)."""
        if self.context_generator is None:
            return None
        agent = await get_agent_by_id(self.vault_path, agent_id)
        if agent is None:
            return None
        if force:
            return await self.context_generator.regenerate_context(agent.directory, agent.id, agent.scope)
        return await self.context_generator.ensure_fresh_context(
            agent.directory, agent.id, agent.scope, self.config.context.max_age_hours,
        )

    async def cleanup_sessions(self, agent_id: str) -> int:
        agent_path = await resolve_agent_path(self.vault_path, agent_id)
        if agent_path is None:
            return 0
        return await SessionStore(agent_path).cleanup_old_sessions(
            self.config.session.cleanup_max_age_days,
        )

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(
        self, sender_id: str, recipient_id: str, subject: str,
        payload: Optional[dict[str, Any]] = None, **options: Any,
    ) -> SendResult:
        return await send_to_agent(self.vault_path, sender_id, recipient_id, subject, payload, **options)

    async def send_to_skill(self, sender_id: str, skill: str, task: str, context: str = "") -> SendResult:
        return await send_to_skill(self.vault_path, sender_id, skill, task, context)

    async def broadcast(
        self, sender_id: str, recipient_ids: list[str], subject: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, SendResult]:
        return await broadcast_message(self.vault_path, sender_id, recipient_ids, subject, payload)

    async def receive(self, agent_id: str, drain: bool = False) -> list[MessageEnvelope]:
        agent_path = await resolve_agent_path(self.vault_path, agent_id)
        if agent_path is None:
            return []
        return await receive_messages(agent_path, agent_id, drain=drain)
