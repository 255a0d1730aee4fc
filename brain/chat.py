"""
Chat: Send a message to an agent and get a reply.

A chat runs inside a session: the user's message and the reply are both
appended to the session transcript and mirrored into the in-memory history
carried by ``ChatContext``. Producing the reply is delegated to a pluggable
``MessageHandler``; ``default_handler`` is a deterministic echo used when no
language model is wired in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from brain.agent.definition import (
    AdminNamespace,
    AgentDefinition,
    agent_directory,
    discover_agents,
    get_agent_by_id,
    load_agent_definition,
)
from brain.memory.session_store import (
    MessageRole,
    SessionMetadata,
    SessionStatus,
    SessionStore,
    TranscriptMessage,
)

logger = structlog.get_logger(__name__)


@dataclass
class ChatContext:
    agent: AgentDefinition
    session: SessionMetadata
    agent_path: Path
    store: SessionStore
    history: list[TranscriptMessage] = field(default_factory=list)


@dataclass
class ChatResult:
    response: str
    session_id: str


@dataclass
class ChatAgentInfo:
    id: str
    name: str
    type: str


MessageHandler = Callable[[str, ChatContext], Awaitable[str]]


def build_system_prompt(agent: AgentDefinition) -> str:
    """Render an agent's identity as a system prompt. Missing sections are omitted."""
    lines = [f"You are {agent.name}.", ""]
    for heading, content in (
        ("Identity", agent.sections.identity),
        ("Capabilities", agent.sections.capabilities),
        ("Guidelines", agent.sections.guidelines),
        ("Available Tools", agent.sections.tools),
    ):
        if content:
            lines.append(f"## {heading}")
            lines.append(content)
            lines.append("")
    return "\n".join(lines)


def format_history(messages: list[TranscriptMessage], max_messages: Optional[int] = None) -> str:
    """``ROLE: content`` pairs separated by blank lines, keeping the newest ``max_messages``."""
    if max_messages is not None:
        messages = messages[-max_messages:] if max_messages > 0 else []
    return "\n\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)


async def default_handler(message: str, context: ChatContext) -> str:
    return f"[{context.agent.name}] Echo: {message}"


async def init_chat_context(
    vault_path: Path,
    agent_id: Optional[str] = None,
    agent_path: Optional[Path] = None,
    new_session: bool = False,
    load_history: bool = False,
) -> Optional[ChatContext]:
    """Resolve an agent and open its session. None when the agent cannot be resolved.

    Without ``agent_id`` or ``agent_path`` the administrative agent is used.
    """
    agent: Optional[AgentDefinition]
    if agent_path is not None:
        agent = await load_agent_definition(Path(agent_path))
    elif agent_id is not None:
        agent = await get_agent_by_id(Path(vault_path), agent_id)
    else:
        agent = await load_agent_definition(agent_directory(Path(vault_path), AdminNamespace()))

    if agent is None:
        logger.info("chat.agent_not_found", agent_id=agent_id, agent_path=str(agent_path or ""))
        return None

    store = SessionStore(agent.directory)
    if new_session:
        session = await store.create_session(agent.id)
    else:
        session = await store.get_or_create_session(agent.id)

    history = await store.read_transcript(session.id) if load_history else []
    return ChatContext(
        agent=agent,
        session=session,
        agent_path=agent.directory,
        store=store,
        history=history,
    )


async def send_message(context: ChatContext, text: str, handler: MessageHandler = default_handler) -> str:
    """Record the user's message, ask the handler for a reply, and record the reply."""
    user_message = await context.store.append_message(context.session.id, MessageRole.USER, text)
    if user_message is not None:
        context.history.append(user_message)

    response = await handler(text, context)

    reply = await context.store.append_message(context.session.id, MessageRole.ASSISTANT, response)
    if reply is not None:
        context.history.append(reply)

    refreshed = await context.store.get_session(context.session.id)
    if refreshed is not None:
        context.session = refreshed
    logger.debug("chat.exchange", agent_id=context.agent.id, session_id=context.session.id)
    return response


async def chat_once(
    vault_path: Path,
    message: str,
    handler: MessageHandler = default_handler,
    agent_id: Optional[str] = None,
    agent_path: Optional[Path] = None,
    new_session: bool = False,
    load_history: bool = False,
) -> Optional[ChatResult]:
    context = await init_chat_context(
        vault_path,
        agent_id=agent_id,
        agent_path=agent_path,
        new_session=new_session,
        load_history=load_history,
    )
    if context is None:
        return None
    response = await send_message(context, message, handler)
    return ChatResult(response=response, session_id=context.session.id)


async def list_chat_agents(vault_path: Path) -> list[ChatAgentInfo]:
    return [
        ChatAgentInfo(id=a.id, name=a.name, type=a.type.value)
        for a in await discover_agents(Path(vault_path))
    ]


async def end_chat(context: ChatContext, status: SessionStatus = SessionStatus.COMPLETED) -> None:
    ended = await context.store.end_session(context.session.id, status)
    if ended is not None:
        context.session = ended


async def start_new_session(context: ChatContext) -> SessionMetadata:
    """Close the current session, move the context onto a fresh one and clear its history."""
    if context.session.status == SessionStatus.ACTIVE:
        await context.store.end_session(context.session.id)
    context.session = await context.store.create_session(context.agent.id)
    context.history = []
    return context.session
