"""
Send: Resolve agents by id and deliver messages between them.

Every operation reports failure through ``SendResult`` rather than raising,
so a broadcast can report partial success recipient by recipient.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog

from brain.agent.definition import (
    SkillNamespace,
    agent_directory,
    find_agent_directories,
    load_agent_definition,
)
from brain.context.generator import load_context
from brain.memory.agent_memory import AgentMemoryStore
from brain.messaging.mailbox import (
    LogAction,
    Mailbox,
    MessageEnvelope,
    MessagePriority,
    MessageType,
    create_message,
)

logger = structlog.get_logger(__name__)

RESPONSE_TIMEOUT = "Response timeout"
DEFAULT_RESPONSE_TIMEOUT_SECONDS = 5.0
POLL_INTERVAL_SECONDS = 0.1


@dataclass
class SendResult:
    success: bool
    message_id: str = ""
    duration_ms: int = 0
    error: Optional[str] = None
    response: Optional[MessageEnvelope] = None


@dataclass
class AgentContext:
    """What a message can carry about its sender."""
    agent_id: str
    agent_path: Path
    memory: Optional[str] = None
    context: Optional[str] = None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def resolve_agent_path(vault_path: Path, agent_id: str) -> Optional[Path]:
    """The directory of the agent with this id, or None."""
    for directory in await find_agent_directories(Path(vault_path)):
        agent = await load_agent_definition(directory)
        if agent is not None and agent.id == agent_id:
            return directory
    return None


async def load_agent_context(agent_path: Path, agent_id: str) -> AgentContext:
    memory = await AgentMemoryStore(agent_path).load()
    return AgentContext(
        agent_id=agent_id,
        agent_path=Path(agent_path),
        memory=memory.raw if memory is not None else None,
        context=await load_context(agent_path),
    )


async def _deliver(
    sender_id: str,
    sender_path: Path,
    recipient_id: str,
    recipient_path: Path,
    subject: str,
    payload: dict[str, Any],
    priority: MessagePriority,
    metadata: Optional[dict[str, Any]],
    include_context: bool,
) -> tuple[Optional[str], Optional[str]]:
    """Build and deliver one message. Returns ``(message_id, error)``."""
    body = dict(payload)
    if include_context:
        sender_context = await load_agent_context(sender_path, sender_id)
        body["_senderContext"] = {"memory": sender_context.memory, "context": sender_context.context}

    message = create_message(
        sender_id, recipient_id, subject, body,
        type=MessageType.REQUEST, priority=priority, metadata=metadata,
    )
    sender_box = Mailbox(sender_path, sender_id)
    try:
        await Mailbox(recipient_path, recipient_id).deliver(message)
    except (OSError, ValueError, TypeError) as e:
        # ValueError and TypeError come from payloads that cannot be stored as JSON
        logger.error("messaging.delivery_failed", message_id=message.id, error=str(e))
        await sender_box.log(LogAction.FAILED, message, error=str(e))
        return message.id, str(e)
    await sender_box.log(LogAction.SENT, message)
    return message.id, None


async def _await_reply(
    sender_path: Path, sender_id: str, message_id: str, timeout: float,
) -> Optional[MessageEnvelope]:
    mailbox = Mailbox(sender_path, sender_id)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
        for envelope in await mailbox.receive(type=MessageType.RESPONSE, unread_only=True):
            if envelope.message.reply_to == message_id:
                await mailbox.mark_as_processed(envelope.message.id)
                return envelope
    return None


async def send_to_agent(
    vault_path: Path,
    sender_id: str,
    recipient_id: str,
    subject: str,
    payload: Optional[dict[str, Any]] = None,
    priority: MessagePriority = MessagePriority.NORMAL,
    metadata: Optional[dict[str, Any]] = None,
    include_context: bool = False,
    wait_for_response: bool = False,
    timeout: float = DEFAULT_RESPONSE_TIMEOUT_SECONDS,
) -> SendResult:
    start = time.monotonic()

    sender_path = await resolve_agent_path(vault_path, sender_id)
    if sender_path is None:
        return SendResult(False, error=f"Sender agent not found: {sender_id}", duration_ms=_elapsed_ms(start))

    return await _send_resolved(
        vault_path, start, sender_id, sender_path, recipient_id, subject, payload or {},
        priority, metadata, include_context, wait_for_response, timeout,
    )


async def _send_resolved(
    vault_path: Path,
    start: float,
    sender_id: str,
    sender_path: Path,
    recipient_id: str,
    subject: str,
    payload: dict[str, Any],
    priority: MessagePriority,
    metadata: Optional[dict[str, Any]],
    include_context: bool,
    wait_for_response: bool,
    timeout: float,
) -> SendResult:
    recipient_path = await resolve_agent_path(vault_path, recipient_id)
    if recipient_path is None:
        return SendResult(
            False, error=f"Recipient agent not found: {recipient_id}", duration_ms=_elapsed_ms(start),
        )

    message_id, error = await _deliver(
        sender_id, sender_path, recipient_id, recipient_path,
        subject, payload, priority, metadata, include_context,
    )
    if error is not None:
        return SendResult(False, message_id=message_id or "", error=error, duration_ms=_elapsed_ms(start))

    if not wait_for_response:
        return SendResult(True, message_id=message_id or "", duration_ms=_elapsed_ms(start))

    reply = await _await_reply(sender_path, sender_id, message_id or "", timeout)
    return SendResult(
        True,
        message_id=message_id or "",
        duration_ms=_elapsed_ms(start),
        error=None if reply is not None else RESPONSE_TIMEOUT,
        response=reply,
    )


async def send_to_skill(
    vault_path: Path,
    sender_id: str,
    skill: str,
    task: str,
    context: str = "",
    **options: Any,
) -> SendResult:
    """Send a task to the skill agent living under ``skills/<skill>``."""
    skill_dir = agent_directory(Path(vault_path), SkillNamespace(skill=skill.lower()))
    agent = await load_agent_definition(skill_dir)
    skill_id = agent.id if agent is not None else f"agent_skill_{skill.lower()}"
    return await send_to_agent(
        vault_path, sender_id, skill_id,
        f"Skill Request: {skill}",
        {"task": task, "context": context},
        **options,
    )


async def broadcast_message(
    vault_path: Path,
    sender_id: str,
    recipient_ids: list[str],
    subject: str,
    payload: Optional[dict[str, Any]] = None,
    priority: MessagePriority = MessagePriority.NORMAL,
    metadata: Optional[dict[str, Any]] = None,
    include_context: bool = False,
) -> dict[str, SendResult]:
    """Send the same message to every recipient. The sender is resolved once."""
    start = time.monotonic()
    results: dict[str, SendResult] = {}
    sender_path = await resolve_agent_path(vault_path, sender_id)

    for recipient_id in recipient_ids:
        if sender_path is None:
            results[recipient_id] = SendResult(
                False, error=f"Sender agent not found: {sender_id}", duration_ms=_elapsed_ms(start),
            )
            continue
        results[recipient_id] = await _send_resolved(
            vault_path, time.monotonic(), sender_id, sender_path, recipient_id, subject,
            payload or {}, priority, metadata, include_context, False, 0.0,
        )

    logger.info(
        "messaging.broadcast",
        sender=sender_id,
        recipients=len(recipient_ids),
        delivered=sum(1 for r in results.values() if r.success),
    )
    return results


async def receive_messages(
    agent_path: Path,
    agent_id: str,
    drain: bool = False,
    unread_only: bool = False,
    type: Optional[MessageType] = None,
    sender: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[MessageEnvelope]:
    return await Mailbox(agent_path, agent_id).receive(
        drain=drain, unread_only=unread_only, type=type, sender=sender, limit=limit,
    )


def format_send_result(result: SendResult) -> str:
    if not result.success:
        return f"[failed] Send failed: {result.error}\n  Duration: {result.duration_ms}ms"
    lines = [f"[ok] Message sent ({result.message_id})", f"  Duration: {result.duration_ms}ms"]
    if result.response is not None:
        reply = result.response.message
        lines += ["", "## Response", f"  From: {reply.sender}", f"  Subject: {reply.subject}"]
        if reply.payload.get("result"):
            lines += ["", "### Result", str(reply.payload["result"])]
    elif result.error == RESPONSE_TIMEOUT:
        lines.append("  No response received (timeout)")
    return "\n".join(lines)


def format_broadcast_results(results: dict[str, SendResult]) -> str:
    lines = ["# Broadcast Results", ""]
    sent = failed = 0
    for agent_id, result in results.items():
        if result.success:
            sent += 1
            lines.append(f"- [ok] {agent_id}: sent ({result.message_id})")
        else:
            failed += 1
            lines.append(f"- [failed] {agent_id}: {result.error}")
    lines += ["", f"**Sent:** {sent} | **Failed:** {failed}"]
    return "\n".join(lines)
