"""
Mailbox: Per-agent inboxes for inter-agent messages.

Each agent directory holds:

    inbox.json      the current inbox, rewritten whole on every change
    messages.jsonl  an append-only log of message actions (sent, received, read, ...)

A mailbox is single-writer by convention; there is no inter-process locking.
An ``inbox.json`` that cannot be parsed is renamed aside, not overwritten.
"""

from __future__ import annotations

import json
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from brain._markdown import atomic_write_text, set_aside_unreadable

logger = structlog.get_logger(__name__)

INBOX_FILE = "inbox.json"
MESSAGE_LOG_FILE = "messages.jsonl"

_BASE36 = string.digits + string.ascii_lowercase


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFY = "notify"


class MessagePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"
    PROCESSED = "processed"
    FAILED = "failed"


class LogAction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    DELIVERED = "delivered"
    READ = "read"
    PROCESSED = "processed"
    FAILED = "failed"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentMessage(_Record):
    id: str
    sender: str = Field(alias="from")
    recipient: str = Field(alias="to")
    type: MessageType = MessageType.REQUEST
    priority: MessagePriority = MessagePriority.NORMAL
    subject: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    status: MessageStatus = MessageStatus.PENDING
    reply_to: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None


class MessageEnvelope(_Record):
    message: AgentMessage
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class Inbox(_Record):
    agent_id: str
    messages: list[MessageEnvelope] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_now)


class MessageLogEntry(_Record):
    timestamp: datetime = Field(default_factory=_now)
    action: LogAction
    message_id: str
    sender: str = Field(alias="from")
    recipient: str = Field(alias="to")
    type: MessageType
    subject: str
    error: Optional[str] = None


class InboxStats(BaseModel):
    total: int = 0
    unread: int = 0
    pending: int = 0
    by_type: dict[MessageType, int] = Field(default_factory=lambda: {t: 0 for t in MessageType})
    by_priority: dict[MessagePriority, int] = Field(
        default_factory=lambda: {p: 0 for p in MessagePriority}
    )


def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if number == 0:
            return "".join(reversed(digits))


def generate_message_id() -> str:
    """``msg_<base36 milliseconds>_<6 random chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"msg_{_base36(int(time.time() * 1000))}_{suffix}"


def create_message(
    sender: str,
    recipient: str,
    subject: str,
    payload: Optional[dict[str, Any]] = None,
    type: MessageType = MessageType.REQUEST,
    priority: MessagePriority = MessagePriority.NORMAL,
    reply_to: Optional[str] = None,
    expires_in: Optional[timedelta] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AgentMessage:
    now = _now()
    return AgentMessage(
        id=generate_message_id(),
        sender=sender,
        recipient=recipient,
        type=type,
        priority=priority,
        subject=subject,
        payload=dict(payload or {}),
        timestamp=now,
        reply_to=reply_to,
        expires_at=now + expires_in if expires_in else None,
        metadata=metadata,
    )


def create_reply(
    original: AgentMessage,
    payload: dict[str, Any],
    subject: Optional[str] = None,
    priority: Optional[MessagePriority] = None,
) -> AgentMessage:
    return create_message(
        sender=original.recipient,
        recipient=original.sender,
        subject=subject or f"Re: {original.subject}",
        payload=payload,
        type=MessageType.RESPONSE,
        priority=priority or original.priority,
        reply_to=original.id,
    )


class Mailbox:
    """One agent's inbox and message log."""

    def __init__(self, agent_path: Path, agent_id: str) -> None:
        self.agent_path = Path(agent_path)
        self.agent_id = agent_id
        self.inbox_path = self.agent_path / INBOX_FILE
        self.log_path = self.agent_path / MESSAGE_LOG_FILE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def deliver(self, message: AgentMessage) -> MessageEnvelope:
        """Place a message in this inbox, marked delivered."""
        inbox = self._load()
        envelope = MessageEnvelope(
            message=message.model_copy(update={"status": MessageStatus.DELIVERED}),
            delivered_at=_now(),
        )
        inbox.messages.append(envelope)
        self._save(inbox)
        await self.log(LogAction.RECEIVED, message)
        logger.info(
            "mailbox.delivered",
            message_id=message.id,
            sender=message.sender,
            recipient=self.agent_id,
        )
        return envelope

    async def receive(
        self,
        drain: bool = False,
        unread_only: bool = False,
        type: Optional[MessageType] = None,
        sender: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[MessageEnvelope]:
        """Messages in receipt order. With ``drain`` the returned messages leave the inbox."""
        inbox = self._load()
        selected = [
            e for e in inbox.messages
            if not (unread_only and e.read_at is not None)
            and (type is None or e.message.type == type)
            and (sender is None or e.message.sender == sender)
        ]
        if limit:
            selected = selected[:limit]
        if drain and selected:
            taken = {e.message.id for e in selected}
            inbox.messages = [e for e in inbox.messages if e.message.id not in taken]
            self._save(inbox)
        return selected

    async def mark_as_read(self, message_id: str) -> bool:
        return await self._transition(message_id, MessageStatus.READ, LogAction.READ)

    async def mark_as_processed(self, message_id: str) -> bool:
        return await self._transition(message_id, MessageStatus.PROCESSED, LogAction.PROCESSED)

    async def get_message(self, message_id: str) -> Optional[MessageEnvelope]:
        for envelope in self._load().messages:
            if envelope.message.id == message_id:
                return envelope
        return None

    async def delete_message(self, message_id: str) -> bool:
        inbox = self._load()
        remaining = [e for e in inbox.messages if e.message.id != message_id]
        if len(remaining) == len(inbox.messages):
            return False
        inbox.messages = remaining
        self._save(inbox)
        return True

    async def stats(self) -> InboxStats:
        stats = InboxStats()
        for envelope in self._load().messages:
            stats.total += 1
            if envelope.read_at is None:
                stats.unread += 1
            if envelope.message.status in (MessageStatus.PENDING, MessageStatus.DELIVERED):
                stats.pending += 1
            stats.by_type[envelope.message.type] += 1
            stats.by_priority[envelope.message.priority] += 1
        return stats

    async def log(self, action: LogAction, message: AgentMessage, error: Optional[str] = None) -> None:
        entry = MessageLogEntry(
            action=action,
            message_id=message.id,
            sender=message.sender,
            recipient=message.recipient,
            type=message.type,
            subject=message.subject,
            error=error,
        )
        self.agent_path.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json(by_alias=True, exclude_none=True) + "\n")

    async def read_log(self) -> list[MessageLogEntry]:
        if not self.log_path.is_file():
            return []
        entries: list[MessageLogEntry] = []
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(MessageLogEntry.model_validate_json(line))
            except ValidationError:
                logger.warning("mailbox.log_line_skipped", path=str(self.log_path))
        return entries

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transition(self, message_id: str, status: MessageStatus, action: LogAction) -> bool:
        inbox = self._load()
        for envelope in inbox.messages:
            if envelope.message.id != message_id:
                continue
            now = _now()
            if status == MessageStatus.READ:
                envelope.read_at = now
            else:
                envelope.processed_at = now
            envelope.message.status = status
            self._save(inbox)
            await self.log(action, envelope.message)
            return True
        return False

    def _load(self) -> Inbox:
        if not self.inbox_path.is_file():
            return Inbox(agent_id=self.agent_id)
        try:
            return Inbox.model_validate_json(self.inbox_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("mailbox.inbox_unreadable", path=str(self.inbox_path), error=str(e))
            set_aside_unreadable(self.inbox_path)
            return Inbox(agent_id=self.agent_id)

    def _save(self, inbox: Inbox) -> None:
        inbox.last_updated = _now()
        payload = inbox.model_dump(mode="json", by_alias=True, exclude_none=True)
        atomic_write_text(self.inbox_path, json.dumps(payload, ensure_ascii=False, indent=2))


_PRIORITY_MARKS = {
    MessagePriority.URGENT: "!!!",
    MessagePriority.HIGH: "!!",
    MessagePriority.NORMAL: "!",
    MessagePriority.LOW: "-",
}


def format_message(envelope: MessageEnvelope) -> str:
    msg = envelope.message
    seen = "x" if msg.status in (MessageStatus.READ, MessageStatus.PROCESSED) else " "
    return "\n".join([
        f"[{seen}] {_PRIORITY_MARKS[msg.priority]} **{msg.subject}**",
        f"  From: {msg.sender} | Type: {msg.type.value}",
        f"  {msg.timestamp.isoformat()}",
    ])


def format_inbox_summary(stats: InboxStats) -> str:
    return "\n".join([
        "# Inbox Summary",
        "",
        f"**Total:** {stats.total} messages",
        f"**Unread:** {stats.unread}",
        f"**Pending:** {stats.pending}",
        "",
        "## By Type",
        f"- Requests: {stats.by_type[MessageType.REQUEST]}",
        f"- Responses: {stats.by_type[MessageType.RESPONSE]}",
        f"- Notifications: {stats.by_type[MessageType.NOTIFY]}",
        "",
        "## By Priority",
        f"- Urgent: {stats.by_priority[MessagePriority.URGENT]}",
        f"- High: {stats.by_priority[MessagePriority.HIGH]}",
        f"- Normal: {stats.by_priority[MessagePriority.NORMAL]}",
        f"- Low: {stats.by_priority[MessagePriority.LOW]}",
    ])
