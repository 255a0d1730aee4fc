"""
Session Store: Conversational sessions and their append-only transcripts.

Layout inside an agent directory:

    sessions/sessions.json     index of session metadata (rewritten whole)
    sessions/<session_id>.jsonl  one transcript message per line (append-only)

The index is read-modify-written on every update. There is no inter-process
locking: a vault is assumed to have one active runtime process, and two
writers sharing an index can drop each other's changes.

An index that cannot be parsed is renamed aside before a new one is written.
Transcripts are never rewritten or truncated. Cleanup only forgets old
sessions in the index; their transcript files are kept for audit.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from brain._markdown import atomic_write_text, set_aside_unreadable

logger = structlog.get_logger(__name__)

SESSIONS_DIR = "sessions"
INDEX_FILE = "sessions.json"
INDEX_VERSION = 1

# Fields update_session() must never overwrite.
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class _Record(BaseModel):
    """On-disk records use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionMetadata(_Record):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    message_count: int = 0
    title: Optional[str] = None
    tags: Optional[list[str]] = None


class TranscriptMessage(_Record):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=_now)
    metadata: Optional[dict[str, Any]] = None


class SessionsIndex(_Record):
    version: int = INDEX_VERSION
    updated_at: datetime = Field(default_factory=_now)
    sessions: list[SessionMetadata] = Field(default_factory=list)


class SessionStore:
    """
    Persistent store for one agent's sessions.

    Absence is reported with None or an empty list; only a misuse such as
    ending a session into the ``active`` status raises.
    """

    def __init__(self, agent_path: Path) -> None:
        self.agent_path = Path(agent_path)
        self.sessions_dir = self.agent_path / SESSIONS_DIR
        self.index_path = self.sessions_dir / INDEX_FILE

    def transcript_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.jsonl"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_session(
        self,
        agent_id: str,
        title: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> SessionMetadata:
        index = self._load_index()
        session = SessionMetadata(agent_id=agent_id, title=title, tags=tags)
        index.sessions.append(session)
        self._save_index(index)
        # Empty transcript so the session is visible on disk before its first message.
        self.transcript_path(session.id).touch()
        logger.info("session_store.created", session_id=session.id, agent_id=agent_id)
        return session

    async def get_session(self, session_id: str) -> Optional[SessionMetadata]:
        return self._find(self._load_index(), session_id)

    async def get_active_session(self, agent_id: str) -> Optional[SessionMetadata]:
        for session in self._load_index().sessions:
            if session.agent_id == agent_id and session.status == SessionStatus.ACTIVE:
                return session
        return None

    async def update_session(self, session_id: str, **updates: Any) -> Optional[SessionMetadata]:
        """Merge ``updates`` into a session. ``id`` and ``created_at`` are ignored."""
        index = self._load_index()
        for i, session in enumerate(index.sessions):
            if session.id != session_id:
                continue
            changes = {k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS}
            changes["updated_at"] = _now()
            merged = SessionMetadata.model_validate({**session.model_dump(), **changes})
            index.sessions[i] = merged
            self._save_index(index)
            return merged
        return None

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED,
    ) -> Optional[SessionMetadata]:
        status = SessionStatus(status)
        if status == SessionStatus.ACTIVE:
            raise ValueError("A session can only be ended as completed or abandoned")
        ended = await self.update_session(session_id, status=status)
        if ended is not None:
            logger.info("session_store.ended", session_id=session_id, status=status.value)
        return ended

    async def append_message(
        self,
        session_id: str,
        role: MessageRole | str,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[TranscriptMessage]:
        """Append one message to a transcript and bump the session's count.

        Returns None when the session is unknown.
        """
        session = await self.get_session(session_id)
        if session is None:
            logger.warning("session_store.append_unknown_session", session_id=session_id)
            return None

        message = TranscriptMessage(role=MessageRole(role), content=content, metadata=metadata)
        line = message.model_dump_json(by_alias=True, exclude_none=True) + "\n"
        with self.transcript_path(session_id).open("a", encoding="utf-8") as f:
            f.write(line)

        await self.update_session(session_id, message_count=session.message_count + 1)
        logger.debug(
            "session_store.appended",
            session_id=session_id,
            role=message.role.value,
            message_count=session.message_count + 1,
        )
        return message

    async def read_transcript(self, session_id: str) -> list[TranscriptMessage]:
        path = self.transcript_path(session_id)
        if not path.is_file():
            return []
        messages: list[TranscriptMessage] = []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("session_store.transcript_read_failed", path=str(path), error=str(e))
            return []
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(TranscriptMessage.model_validate_json(line))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning(
                "session_store.corrupted_lines_skipped",
                session_id=session_id,
                skipped=skipped,
            )
        return messages

    async def get_recent_messages(self, session_id: str, limit: int = 10) -> list[TranscriptMessage]:
        messages = await self.read_transcript(session_id)
        if limit <= 0:
            return []
        return messages[-limit:]

    async def list_sessions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus | str] = None,
    ) -> list[SessionMetadata]:
        """Sessions filtered by agent and status, most recently updated first."""
        sessions = self._load_index().sessions
        if agent_id:
            sessions = [s for s in sessions if s.agent_id == agent_id]
        if status:
            wanted = SessionStatus(status)
            sessions = [s for s in sessions if s.status == wanted]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def get_or_create_session(self, agent_id: str, title: Optional[str] = None) -> SessionMetadata:
        active = await self.get_active_session(agent_id)
        if active is not None:
            return active
        return await self.create_session(agent_id, title=title)

    async def cleanup_old_sessions(self, max_age_days: int = 30) -> int:
        """Forget non-active sessions not updated within ``max_age_days``.

        Transcript files are left on disk. Returns the number removed.
        """
        index = self._load_index()
        cutoff = _now() - timedelta(days=max_age_days)
        keep = [
            s for s in index.sessions
            if s.status == SessionStatus.ACTIVE or s.updated_at >= cutoff
        ]
        removed = len(index.sessions) - len(keep)
        index.sessions = keep
        self._save_index(index)
        if removed:
            logger.info("session_store.cleaned_up", removed=removed, max_age_days=max_age_days)
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find(index: SessionsIndex, session_id: str) -> Optional[SessionMetadata]:
        for session in index.sessions:
            if session.id == session_id:
                return session
        return None

    def _load_index(self) -> SessionsIndex:
        if not self.index_path.is_file():
            return SessionsIndex()
        try:
            return SessionsIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("session_store.index_unreadable", path=str(self.index_path), error=str(e))
            set_aside_unreadable(self.index_path)
            return SessionsIndex()

    def _save_index(self, index: SessionsIndex) -> None:
        index.updated_at = _now()
        payload = index.model_dump(mode="json", by_alias=True, exclude_none=True)
        atomic_write_text(self.index_path, json.dumps(payload, ensure_ascii=False, indent=2))
