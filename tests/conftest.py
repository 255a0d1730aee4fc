"""
Shared fixtures for the Brain test suite.

Provides a temporary vault and small builders so individual test modules can
focus on behavior rather than setup.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from brain.context.generator import ContextItem


# ---------------------------------------------------------------------------
# Vault fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def vault(tmp_path: Path) -> Path:
    """An empty vault directory."""
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture()
def agent_dir(tmp_path: Path) -> Path:
    """A bare agent directory with no documents in it."""
    path = tmp_path / "agent"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment variables out of config under test."""
    for name in (
        "ANTHROPIC_API_KEY",
        "BRAIN_VAULT_PATH",
        "BRAIN_MODEL",
        "BRAIN_RETRY_MAX_RETRIES",
        "BRAIN_RETRY_NON_RETRYABLE_ERRORS",
        "BRAIN_PROMPT_TOTAL_TOKENS",
        "BRAIN_LOG_LEVEL",
        "BRAIN_LOG_JSON",
    ):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

AGENT_MD = """---
name: Research Agent
id: agent_skill_research
type: skill
scope: "**/*"
created: 2024-01-15
updated: 2024-02-01
tags: [research, writing]
---

# Research Agent

## Identity

A careful researcher.

## Capabilities

- Find sources
- Summarize findings

## Behavioral Guidelines

Cite everything.

## Tools

brain search

## Communication Protocol

Reply in Markdown.

## Favourite Snacks

Crisps.
"""


@pytest.fixture()
def agent_md() -> str:
    return AGENT_MD


@pytest.fixture()
def write_agent():
    """Write an AGENT.md into a directory and return its path."""

    def _write(directory: Path, content: str = AGENT_MD) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "AGENT.md"
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def make_item():
    """Build a ContextItem aged a number of days before a reference time."""

    def _make(
        item_id: int,
        days_old: float,
        now: datetime,
        source_path: str = "30_Projects/alpha/notes.md",
        entity: str | None = None,
        item_type: str = "fact",
    ) -> ContextItem:
        return ContextItem(
            id=item_id,
            content=f"item {item_id}",
            item_type=item_type,
            created_at=now - timedelta(days=days_old),
            source_path=source_path,
            entity_name=entity,
        )

    return _make
