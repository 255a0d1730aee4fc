"""Tests for brain.log: one-time structlog setup and where it is invoked."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import structlog

import brain.log
from brain.config import BrainConfig
from brain.log import configure_logging
from brain.runtime import AgentRuntime


@pytest.fixture()
def configure_calls(monkeypatch) -> list[dict]:
    """Reset the one-time guard and record structlog.configure calls."""
    calls: list[dict] = []
    monkeypatch.setattr(brain.log, "_logging_configured", False)
    monkeypatch.setattr(structlog, "configure", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: None)
    return calls


def test_configure_logging_is_idempotent(configure_calls) -> None:
    configure_logging("INFO")
    configure_logging("DEBUG", json_output=True)
    assert len(configure_calls) == 1
    renderer = configure_calls[0]["processors"][-1]
    assert isinstance(renderer, structlog.dev.ConsoleRenderer)


def test_json_renderer_when_requested(configure_calls) -> None:
    configure_logging(json_output=True)
    assert isinstance(configure_calls[0]["processors"][-1], structlog.processors.JSONRenderer)


def test_runtime_configures_logging_from_config(monkeypatch, tmp_path: Path) -> None:
    seen: list[tuple[str, bool]] = []
    monkeypatch.setattr(
        "brain.runtime.configure_logging",
        lambda level, json_output=False: seen.append((level, json_output)),
    )
    monkeypatch.setenv("BRAIN_LOG_LEVEL", "info")
    AgentRuntime(BrainConfig(vault_path=tmp_path))
    assert seen == [("INFO", False)]
