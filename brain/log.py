"""Logging setup for Brain entry points."""

from __future__ import annotations

import logging

import structlog

# Free-text fields that may carry user or agent content.
_FREE_TEXT_KEYS = ("content", "payload", "text", "message_text")
_MAX_DISPLAY_LEN = 80

_logging_configured = False


def _truncate_free_text(logger, method_name, event_dict):
    """
    Structlog processor that shortens free-text fields in log output.

    Conversation content and message payloads belong in transcripts and
    mailboxes, not in log files.
    """
    for key in _FREE_TEXT_KEYS:
        if key in event_dict:
            val = event_dict[key]
            if not isinstance(val, str):
                val = str(val)
            if len(val) > _MAX_DISPLAY_LEN:
                val = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
            event_dict[key] = val
    return event_dict


def configure_logging(level: str = "WARNING", json_output: bool = False) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once: subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _truncate_free_text,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
