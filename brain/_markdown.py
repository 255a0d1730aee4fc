"""Shared helpers for the Markdown documents stored in the vault."""

from __future__ import annotations

import datetime as _dt
import tempfile
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

_FENCE = "---"


def _normalize_value(value: Any) -> Any:
    """YAML turns bare dates into date objects; keep them as ISO strings."""
    if isinstance(value, _dt.datetime):
        return value.isoformat()
    if isinstance(value, _dt.date):
        return value.isoformat()
    if isinstance(value, list):
        return [_normalize_value(v) for v in value]
    return value


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a leading ``---`` metadata block from a Markdown body.

    Returns ``({}, content)`` when there is no block or it is not a YAML
    mapping, so malformed documents still yield their body.
    """
    normalized = content.replace("\r\n", "\n")
    if not normalized.startswith(_FENCE + "\n"):
        return {}, content

    end = normalized.find("\n" + _FENCE, len(_FENCE))
    if end == -1:
        return {}, content

    raw_meta = normalized[len(_FENCE) + 1:end]
    body = normalized[end + len(_FENCE) + 1:]
    if body.startswith("\n"):
        body = body[1:]

    try:
        meta = yaml.safe_load(raw_meta) or {}
    except yaml.YAMLError as e:
        logger.warning("markdown.frontmatter_unparseable", error=str(e))
        return {}, content
    if not isinstance(meta, dict):
        return {}, content

    return {str(k): _normalize_value(v) for k, v in meta.items()}, body


def render_frontmatter(meta: dict[str, Any]) -> str:
    """Render a metadata block, keys in insertion order."""
    lines = [_FENCE]
    for key, value in meta.items():
        if value is None:
            continue
        rendered = yaml.safe_dump(
            {key: value}, default_flow_style=True, allow_unicode=True, sort_keys=False, width=1000,
        ).strip()
        # safe_dump wraps scalar mappings in braces in flow style: "{key: value}"
        if rendered.startswith("{") and rendered.endswith("}"):
            rendered = rendered[1:-1]
        lines.append(rendered)
    lines.append(_FENCE)
    return "\n".join(lines)


def strip_frontmatter(content: str) -> str:
    """Return the body of a document without its metadata block."""
    _, body = parse_frontmatter(content)
    return body


def atomic_write_text(path: Path, content: str) -> None:
    """Write a file via temp file + rename so readers never see a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(content)
        Path(tmp_path).replace(path)
    except Exception:
        try:
            Path(tmp_path).unlink(missing_ok=True)
        except OSError:
            pass
        raise


def set_aside_unreadable(path: Path) -> Path:
    """Rename an unreadable store file to ``<name>.corrupt-<timestamp>`` and return the new path.

    The next write then starts a fresh file instead of replacing content
    that could still be recovered by hand.
    """
    stamp = _dt.datetime.now(_dt.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    path.replace(target)
    logger.warning("store.file_set_aside", path=str(path), moved_to=str(target))
    return target
