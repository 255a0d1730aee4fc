"""
Context Generator: Recency-bucketed digests of knowledge-base items.

For each agent, items relevant to its scope are fetched from an item
provider, split into hot/warm/cold buckets by age, and rendered into the
agent's ``CONTEXT.md``. The document is regenerated whole on demand; its
``generated`` timestamp decides whether it is stale.

The provider is the only boundary to the knowledge base itself. A failing
provider yields an empty digest rather than an error.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Union

import structlog

from brain._markdown import atomic_write_text, parse_frontmatter, render_frontmatter

logger = structlog.get_logger(__name__)

CONTEXT_FILE = "CONTEXT.md"
CONTEXT_DOC_TYPE = "agent-context"

HOT_MAX_DAYS = 14
WARM_MAX_DAYS = 45
DISPLAY_CAP = 20
DEFAULT_ITEM_LIMIT = 100
DEFAULT_MAX_AGE_HOURS = 24.0

_MATCH_ALL_SCOPES = frozenset({"", "**/*", "all"})


@dataclass
class ContextItem:
    id: Union[int, str]
    content: str
    item_type: str
    created_at: datetime
    source_path: str
    entity_name: Optional[str] = None


@dataclass
class CategorizedContext:
    hot: list[ContextItem] = field(default_factory=list)
    warm: list[ContextItem] = field(default_factory=list)
    cold: list[ContextItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hot) + len(self.warm) + len(self.cold)


@dataclass
class GeneratedContext:
    agent_id: str
    generated_at: datetime
    item_count: int
    sections: CategorizedContext


class ItemProvider(Protocol):
    """Read-only source of knowledge-base items."""

    async def get_items_for_scope(self, scope: str, limit: int) -> list[ContextItem]: ...


def scope_matches(scope: str, path: str) -> bool:
    """Glob scopes match with ``fnmatch``; plain scopes are path prefixes."""
    if scope in _MATCH_ALL_SCOPES:
        return True
    if "*" in scope or "?" in scope:
        return fnmatch.fnmatchcase(path, scope)
    return path.startswith(scope)


class InMemoryItemProvider:
    """Item provider over a fixed list of items, newest first."""

    def __init__(self, items: Optional[list[ContextItem]] = None) -> None:
        self.items: list[ContextItem] = list(items or [])

    def add(self, item: ContextItem) -> None:
        self.items.append(item)

    async def get_items_for_scope(self, scope: str, limit: int = DEFAULT_ITEM_LIMIT) -> list[ContextItem]:
        matched = [item for item in self.items if scope_matches(scope, item.source_path)]
        matched.sort(key=lambda item: _aware(item.created_at), reverse=True)
        return matched[:limit]


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def age_in_days(created_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since ``created_at`` (floored)."""
    now = _aware(now or datetime.now(timezone.utc))
    return (now - _aware(created_at)).days


def categorize_by_recency(items: list[ContextItem], now: Optional[datetime] = None) -> CategorizedContext:
    """Partition items into hot (< 14 days), warm (14 to 45 days) and cold (> 45 days)."""
    now = now or datetime.now(timezone.utc)
    result = CategorizedContext()
    for item in items:
        days = age_in_days(item.created_at, now)
        if days < HOT_MAX_DAYS:
            result.hot.append(item)
        elif days <= WARM_MAX_DAYS:
            result.warm.append(item)
        else:
            result.cold.append(item)
    return result


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def format_item(item: ContextItem) -> str:
    entity = f"**{item.entity_name}**: " if item.entity_name else ""
    return f"- {entity}{item.content} [{item.item_type}]"


def _render_bucket(lines: list[str], heading: str, items: list[ContextItem], placeholder: str) -> None:
    lines.append(heading)
    lines.append("")
    if items:
        lines.extend(format_item(item) for item in items[:DISPLAY_CAP])
        if len(items) > DISPLAY_CAP:
            lines.append(f"- *...and {len(items) - DISPLAY_CAP} more*")
    else:
        lines.append(placeholder)
    lines.append("")


def generate_context_markdown(context: GeneratedContext) -> str:
    sections = context.sections
    lines = [
        render_frontmatter({
            "type": CONTEXT_DOC_TYPE,
            "agent": context.agent_id,
            "generated": context.generated_at.isoformat(),
            "items": context.item_count,
        }),
        "",
        "# Context",
        "",
        "> This file is auto-generated. Do not edit manually.",
        "",
    ]
    _render_bucket(lines, f"## Hot (Last {HOT_MAX_DAYS} Days)", sections.hot, "*No recent items*")
    _render_bucket(lines, f"## Warm ({HOT_MAX_DAYS}-{WARM_MAX_DAYS} Days)", sections.warm,
                   "*No items in this period*")
    _render_bucket(lines, "## Cold (Older)", sections.cold, "*No older items*")
    lines.extend([
        "## Stats",
        "",
        f"- **Hot:** {len(sections.hot)} items",
        f"- **Warm:** {len(sections.warm)} items",
        f"- **Cold:** {len(sections.cold)} items",
        f"- **Total:** {context.item_count} items",
        "",
    ])
    return "\n".join(lines)


def context_path(agent_path: Path) -> Path:
    return Path(agent_path) / CONTEXT_FILE


async def save_context(agent_path: Path, context: GeneratedContext) -> None:
    atomic_write_text(context_path(agent_path), generate_context_markdown(context))


async def load_context(agent_path: Path) -> Optional[str]:
    path = context_path(agent_path)
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("context.read_failed", path=str(path), error=str(e))
        return None


async def context_needs_regeneration(
    agent_path: Path,
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    now: Optional[datetime] = None,
) -> bool:
    """True when the digest is missing, undated, or older than ``max_age_hours``."""
    content = await load_context(agent_path)
    if content is None:
        return True
    meta, _ = parse_frontmatter(content)
    generated = meta.get("generated")
    if not generated:
        return True
    try:
        generated_at = _aware(datetime.fromisoformat(str(generated)))
    except ValueError:
        return True
    now = _aware(now or datetime.now(timezone.utc))
    age_hours = (now - generated_at).total_seconds() / 3600
    return age_hours > max_age_hours


class ContextGenerator:
    """Builds and persists context digests from an item provider."""

    def __init__(self, provider: ItemProvider, item_limit: int = DEFAULT_ITEM_LIMIT) -> None:
        self.provider = provider
        self.item_limit = item_limit

    async def get_items_for_scope(self, scope: str) -> list[ContextItem]:
        try:
            return await self.provider.get_items_for_scope(scope, self.item_limit)
        except Exception as e:
            logger.warning("context.provider_failed", scope=scope, error=str(e))
            return []

    async def generate_agent_context(
        self, agent_id: str, scope: str, now: Optional[datetime] = None,
    ) -> GeneratedContext:
        now = now or datetime.now(timezone.utc)
        items = await self.get_items_for_scope(scope)
        return GeneratedContext(
            agent_id=agent_id,
            generated_at=now,
            item_count=len(items),
            sections=categorize_by_recency(items, now),
        )

    async def regenerate_context(self, agent_path: Path, agent_id: str, scope: str) -> GeneratedContext:
        context = await self.generate_agent_context(agent_id, scope)
        await save_context(agent_path, context)
        logger.info(
            "context.regenerated",
            agent_id=agent_id,
            items=context.item_count,
            hot=len(context.sections.hot),
        )
        return context

    async def ensure_fresh_context(
        self,
        agent_path: Path,
        agent_id: str,
        scope: str,
        max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    ) -> Optional[GeneratedContext]:
        """Regenerate only when stale. None when the saved digest is still fresh."""
        if await context_needs_regeneration(agent_path, max_age_hours):
            return await self.regenerate_context(agent_path, agent_id, scope)
        return None
