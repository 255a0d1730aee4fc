"""
Tests for brain.context.generator: recency buckets and CONTEXT.md.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from brain._markdown import parse_frontmatter
from brain.context.generator import (
    CategorizedContext,
    ContextGenerator,
    GeneratedContext,
    InMemoryItemProvider,
    age_in_days,
    categorize_by_recency,
    context_needs_regeneration,
    context_path,
    format_item,
    generate_context_markdown,
    load_context,
    save_context,
    scope_matches,
)


class _FailingProvider:
    async def get_items_for_scope(self, scope, limit):
        raise RuntimeError("index offline")


class TestRecency:

    def test_bucket_boundaries(self, make_item, now: datetime):
        items = [make_item(i, days, now) for i, days in enumerate([0, 13.9, 14, 44, 45, 46, 400])]
        buckets = categorize_by_recency(items, now)
        assert [i.id for i in buckets.hot] == [0, 1]
        assert [i.id for i in buckets.warm] == [2, 3, 4]
        assert [i.id for i in buckets.cold] == [5, 6]
        assert len(buckets) == 7

    def test_age_is_floored_whole_days(self, now: datetime):
        assert age_in_days(now - timedelta(days=2, hours=23), now) == 2

    def test_naive_timestamps_are_treated_as_utc(self, now: datetime):
        naive = (now - timedelta(days=3)).replace(tzinfo=None)
        assert age_in_days(naive, now) == 3


class TestScopes:

    @pytest.mark.parametrize("scope", ["", "**/*", "all"])
    def test_match_all_scopes(self, scope):
        assert scope_matches(scope, "anything/at/all.md")

    def test_glob_scope(self):
        assert scope_matches("30_Projects/alpha/**", "30_Projects/alpha/notes.md")
        assert not scope_matches("30_Projects/alpha/**", "30_Projects/beta/notes.md")

    def test_prefix_scope(self):
        assert scope_matches("30_Projects/alpha", "30_Projects/alpha/notes.md")
        assert not scope_matches("30_Projects/alpha", "10_Inbox/notes.md")

    @pytest.mark.asyncio
    async def test_in_memory_provider_filters_sorts_and_limits(self, make_item, now: datetime):
        provider = InMemoryItemProvider([
            make_item(1, 10, now),
            make_item(2, 1, now),
            make_item(3, 5, now, source_path="30_Projects/beta/x.md"),
            make_item(4, 3, now),
        ])
        items = await provider.get_items_for_scope("30_Projects/alpha/**", limit=2)
        assert [i.id for i in items] == [2, 4]


class TestRendering:

    def test_format_item(self, make_item, now: datetime):
        assert format_item(make_item(1, 0, now, entity="Alpha")) == "- **Alpha**: item 1 [fact]"
        assert format_item(make_item(2, 0, now, item_type="decision")) == "- item 2 [decision]"

    def test_empty_context_placeholders(self, now: datetime):
        text = generate_context_markdown(
            GeneratedContext("agent_a", now, 0, CategorizedContext()),
        )
        meta, body = parse_frontmatter(text)
        assert meta["type"] == "agent-context"
        assert meta["agent"] == "agent_a"
        assert meta["items"] == 0
        assert "# Context" in body
        assert "auto-generated" in body
        assert "*No recent items*" in body
        assert "*No items in this period*" in body
        assert "*No older items*" in body
        assert "- **Total:** 0 items" in body

    def test_display_cap_and_overflow_marker(self, make_item, now: datetime):
        hot = [make_item(i, 1, now) for i in range(30)]
        text = generate_context_markdown(
            GeneratedContext("agent_a", now, 30, CategorizedContext(hot=hot)),
        )
        hot_section = text.split("## Hot (Last 14 Days)")[1].split("## Warm")[0]
        assert hot_section.count("[fact]") == 20
        assert "- *...and 10 more*" in hot_section
        assert "- **Hot:** 30 items" in text


class TestPersistence:

    @pytest.mark.asyncio
    async def test_missing_context_needs_regeneration(self, agent_dir: Path):
        assert await load_context(agent_dir) is None
        assert await context_needs_regeneration(agent_dir)

    @pytest.mark.asyncio
    async def test_staleness_window(self, agent_dir: Path, now: datetime):
        await save_context(agent_dir, GeneratedContext("agent_a", now, 0, CategorizedContext()))
        assert not await context_needs_regeneration(agent_dir, 24, now=now + timedelta(hours=23))
        assert await context_needs_regeneration(agent_dir, 24, now=now + timedelta(hours=25))

    @pytest.mark.asyncio
    async def test_undated_context_is_stale(self, agent_dir: Path):
        context_path(agent_dir).write_text("# Context\n")
        assert await context_needs_regeneration(agent_dir)


class TestContextGenerator:

    @pytest.mark.asyncio
    async def test_generate_uses_scope(self, make_item, now: datetime):
        provider = InMemoryItemProvider([
            make_item(1, 2, now),
            make_item(2, 20, now),
            make_item(3, 2, now, source_path="10_Inbox/x.md"),
        ])
        context = await ContextGenerator(provider).generate_agent_context(
            "agent_a", "30_Projects/alpha/**", now=now,
        )
        assert context.item_count == 2
        assert [i.id for i in context.sections.hot] == [1]
        assert [i.id for i in context.sections.warm] == [2]

    @pytest.mark.asyncio
    async def test_provider_failure_yields_empty_context(self):
        context = await ContextGenerator(_FailingProvider()).generate_agent_context("agent_a", "**/*")
        assert context.item_count == 0
        assert len(context.sections) == 0

    @pytest.mark.asyncio
    async def test_ensure_fresh_only_regenerates_when_stale(self, agent_dir: Path):
        generator = ContextGenerator(InMemoryItemProvider())
        first = await generator.ensure_fresh_context(agent_dir, "agent_a", "**/*")
        assert first is not None
        assert context_path(agent_dir).is_file()
        assert await generator.ensure_fresh_context(agent_dir, "agent_a", "**/*") is None
