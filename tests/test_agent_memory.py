"""
Tests for brain.memory.agent_memory: MEMORY.md parsing, limits and the store.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from brain.memory.agent_memory import (
    TRUNCATION_MARKER,
    AgentMemoryStore,
    MemoryLimits,
    MemoryUpdate,
    check_memory_limits,
    create_empty_memory,
    format_memory_for_context,
    generate_memory_markdown,
    get_memory_stats,
    parse_memory,
    truncate_content,
)


MEMORY_MD = """---
type: agent-memory
agent: agent_skill_research
updated: 2026-01-01
version: 7
---

# Working Memory

## Current State

Drafting chapter two.

## Pending Actions

- Email the editor
"""


@pytest.fixture()
def store(agent_dir: Path) -> AgentMemoryStore:
    return AgentMemoryStore(agent_dir)


class TestParsing:

    def test_parse_frontmatter_and_sections(self):
        memory = parse_memory(MEMORY_MD)
        assert memory.frontmatter.agent == "agent_skill_research"
        assert memory.frontmatter.version == 7
        assert memory.title == "Working Memory"
        assert [s.title for s in memory.sections] == ["Working Memory", "Current State", "Pending Actions"]
        assert memory.get_section("current state").content == "Drafting chapter two."

    def test_missing_frontmatter_uses_fallback_agent(self):
        memory = parse_memory("## Notes\n\nhello\n", agent_id="agent_x")
        assert memory.frontmatter.agent == "agent_x"
        assert memory.frontmatter.version == 0
        assert memory.title is None

    def test_render_then_parse_keeps_sections(self):
        memory = parse_memory(MEMORY_MD)
        again = parse_memory(generate_memory_markdown(memory))
        assert [(s.title, s.level, s.content) for s in again.sections] == [
            (s.title, s.level, s.content) for s in memory.sections
        ]

    def test_empty_memory_template(self):
        memory = create_empty_memory("agent_a")
        assert memory.title == "Working Memory"
        assert memory.get_section("Current State").content == "- **Status:** Initialized"
        assert memory.get_section("Important Notes") is not None

    def test_format_for_context_skips_empty_sections(self):
        memory = create_empty_memory("agent_a")
        text = format_memory_for_context(memory)
        assert text == "### Current State\n- **Status:** Initialized"


class TestSectionEdits:

    def test_update_replace_and_append(self):
        memory = parse_memory(MEMORY_MD)
        assert memory.update_section("Pending Actions", "- Call the printer", append=True)
        assert memory.get_section("Pending Actions").content == "- Email the editor\n- Call the printer"
        assert memory.update_section("pending actions", "nothing")
        assert memory.get_section("Pending Actions").content == "nothing"

    def test_update_missing_section(self):
        memory = parse_memory(MEMORY_MD)
        assert memory.update_section("Nope", "x") is False

    def test_add_and_remove(self):
        memory = parse_memory(MEMORY_MD)
        memory.add_section("Ideas", "- one")
        assert memory.get_section("ideas").level == 2
        assert memory.remove_section("Ideas")
        assert memory.remove_section("Ideas") is False


class TestLimits:

    def test_truncate_short_content_unchanged(self):
        assert truncate_content("abc", 10) == "abc"

    def test_truncate_prefers_line_boundary(self):
        content = ("x" * 90 + "\n") * 5
        result = truncate_content(content, 420)
        assert result.endswith(TRUNCATION_MARKER)
        assert result[: -len(TRUNCATION_MARKER)] == content[:363]

    def test_stats(self):
        memory = parse_memory(MEMORY_MD)
        stats = get_memory_stats(memory)
        assert stats.section_count == 3
        assert stats.largest_section == ("Current State", len("Drafting chapter two."))
        assert stats.within_limits

    def test_check_limits_reports_every_violation(self):
        memory = create_empty_memory("agent_a")
        memory.get_section("Key Context").content = "y" * 200
        valid, errors = check_memory_limits(
            memory, MemoryLimits(max_total_size=100, max_section_size=50, max_sections=3),
        )
        assert not valid
        assert len(errors) == 3
        assert any('"Key Context"' in e for e in errors)


class TestStore:

    @pytest.mark.asyncio
    async def test_load_missing(self, store: AgentMemoryStore):
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_load_or_create_persists_template(self, store: AgentMemoryStore):
        memory = await store.load_or_create("agent_a")
        assert memory.frontmatter.version == 1
        assert store.memory_path.is_file()
        reloaded = await store.load()
        assert reloaded.frontmatter.agent == "agent_a"
        assert [s.title for s in reloaded.sections] == [s.title for s in memory.sections]

    @pytest.mark.asyncio
    async def test_each_save_bumps_version(self, store: AgentMemoryStore):
        memory = await store.load_or_create("agent_a")
        await store.save(memory)
        await store.save(memory)
        assert (await store.load()).frontmatter.version == 3

    @pytest.mark.asyncio
    async def test_text_before_first_heading_survives_save(self, store: AgentMemoryStore):
        store.memory_path.parent.mkdir(parents=True, exist_ok=True)
        store.memory_path.write_text(
            "---\ntype: agent-memory\nagent: agent_a\nversion: 2\n---\n\n"
            "Hand-written note.\n\n## Current State\n\nIdle\n",
            encoding="utf-8",
        )
        memory = await store.load()
        assert memory.preamble == "Hand-written note."

        memory.update_section("Current State", "Busy")
        await store.save(memory)

        reloaded = await store.load()
        assert reloaded.preamble == "Hand-written note."
        assert reloaded.get_section("Current State").content == "Busy"
        assert reloaded.frontmatter.version == 3

    @pytest.mark.asyncio
    async def test_apply_updates_creates_missing_sections(self, store: AgentMemoryStore):
        await store.load_or_create("agent_a")
        memory = await store.apply_updates([
            MemoryUpdate("Current State", "- **Status:** Busy"),
            MemoryUpdate("Ideas", "- one"),
            MemoryUpdate("Ideas", "- two", append=True),
        ])
        assert memory.get_section("Current State").content == "- **Status:** Busy"
        assert memory.get_section("Ideas").content == "- one\n- two"
        assert (await store.load()).get_section("Ideas").content == "- one\n- two"

    @pytest.mark.asyncio
    async def test_apply_updates_without_memory(self, store: AgentMemoryStore):
        assert await store.apply_updates([MemoryUpdate("x", "y")]) is None
        assert await store.quick_update("x", "y") is False

    @pytest.mark.asyncio
    async def test_write_section_creates_file(self, store: AgentMemoryStore):
        result = await store.write_section("Key Context", "Alpha launches in May.")
        assert result.success
        assert not result.truncated
        read = await store.read_section("key context")
        assert read.success
        assert read.content == "Alpha launches in May."

    @pytest.mark.asyncio
    async def test_write_section_truncates_oversized_content(self, store: AgentMemoryStore):
        limits = MemoryLimits(max_total_size=50_000, max_section_size=200, max_sections=20)
        result = await store.write_section("Key Context", "z" * 500, limits=limits)
        assert result.success
        assert result.truncated
        content = (await store.read_section("Key Context")).content
        assert content.endswith("[...truncated...]")

    @pytest.mark.asyncio
    async def test_write_section_respects_missing_and_section_cap(self, store: AgentMemoryStore):
        await store.load_or_create("agent_a")
        missing = await store.write_section("Ideas", "x", create_if_missing=False)
        assert not missing.success
        assert "does not exist" in missing.error

        capped = await store.write_section(
            "Ideas", "x", limits=MemoryLimits(max_total_size=50_000, max_section_size=10_000, max_sections=5),
        )
        assert not capped.success
        assert "limit of 5 sections" in capped.error

    @pytest.mark.asyncio
    async def test_write_section_rejects_total_overflow(self, store: AgentMemoryStore):
        await store.load_or_create("agent_a")
        before = (await store.load()).frontmatter.version
        limits = MemoryLimits(max_total_size=300, max_section_size=10_000, max_sections=20)
        result = await store.write_section("Key Context", "q" * 400, limits=limits)
        assert not result.success
        assert result.size_limit == 300
        assert (await store.load()).frontmatter.version == before

    @pytest.mark.asyncio
    async def test_read_whole_document_and_missing_section(self, store: AgentMemoryStore):
        assert not (await store.read_section()).success
        await store.load_or_create("agent_a")
        whole = await store.read_section()
        assert whole.success
        assert "# Working Memory" in whole.content
        assert "Current State" in whole.sections
        missing = await store.read_section("Nope")
        assert not missing.success
        assert "Current State" in missing.sections
