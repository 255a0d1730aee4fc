"""
Agent Memory: Durable, section-addressable long-term state.

Each agent owns one ``MEMORY.md``: a metadata block (type, agent, updated,
version) followed by a heading hierarchy. Every heading becomes a section;
sections are addressed case-insensitively by title. The document is
rewritten wholesale on save and ``version`` increments each time.

Size limits keep memory small enough to be injected into prompts. The
tool-facing ``write_section`` enforces them; plain section edits do not.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

import structlog

from brain._markdown import atomic_write_text, parse_frontmatter, render_frontmatter

logger = structlog.get_logger(__name__)

MEMORY_FILE = "MEMORY.md"
MEMORY_DOC_TYPE = "agent-memory"
TRUNCATION_MARKER = "\n\n[...truncated...]"

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")


@dataclass
class MemoryLimits:
    max_total_size: int = 50_000
    max_section_size: int = 10_000
    max_sections: int = 20


DEFAULT_MEMORY_LIMITS = MemoryLimits()


@dataclass
class MemorySection:
    title: str
    content: str = ""
    level: int = 2


@dataclass
class MemoryFrontmatter:
    agent: str
    updated: str = ""
    version: int = 0
    type: str = MEMORY_DOC_TYPE


@dataclass
class MemoryUpdate:
    """One entry of a batch update. Missing sections are created."""
    section: str
    content: str
    append: bool = False


@dataclass
class MemoryWriteResult:
    success: bool
    section: str
    error: Optional[str] = None
    truncated: bool = False
    size_used: Optional[int] = None
    size_limit: Optional[int] = None


@dataclass
class MemoryReadResult:
    success: bool
    content: Optional[str] = None
    sections: list[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class MemoryStats:
    total_size: int
    section_count: int
    largest_section: Optional[tuple[str, int]]
    within_limits: bool
    usage_percent: int


@dataclass
class AgentMemory:
    """A parsed memory document."""

    frontmatter: MemoryFrontmatter
    sections: list[MemorySection] = field(default_factory=list)
    raw: str = ""
    # Body text before the first heading; written back unchanged on save.
    preamble: str = ""

    @property
    def title(self) -> Optional[str]:
        """The first level-1 heading, if any."""
        for section in self.sections:
            if section.level == 1:
                return section.title
        return None

    def get_section(self, title: str) -> Optional[MemorySection]:
        wanted = title.lower()
        for section in self.sections:
            if section.title.lower() == wanted:
                return section
        return None

    def update_section(self, title: str, content: str, append: bool = False) -> bool:
        """Replace or extend an existing section. False when it does not exist."""
        section = self.get_section(title)
        if section is None:
            return False
        if append and section.content:
            section.content = f"{section.content}\n{content}"
        else:
            section.content = content
        return True

    def add_section(self, title: str, content: str, level: int = 2) -> MemorySection:
        section = MemorySection(title=title, content=content, level=level)
        self.sections.append(section)
        return section

    def remove_section(self, title: str) -> bool:
        section = self.get_section(title)
        if section is None:
            return False
        self.sections.remove(section)
        return True


# ---------------------------------------------------------------------------
# Parsing and rendering
# ---------------------------------------------------------------------------

def parse_sections(body: str) -> list[MemorySection]:
    sections: list[MemorySection] = []
    current: Optional[MemorySection] = None
    lines: list[str] = []

    for line in body.split("\n"):
        match = _HEADING_RE.match(line)
        if match:
            if current is not None:
                current.content = "\n".join(lines).strip()
                sections.append(current)
            current = MemorySection(title=match.group(2).strip(), level=len(match.group(1)))
            lines = []
        elif current is not None:
            lines.append(line)

    if current is not None:
        current.content = "\n".join(lines).strip()
        sections.append(current)
    return sections


def parse_preamble(body: str) -> str:
    lines: list[str] = []
    for line in body.split("\n"):
        if _HEADING_RE.match(line):
            break
        lines.append(line)
    return "\n".join(lines).strip()


def parse_memory(content: str, agent_id: str = "unknown") -> AgentMemory:
    meta, body = parse_frontmatter(content)
    try:
        version = int(meta.get("version", 0) or 0)
    except (TypeError, ValueError):
        version = 0
    frontmatter = MemoryFrontmatter(
        agent=str(meta.get("agent") or agent_id),
        updated=str(meta.get("updated") or ""),
        version=version,
        type=str(meta.get("type") or MEMORY_DOC_TYPE),
    )
    return AgentMemory(
        frontmatter=frontmatter,
        sections=parse_sections(body),
        raw=content,
        preamble=parse_preamble(body),
    )


def generate_memory_markdown(memory: AgentMemory) -> str:
    fm = memory.frontmatter
    lines = [
        render_frontmatter({
            "type": fm.type,
            "agent": fm.agent,
            "updated": fm.updated,
            "version": fm.version,
        }),
        "",
    ]
    if memory.preamble:
        lines.append(memory.preamble)
        lines.append("")
    for section in memory.sections:
        lines.append(f"{'#' * section.level} {section.title}")
        lines.append("")
        if section.content:
            lines.append(section.content)
            lines.append("")
    return "\n".join(lines)


def create_empty_memory(agent_id: str) -> AgentMemory:
    """The starter document for an agent that has never saved memory."""
    return AgentMemory(
        frontmatter=MemoryFrontmatter(agent=agent_id, updated=date.today().isoformat()),
        sections=[
            MemorySection("Working Memory", "", 1),
            MemorySection("Current State", "- **Status:** Initialized", 2),
            MemorySection("Key Context", "", 2),
            MemorySection("Pending Actions", "", 2),
            MemorySection("Important Notes", "", 2),
        ],
    )


def format_memory_for_context(memory: AgentMemory) -> str:
    """Non-empty sections as ``### title`` blocks, for prompt injection."""
    lines: list[str] = []
    for section in memory.sections:
        if section.content.strip():
            lines.append(f"### {section.title}")
            lines.append(section.content)
            lines.append("")
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

def truncate_content(content: str, max_size: int) -> str:
    if len(content) <= max_size:
        return content
    truncated = content[: max(0, max_size - 50)]
    last_newline = truncated.rfind("\n")
    cut = last_newline if last_newline > max_size * 0.8 else len(truncated)
    return truncated[:cut] + TRUNCATION_MARKER


def get_memory_stats(memory: AgentMemory, limits: MemoryLimits = DEFAULT_MEMORY_LIMITS) -> MemoryStats:
    total = 0
    largest: Optional[tuple[str, int]] = None
    for section in memory.sections:
        size = len(section.content)
        # heading overhead
        total += size + len(section.title) + 10
        if largest is None or size > largest[1]:
            largest = (section.title, size)
    return MemoryStats(
        total_size=total,
        section_count=len(memory.sections),
        largest_section=largest,
        within_limits=total <= limits.max_total_size and len(memory.sections) <= limits.max_sections,
        usage_percent=round(total / limits.max_total_size * 100) if limits.max_total_size else 0,
    )


def check_memory_limits(
    memory: AgentMemory, limits: MemoryLimits = DEFAULT_MEMORY_LIMITS,
) -> tuple[bool, list[str]]:
    """Return ``(valid, errors)`` for a memory document."""
    errors: list[str] = []
    stats = get_memory_stats(memory, limits)
    if stats.total_size > limits.max_total_size:
        errors.append(f"Total size {stats.total_size} exceeds limit {limits.max_total_size}")
    if stats.section_count > limits.max_sections:
        errors.append(f"Section count {stats.section_count} exceeds limit {limits.max_sections}")
    for section in memory.sections:
        if len(section.content) > limits.max_section_size:
            errors.append(
                f'Section "{section.title}" size {len(section.content)} '
                f"exceeds limit {limits.max_section_size}"
            )
    return not errors, errors


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AgentMemoryStore:
    """Reads and writes one agent's ``MEMORY.md``."""

    def __init__(self, agent_path: Path) -> None:
        self.agent_path = Path(agent_path)
        self.memory_path = self.agent_path / MEMORY_FILE

    async def load(self) -> Optional[AgentMemory]:
        if not self.memory_path.is_file():
            return None
        try:
            content = self.memory_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("agent_memory.read_failed", path=str(self.memory_path), error=str(e))
            return None
        return parse_memory(content, agent_id=self.agent_path.name)

    async def save(self, memory: AgentMemory) -> None:
        """Rewrite the document, stamping today's date and bumping the version."""
        memory.frontmatter.updated = date.today().isoformat()
        memory.frontmatter.version = memory.frontmatter.version + 1
        content = generate_memory_markdown(memory)
        atomic_write_text(self.memory_path, content)
        memory.raw = content
        logger.debug(
            "agent_memory.saved",
            agent=memory.frontmatter.agent,
            version=memory.frontmatter.version,
        )

    async def load_or_create(self, agent_id: str) -> AgentMemory:
        existing = await self.load()
        if existing is not None:
            return existing
        memory = create_empty_memory(agent_id)
        await self.save(memory)
        logger.info("agent_memory.created", agent=agent_id, path=str(self.memory_path))
        return memory

    async def apply_updates(self, updates: list[MemoryUpdate]) -> Optional[AgentMemory]:
        """Apply a batch of section updates, creating missing sections. None if no memory."""
        memory = await self.load()
        if memory is None:
            return None
        for update in updates:
            if not memory.update_section(update.section, update.content, update.append):
                memory.add_section(update.section, update.content)
        await self.save(memory)
        return memory

    async def quick_update(self, section: str, content: str, append: bool = False) -> bool:
        return await self.apply_updates([MemoryUpdate(section, content, append)]) is not None

    async def write_section(
        self,
        section: str,
        content: str,
        append: bool = False,
        create_if_missing: bool = True,
        enforce_limits: bool = True,
        limits: MemoryLimits = DEFAULT_MEMORY_LIMITS,
    ) -> MemoryWriteResult:
        """Limit-aware single-section write with a detailed result."""
        memory = await self.load()
        if memory is None:
            memory = create_empty_memory(self.agent_path.name)

        existing = memory.get_section(section)
        if existing is None and not create_if_missing:
            return MemoryWriteResult(False, section, error=f'Section "{section}" does not exist')
        if existing is None and len(memory.sections) >= limits.max_sections:
            return MemoryWriteResult(
                False, section,
                error=f"Cannot create new section: limit of {limits.max_sections} sections reached",
            )

        final = content
        truncated = False
        if enforce_limits and len(content) > limits.max_section_size:
            final = truncate_content(content, limits.max_section_size)
            truncated = True

        if existing is None:
            memory.add_section(section, final)
        elif append:
            combined = f"{existing.content}\n{final}" if existing.content else final
            if enforce_limits and len(combined) > limits.max_section_size:
                combined = truncate_content(combined, limits.max_section_size)
                truncated = True
            existing.content = combined
        else:
            existing.content = final

        stats = get_memory_stats(memory, limits)
        if enforce_limits and stats.total_size > limits.max_total_size:
            return MemoryWriteResult(
                False, section,
                error=f"Write would exceed total memory limit ({stats.total_size}/{limits.max_total_size})",
                size_used=stats.total_size,
                size_limit=limits.max_total_size,
            )

        try:
            await self.save(memory)
        except OSError as e:
            logger.error("agent_memory.write_failed", path=str(self.memory_path), error=str(e))
            return MemoryWriteResult(False, section, error=f"Failed to save: {e}")

        return MemoryWriteResult(
            True, section,
            truncated=truncated,
            size_used=stats.total_size,
            size_limit=limits.max_total_size,
        )

    async def read_section(self, section: Optional[str] = None) -> MemoryReadResult:
        memory = await self.load()
        if memory is None:
            return MemoryReadResult(False, error="No memory file found")
        titles = [s.title for s in memory.sections]
        if section is None:
            return MemoryReadResult(True, content=memory.raw, sections=titles)
        found = memory.get_section(section)
        if found is None:
            return MemoryReadResult(False, error=f'Section "{section}" not found', sections=titles)
        return MemoryReadResult(True, content=found.content)
