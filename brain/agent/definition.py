"""
Agent Definitions: Parsing and resolving agent identity documents.

Every agent is described by an ``AGENT.md`` file: a YAML metadata block
(name, id, type, scope, dates) followed by a Markdown body whose ``##``
headings carry the free-text sections of the identity (Identity,
Capabilities, Guidelines, ...).

Agents live in three namespaces under the vault root:
  - admin:   40_Brain/agents/admin/
  - skill:   40_Brain/agents/skills/<skill>/
  - project: 30_Projects/<project>/agent/

Definitions are parsed fresh from disk on every resolution. Absence is never
an error here: lookups return None and discovery skips unreadable entries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union, assert_never

import structlog

from brain._markdown import parse_frontmatter

logger = structlog.get_logger(__name__)

AGENT_FILE = "AGENT.md"
BRAIN_DIR = "40_Brain"
PROJECTS_DIR = "30_Projects"
DEFAULT_SCOPE = "**/*"

_SECTION_HEADING_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)


class AgentType(str, Enum):
    """The closed set of agent kinds."""
    ADMIN = "admin"
    PROJECT = "project"
    SKILL = "skill"


# ---------------------------------------------------------------------------
# Namespaces: where each kind of agent lives in the vault
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdminNamespace:
    """The single administrative agent."""


@dataclass(frozen=True)
class SkillNamespace:
    """A stateless, task-focused skill agent."""
    skill: str


@dataclass(frozen=True)
class ProjectNamespace:
    """The agent attached to one project folder."""
    project: str


AgentNamespace = Union[AdminNamespace, SkillNamespace, ProjectNamespace]


def agents_root(vault_path: Path) -> Path:
    return Path(vault_path) / BRAIN_DIR / "agents"


def agent_directory(vault_path: Path, namespace: AgentNamespace) -> Path:
    """Return the canonical directory for an agent namespace."""
    match namespace:
        case AdminNamespace():
            return agents_root(vault_path) / "admin"
        case SkillNamespace(skill=skill):
            return agents_root(vault_path) / "skills" / skill
        case ProjectNamespace(project=project):
            return Path(vault_path) / PROJECTS_DIR / project / "agent"
        case _:
            assert_never(namespace)


def namespace_type(namespace: AgentNamespace) -> AgentType:
    match namespace:
        case AdminNamespace():
            return AgentType.ADMIN
        case SkillNamespace():
            return AgentType.SKILL
        case ProjectNamespace():
            return AgentType.PROJECT
        case _:
            assert_never(namespace)


def namespace_from_path(agent_path: Path) -> Optional[AgentNamespace]:
    """Infer the namespace of an agent directory from its location."""
    directory = agent_path.parent if agent_path.suffix == ".md" else agent_path
    name = directory.name
    parent = directory.parent.name
    if name == "admin" and parent == "agents":
        return AdminNamespace()
    if parent == "skills":
        return SkillNamespace(skill=name)
    if name == "agent" and directory.parent.parent.name == PROJECTS_DIR:
        return ProjectNamespace(project=directory.parent.name)
    return None


def agent_id_from_path(agent_path: Path) -> str:
    """Derive the conventional agent id from the directory an agent lives in."""
    namespace = namespace_from_path(Path(agent_path))
    match namespace:
        case AdminNamespace():
            return "agent_admin_admin"
        case SkillNamespace(skill=skill):
            return f"agent_skill_{skill}"
        case ProjectNamespace(project=project):
            return f"agent_project_{project}"
        case None:
            directory = Path(agent_path)
            if directory.suffix == ".md":
                directory = directory.parent
            return f"agent_{directory.name}"
        case _:
            assert_never(namespace)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class AgentSections:
    """Free-text sections extracted from the body of an agent document."""
    identity: Optional[str] = None
    capabilities: Optional[str] = None
    guidelines: Optional[str] = None
    tools: Optional[str] = None
    communication: Optional[str] = None
    other: dict[str, str] = field(default_factory=dict)


@dataclass
class AgentDefinition:
    """A parsed agent identity document."""
    id: str
    name: str
    type: AgentType
    scope: str
    path: Path
    sections: AgentSections = field(default_factory=AgentSections)
    instructions: str = ""
    model: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    @property
    def directory(self) -> Path:
        """The agent's home directory (sessions, memory, mailbox live here)."""
        return self.path.parent

    @property
    def namespace(self) -> Optional[AgentNamespace]:
        return namespace_from_path(self.path)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def extract_sections(body: str) -> AgentSections:
    """Split a Markdown body on ``##`` headings into recognised sections.

    Titles are matched by keyword, case-insensitively. Anything unrecognised
    lands in ``other`` keyed by its lower-cased title.
    """
    sections = AgentSections()
    matches = list(_SECTION_HEADING_RE.finditer(body))

    for i, match in enumerate(matches):
        title = match.group(1).strip().lower()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        content = body[match.end():end].strip()

        if "identity" in title:
            sections.identity = content
        elif "capabilit" in title:
            sections.capabilities = content
        elif "guidelines" in title or "behavioral" in title:
            sections.guidelines = content
        elif "tools" in title or "commands" in title:
            sections.tools = content
        elif "communication" in title or "protocol" in title:
            sections.communication = content
        else:
            sections.other[title] = content

    return sections


def validate_frontmatter(frontmatter: dict[str, Any]) -> ValidationResult:
    """Check the metadata block of an agent document."""
    errors: list[str] = []
    warnings: list[str] = []

    name = frontmatter.get("name")
    if not name or not isinstance(name, str):
        errors.append('Missing or invalid "name" field')

    agent_id = frontmatter.get("id")
    if not agent_id or not isinstance(agent_id, str):
        errors.append('Missing or invalid "id" field')
    elif not agent_id.startswith("agent_"):
        warnings.append('Agent ID should start with "agent_"')

    if frontmatter.get("type") not in {t.value for t in AgentType}:
        errors.append('Missing or invalid "type" field (must be admin, project, or skill)')

    scope = frontmatter.get("scope")
    if not scope or not isinstance(scope, str):
        warnings.append(f'Missing "scope" field, defaulting to "{DEFAULT_SCOPE}"')

    if not frontmatter.get("created"):
        warnings.append('Missing "created" field')
    if not frontmatter.get("updated"):
        warnings.append('Missing "updated" field')

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def parse_agent_definition(content: str, file_path: Path) -> Optional[AgentDefinition]:
    """Parse an agent document. Returns None when it cannot identify an agent."""
    frontmatter, body = parse_frontmatter(content)

    validation = validate_frontmatter(frontmatter)
    if not validation.valid:
        logger.warning(
            "agent_definition.invalid",
            path=str(file_path),
            errors=validation.errors,
        )
        return None
    if validation.warnings:
        logger.debug(
            "agent_definition.warnings",
            path=str(file_path),
            warnings=validation.warnings,
        )

    scope = frontmatter.get("scope")
    raw_tags = frontmatter.get("tags") or []
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]

    return AgentDefinition(
        id=frontmatter["id"],
        name=frontmatter["name"],
        type=AgentType(frontmatter["type"]),
        scope=scope if isinstance(scope, str) and scope else DEFAULT_SCOPE,
        path=Path(file_path),
        sections=extract_sections(body),
        instructions=body,
        model=frontmatter.get("model"),
        created=_as_optional_str(frontmatter.get("created")),
        updated=_as_optional_str(frontmatter.get("updated")),
        tags=[str(t) for t in raw_tags],
    )


def _as_optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


async def load_agent_definition(agent_path: Path) -> Optional[AgentDefinition]:
    """Load a definition from an agent directory or directly from its ``.md`` file."""
    agent_path = Path(agent_path)
    agent_md = agent_path if agent_path.suffix == ".md" else agent_path / AGENT_FILE
    if not agent_md.is_file():
        return None
    try:
        content = agent_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("agent_definition.read_failed", path=str(agent_md), error=str(e))
        return None
    return parse_agent_definition(content, agent_md)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def _child_dirs(path: Path) -> list[Path]:
    try:
        return sorted(p for p in path.iterdir() if p.is_dir())
    except OSError as e:
        logger.debug("agent_definition.list_failed", path=str(path), error=str(e))
        return []


async def find_agent_directories(vault_path: Path) -> list[Path]:
    """Every directory in the vault that holds an ``AGENT.md``, admin first."""
    vault_path = Path(vault_path)
    found: list[Path] = []

    admin = agent_directory(vault_path, AdminNamespace())
    if (admin / AGENT_FILE).is_file():
        found.append(admin)

    skills_root = agents_root(vault_path) / "skills"
    if skills_root.is_dir():
        for skill_dir in _child_dirs(skills_root):
            if (skill_dir / AGENT_FILE).is_file():
                found.append(skill_dir)

    projects_root = vault_path / PROJECTS_DIR
    if projects_root.is_dir():
        for project_dir in _child_dirs(projects_root):
            candidate = agent_directory(vault_path, ProjectNamespace(project=project_dir.name))
            if (candidate / AGENT_FILE).is_file():
                found.append(candidate)

    return found


async def discover_agents(vault_path: Path) -> list[AgentDefinition]:
    """Parse every resolvable agent in the vault."""
    agents: list[AgentDefinition] = []
    for directory in await find_agent_directories(vault_path):
        agent = await load_agent_definition(directory)
        if agent is not None:
            agents.append(agent)
    return agents


async def get_agent_by_id(vault_path: Path, agent_id: str) -> Optional[AgentDefinition]:
    """Resolve an agent by id across all namespaces. None when absent."""
    for agent in await discover_agents(vault_path):
        if agent.id == agent_id:
            return agent
    return None
