"""Scaffolding for new agents: AGENT.md, MEMORY.md, README.md and a session index."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

import structlog

from brain._markdown import render_frontmatter
from brain.agent.definition import (
    AGENT_FILE,
    AdminNamespace,
    AgentNamespace,
    AgentType,
    DEFAULT_SCOPE,
    PROJECTS_DIR,
    ProjectNamespace,
    SkillNamespace,
    agent_directory,
    namespace_type,
)
from brain.memory.agent_memory import AgentMemoryStore, create_empty_memory
from brain.memory.session_store import INDEX_FILE, SESSIONS_DIR

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

_ROLES = {
    AgentType.ADMIN: "Vault Administrator",
    AgentType.PROJECT: "Project Assistant",
    AgentType.SKILL: "Skill Specialist",
}


@dataclass
class CreatedAgent:
    id: str
    path: Path
    files: list[str] = field(default_factory=list)


def generate_agent_id(name: str, agent_type: AgentType | str) -> str:
    """``agent_<type>_<slug>`` where the slug is the lower-cased name."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return f"agent_{AgentType(agent_type).value}_{slug}"


def _agent_body(name: str, agent_type: AgentType, scope: str, description: Optional[str]) -> str:
    if agent_type is AgentType.SKILL:
        intro = description or f"Skill agent for {name.lower()} tasks."
        capabilities = description or "- Specialized skill capabilities\n- Task-focused execution"
        guidelines = (
            "1. **Task-focused** - Complete the specific task requested\n"
            "2. **Stateless** - Do not rely on previous conversations\n"
            "3. **Quality output** - Deliver polished, ready-to-use results\n"
            "4. **Explain reasoning** - Share your thought process"
        )
        scope_line = "Task-based (stateless)"
    elif agent_type is AgentType.PROJECT:
        intro = description or f"Project agent for {name}."
        capabilities = (
            "- Track project status and progress\n"
            "- Maintain project documentation\n"
            "- Answer questions about project context"
        )
        guidelines = (
            f"1. **Stay in scope** - Only access files within {scope}\n"
            "2. **Cite sources** - Reference specific files when providing information\n"
            "3. **Update memory** - Keep working memory current\n"
            "4. **Ask for clarity** - When uncertain, ask rather than assume"
        )
        scope_line = scope
    else:
        intro = description or "Administrative agent for the whole vault."
        capabilities = (
            "- Coordinate project and skill agents\n"
            "- Answer questions across the whole vault\n"
            "- Maintain vault-wide notes and priorities"
        )
        guidelines = (
            "1. **Delegate** - Route project work to the owning project agent\n"
            "2. **Cite sources** - Reference specific files when providing information\n"
            "3. **Update memory** - Keep working memory current"
        )
        scope_line = scope

    return (
        f"# {name}\n\n"
        f"{intro}\n\n"
        "## Identity\n\n"
        f"- **Name:** {name}\n"
        f"- **Role:** {_ROLES[agent_type]}\n"
        f"- **Scope:** {scope_line}\n\n"
        "## Capabilities\n\n"
        f"{capabilities}\n\n"
        "## Guidelines\n\n"
        f"{guidelines}\n"
    )


def generate_agent_markdown(
    name: str,
    agent_id: str,
    agent_type: AgentType,
    scope: str,
    description: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    today = date.today().isoformat()
    meta = render_frontmatter({
        "name": name,
        "id": agent_id,
        "type": agent_type.value,
        "scope": scope,
        "model": model or DEFAULT_MODEL,
        "created": today,
        "updated": today,
    })
    return f"{meta}\n\n{_agent_body(name, agent_type, scope, description)}"


def generate_agent_readme(name: str, agent_id: str, agent_type: AgentType, scope: str) -> str:
    return (
        f"# {name}\n\n"
        f"**ID:** `{agent_id}`\n"
        f"**Type:** {agent_type.value}\n"
        f"**Scope:** {scope}\n\n"
        "## Files\n\n"
        "| File | Purpose |\n"
        "|------|---------|\n"
        "| AGENT.md | Agent definition and capabilities |\n"
        "| MEMORY.md | Persistent working memory |\n"
        "| CONTEXT.md | Auto-generated context (do not edit) |\n"
        "| sessions/ | Conversation transcripts |\n"
    )


async def _create_agent(
    vault_path: Path,
    namespace: AgentNamespace,
    name: str,
    scope: str,
    agent_id: Optional[str],
    description: Optional[str],
    model: Optional[str],
) -> CreatedAgent:
    agent_type = namespace_type(namespace)
    agent_id = agent_id or generate_agent_id(name, agent_type)
    directory = agent_directory(Path(vault_path), namespace)
    sessions_dir = directory / SESSIONS_DIR
    sessions_dir.mkdir(parents=True, exist_ok=True)

    (directory / AGENT_FILE).write_text(
        generate_agent_markdown(name, agent_id, agent_type, scope, description, model),
        encoding="utf-8",
    )
    await AgentMemoryStore(directory).save(create_empty_memory(agent_id))
    (directory / "README.md").write_text(
        generate_agent_readme(name, agent_id, agent_type, scope), encoding="utf-8",
    )
    (sessions_dir / INDEX_FILE).write_text(json.dumps({"sessions": []}, indent=2), encoding="utf-8")

    logger.info("agent_templates.created", agent_id=agent_id, type=agent_type.value, path=str(directory))
    return CreatedAgent(
        id=agent_id,
        path=directory,
        files=[AGENT_FILE, "MEMORY.md", "README.md", f"{SESSIONS_DIR}/{INDEX_FILE}"],
    )


async def create_admin_agent(
    vault_path: Path,
    name: str = "Admin",
    scope: str = DEFAULT_SCOPE,
    agent_id: Optional[str] = None,
    description: Optional[str] = None,
    model: Optional[str] = None,
) -> CreatedAgent:
    return await _create_agent(vault_path, AdminNamespace(), name, scope, agent_id, description, model)


async def create_skill_agent(
    vault_path: Path,
    skill: str,
    name: Optional[str] = None,
    scope: str = DEFAULT_SCOPE,
    agent_id: Optional[str] = None,
    description: Optional[str] = None,
    model: Optional[str] = None,
) -> CreatedAgent:
    """Create ``40_Brain/agents/skills/<skill>/``; the default name is ``"<Skill> Agent"``."""
    return await _create_agent(
        vault_path,
        SkillNamespace(skill=skill.lower()),
        name or f"{skill} Agent",
        scope,
        agent_id,
        description,
        model,
    )


async def create_project_agent(
    vault_path: Path,
    project: str,
    name: Optional[str] = None,
    scope: Optional[str] = None,
    agent_id: Optional[str] = None,
    description: Optional[str] = None,
    model: Optional[str] = None,
) -> CreatedAgent:
    """Create ``30_Projects/<project>/agent/`` scoped to the project folder by default."""
    return await _create_agent(
        vault_path,
        ProjectNamespace(project=project),
        name or f"{project} Agent",
        scope or f"{PROJECTS_DIR}/{project}/**",
        agent_id,
        description,
        model,
    )


def agent_exists(vault_path: Path, namespace: AgentNamespace) -> bool:
    return (agent_directory(Path(vault_path), namespace) / AGENT_FILE).is_file()
