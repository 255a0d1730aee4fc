"""
Prompt Assembly: Token-budgeted system prompts.

A system prompt is built from up to four components, in order:

  agent         the identity rendered from AGENT.md
  memory        non-empty sections of MEMORY.md
  context       the body of CONTEXT.md
  conversation  recent history (only for assemble_prompt_with_history)

Each component is truncated to its own budget, then to whatever remains of
the total budget after the components before it. Token counts are the coarse
``ceil(chars / 4)`` estimate; the default budgets assume it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog

from brain._markdown import strip_frontmatter
from brain.agent.definition import AgentDefinition, load_agent_definition
from brain.chat import build_system_prompt
from brain.context.generator import load_context
from brain.memory.agent_memory import AgentMemory, AgentMemoryStore

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n\n[...truncated...]"
COMPONENT_SEPARATOR = "\n\n---\n\n"


@dataclass
class TokenLimits:
    total: int = 8000
    agent: int = 2000
    memory: int = 2000
    context: int = 3000
    conversation: int = 1000

    @property
    def components_total(self) -> int:
        return self.agent + self.memory + self.context + self.conversation

    def validate(self) -> "TokenLimits":
        """Raise ValueError when the component budgets exceed the total."""
        components = self.components_total
        if components > self.total:
            raise ValueError(
                f"Component token budgets ({components}) exceed the total budget ({self.total})"
            )
        return self


@dataclass
class PromptComponent:
    name: str
    text: str
    tokens: int
    budget: int
    truncated: bool = False


@dataclass
class AssembledPrompt:
    system_prompt: str
    components: list[PromptComponent] = field(default_factory=list)
    total_tokens: int = 0
    within_limit: bool = True

    def component(self, name: str) -> Optional[PromptComponent]:
        for c in self.components:
            if c.name == name:
                return c
        return None


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> tuple[str, bool]:
    """Fit ``text`` into ``max_tokens``. Returns ``(text, truncated)``.

    Cuts at the last line break when one falls in the final fifth of the
    allowed length, otherwise at the character limit, and appends a marker.
    The marker counts against the limit; when there is no room for it the
    result is empty.
    """
    if estimate_tokens(text) <= max_tokens:
        return text, False
    max_chars = max(0, max_tokens) * CHARS_PER_TOKEN - len(TRUNCATION_MARKER)
    if max_chars <= 0:
        return "", True
    cut = text[:max_chars]
    last_newline = cut.rfind("\n")
    if last_newline > max_chars * 0.8:
        cut = cut[:last_newline]
    return cut + TRUNCATION_MARKER, True


def format_agent_for_prompt(agent: AgentDefinition) -> str:
    return build_system_prompt(agent)


def format_memory_for_prompt(memory: AgentMemory) -> str:
    lines = ["## Working Memory", ""]
    for section in memory.sections:
        if section.content.strip():
            lines.append(f"### {section.title}")
            lines.append("")
            lines.append(section.content)
            lines.append("")
    return "\n".join(lines)


def format_context_for_prompt(context_markdown: str) -> str:
    return strip_frontmatter(context_markdown).strip()


class _Budget:
    """Tracks what is left of the total budget as components are added.

    Every component after the first also pays for the separator before it.
    """

    def __init__(self, total: int) -> None:
        self.remaining = total
        self.components: list[PromptComponent] = []

    def add(self, name: str, text: Optional[str], budget: int) -> None:
        if not text or budget <= 0:
            return
        separator = estimate_tokens(COMPONENT_SEPARATOR) if self.components else 0
        allowed = min(budget, self.remaining - separator)
        if allowed <= 0:
            logger.debug("prompt.component_dropped", component=name, reason="total_budget_exhausted")
            return
        fitted, truncated = truncate_to_token_limit(text, allowed)
        if not fitted:
            logger.debug("prompt.component_dropped", component=name, reason="budget_below_marker")
            return
        tokens = estimate_tokens(fitted)
        self.remaining -= tokens + separator
        self.components.append(PromptComponent(name, fitted, tokens, allowed, truncated))


def _finish(components: list[PromptComponent], limits: TokenLimits) -> AssembledPrompt:
    system_prompt = COMPONENT_SEPARATOR.join(c.text for c in components if c.text)
    total = estimate_tokens(system_prompt)
    return AssembledPrompt(
        system_prompt=system_prompt,
        components=components,
        total_tokens=total,
        within_limit=total <= limits.total,
    )


async def _load_components(agent_path: Path, limits: TokenLimits) -> _Budget:
    budget = _Budget(limits.total)

    agent = await load_agent_definition(agent_path)
    if agent is not None:
        budget.add("agent", format_agent_for_prompt(agent), limits.agent)

    if limits.memory > 0:
        memory = await AgentMemoryStore(agent_path).load()
        if memory is not None:
            budget.add("memory", format_memory_for_prompt(memory), limits.memory)

    if limits.context > 0:
        context = await load_context(agent_path)
        if context is not None:
            budget.add("context", format_context_for_prompt(context), limits.context)

    return budget


async def assemble_prompt(agent_path: Path, limits: Optional[TokenLimits] = None) -> AssembledPrompt:
    limits = limits or TokenLimits()
    budget = await _load_components(Path(agent_path), limits)
    return _finish(budget.components, limits)


async def assemble_prompt_with_history(
    agent_path: Path,
    conversation_history: str,
    limits: Optional[TokenLimits] = None,
) -> AssembledPrompt:
    limits = limits or TokenLimits()
    budget = await _load_components(Path(agent_path), limits)
    budget.add("conversation", conversation_history, limits.conversation)
    prompt = _finish(budget.components, limits)
    logger.debug(
        "prompt.assembled",
        agent_path=str(agent_path),
        total_tokens=prompt.total_tokens,
        components=[c.name for c in prompt.components],
    )
    return prompt


async def get_system_prompt(
    agent_path: Path,
    include_memory: bool = True,
    include_context: bool = True,
    max_tokens: Optional[int] = None,
) -> str:
    defaults = TokenLimits()
    limits = TokenLimits(
        total=max_tokens if max_tokens is not None else defaults.total,
        agent=defaults.agent,
        memory=defaults.memory if include_memory else 0,
        context=defaults.context if include_context else 0,
        conversation=0,
    )
    prompt = await assemble_prompt(agent_path, limits)
    return prompt.system_prompt


def get_prompt_stats(prompt: AssembledPrompt) -> str:
    lines = ["Prompt Stats:"]
    for c in prompt.components:
        status = " (truncated)" if c.truncated else ""
        lines.append(f"  {c.name}: {c.tokens} tokens{status}")
    lines.append(f"  Total: {prompt.total_tokens} tokens")
    lines.append(f"  Within limit: {prompt.within_limit}")
    return "\n".join(lines)
