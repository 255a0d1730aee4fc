# brain/config.py
"""
Configuration for the Brain agent runtime.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Each subsystem owns one
settings class; ``BrainConfig`` composes them and is handed to the runtime.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above brain/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_NON_RETRYABLE_ERRORS = ["SCOPE_VIOLATION", "AUTHENTICATION_FAILED", "INVALID_INPUT"]


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → (parsed by pydantic-settings before this runs)
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class VaultConfig(BaseSettings):
    """Where the knowledge vault lives on disk."""

    vault_path: Path = Field(Path("./vault"), alias="BRAIN_VAULT_PATH")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}


class ClaudeConfig(BaseSettings):
    """Configuration for the language-model connection.

    Unlike most settings a missing API key is not an error: the chat layer
    falls back to an informative reply when no model is configured.
    """

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-20250514", alias="BRAIN_MODEL")
    max_tokens: int = Field(4096, alias="BRAIN_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="BRAIN_REQUEST_TIMEOUT_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ClaudeConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        if self.api_key is not None and not self.api_key.strip():
            self.api_key = None
        return self

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class RetrySettings(BaseSettings):
    """Backoff and escalation policy for unreliable operations."""

    max_retries: int = Field(3, alias="BRAIN_RETRY_MAX_RETRIES")
    initial_delay_ms: float = Field(1000.0, alias="BRAIN_RETRY_INITIAL_DELAY_MS")
    max_delay_ms: float = Field(30000.0, alias="BRAIN_RETRY_MAX_DELAY_MS")
    backoff_multiplier: float = Field(2.0, alias="BRAIN_RETRY_BACKOFF_MULTIPLIER")
    jitter: bool = Field(True, alias="BRAIN_RETRY_JITTER")
    non_retryable_errors: StrList = Field(
        default_factory=lambda: list(DEFAULT_NON_RETRYABLE_ERRORS),
        alias="BRAIN_RETRY_NON_RETRYABLE_ERRORS",
    )

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}

    @model_validator(mode="after")
    def normalize_policy(self) -> "RetrySettings":
        self.max_retries = max(1, int(self.max_retries))
        self.initial_delay_ms = max(0.0, float(self.initial_delay_ms))
        self.max_delay_ms = max(self.initial_delay_ms, float(self.max_delay_ms))
        self.backoff_multiplier = max(1.0, float(self.backoff_multiplier))
        return self

    def to_retry_config(self):
        """Build the runtime RetryConfig consumed by the retry manager."""
        # Deferred import: harness.retry is heavier than settings and not always needed.
        from brain.harness.retry import RetryConfig

        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            non_retryable_errors=list(self.non_retryable_errors),
        )


class PromptConfig(BaseSettings):
    """Token budgets for prompt assembly (1 token ≈ 4 chars)."""

    total_tokens: int = Field(8000, alias="BRAIN_PROMPT_TOTAL_TOKENS")
    agent_tokens: int = Field(2000, alias="BRAIN_PROMPT_AGENT_TOKENS")
    memory_tokens: int = Field(2000, alias="BRAIN_PROMPT_MEMORY_TOKENS")
    context_tokens: int = Field(3000, alias="BRAIN_PROMPT_CONTEXT_TOKENS")
    conversation_tokens: int = Field(1000, alias="BRAIN_PROMPT_CONVERSATION_TOKENS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}

    @model_validator(mode="after")
    def check_budgets(self) -> "PromptConfig":
        for name in ("total_tokens", "agent_tokens", "memory_tokens",
                     "context_tokens", "conversation_tokens"):
            setattr(self, name, max(0, int(getattr(self, name))))
        components = (
            self.agent_tokens + self.memory_tokens
            + self.context_tokens + self.conversation_tokens
        )
        if components > self.total_tokens:
            raise ValueError(
                f"Component token budgets ({components}) exceed the total "
                f"budget ({self.total_tokens})"
            )
        return self

    def to_token_limits(self):
        from brain.harness.prompt import TokenLimits

        return TokenLimits(
            total=self.total_tokens,
            agent=self.agent_tokens,
            memory=self.memory_tokens,
            context=self.context_tokens,
            conversation=self.conversation_tokens,
        ).validate()


class ContextConfig(BaseSettings):
    """Context digest freshness and conversation window."""

    max_age_hours: float = Field(24.0, alias="BRAIN_CONTEXT_MAX_AGE_HOURS")
    item_limit: int = Field(100, alias="BRAIN_CONTEXT_ITEM_LIMIT")
    history_messages: int = Field(20, alias="BRAIN_CHAT_HISTORY_MESSAGES")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ContextConfig":
        self.max_age_hours = max(0.0, float(self.max_age_hours))
        self.item_limit = max(1, int(self.item_limit))
        self.history_messages = max(1, int(self.history_messages))
        return self


class LoggingConfig(BaseSettings):
    """Log level and renderer for processes that host a runtime."""

    level: str = Field("WARNING", alias="BRAIN_LOG_LEVEL")
    json_output: bool = Field(False, alias="BRAIN_LOG_JSON")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}

    @model_validator(mode="after")
    def normalize_level(self) -> "LoggingConfig":
        self.level = self.level.strip().upper() or "WARNING"
        return self


class SessionConfig(BaseSettings):
    """Session housekeeping."""

    cleanup_max_age_days: int = Field(30, alias="BRAIN_SESSION_CLEANUP_DAYS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore"}


class BrainConfig:
    """
    Master configuration that composes all subsystem configs.

    Constructed once at process start and passed to the runtime.
    """

    def __init__(self, vault_path: Optional[Path] = None):
        self.vault = VaultConfig()
        self.claude = ClaudeConfig()
        self.retry = RetrySettings()
        self.prompt = PromptConfig()
        self.context = ContextConfig()
        self.session = SessionConfig()
        self.logging = LoggingConfig()

        if vault_path is not None:
            self.vault.vault_path = Path(vault_path)
        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Resolve a relative vault path against the project root, not the CWD."""
        path = self.vault.vault_path
        if not path.is_absolute():
            path = (_PROJECT_ROOT / path).resolve()
        self.vault.vault_path = path

    @property
    def vault_path(self) -> Path:
        return self.vault.vault_path

    def __repr__(self) -> str:
        return (
            f"BrainConfig(vault={self.vault.vault_path}, "
            f"model={self.claude.model}, "
            f"llm_configured={self.claude.is_configured}, "
            f"max_retries={self.retry.max_retries})"
        )
