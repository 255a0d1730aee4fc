"""
Retry Manager: Self-correction for unreliable agent operations.

Language-model calls time out, rate limits hit, disks hiccup. Operations
wrapped here are retried with exponential backoff; errors matching the
non-retryable taxonomy (scope violations, authentication failures, invalid
input) stop immediately. When an operation gives up it is escalated: the
configured escalation handler receives the full per-attempt error history.

``RetryManager.execute_with_retry`` never raises for a failed operation; it
returns a ``RetryResult``. ``with_retry`` is the stateless wrapper that
re-raises the last error instead.

``max_retries`` is the total number of attempts an operation gets.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import anthropic
import structlog

from brain.events import (
    AttemptErrorEvent,
    AttemptStartEvent,
    EscalationErrorEvent,
    EventListener,
    ListenerRegistry,
    OperationEscalatedEvent,
    OperationNonRetryableEvent,
    OperationStartEvent,
    OperationSuccessEvent,
    RetryScheduledEvent,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NON_RETRYABLE_ERRORS = ["SCOPE_VIOLATION", "AUTHENTICATION_FAILED", "INVALID_INPUT"]

# Provider errors that no amount of waiting will fix.
_NON_RETRYABLE_API_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
)

JITTER_FRACTION = 0.25


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay_ms: float = 1000.0,
        max_delay_ms: float = 30000.0,
        backoff_multiplier: float = 2.0,
        jitter: bool = True,
        non_retryable_errors: Optional[list[str]] = None,
    ):
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.non_retryable_errors = (
            list(NON_RETRYABLE_ERRORS) if non_retryable_errors is None else list(non_retryable_errors)
        )

    def copy(self, **overrides: Any) -> "RetryConfig":
        values = dict(vars(self))
        values.update(overrides)
        return RetryConfig(**values)

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_retries={self.max_retries}, "
            f"initial_delay_ms={self.initial_delay_ms}, max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, jitter={self.jitter})"
        )


class AgentOperationError(Exception):
    """An operation failure carrying a machine-readable code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


@dataclass
class ErrorContext:
    """One failed attempt."""
    message: str
    operation: str
    attempt: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    code: Optional[str] = None
    stack: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)


@dataclass
class RetryState:
    operation_id: str
    operation_name: str
    attempt: int = 0
    errors: list[ErrorContext] = field(default_factory=list)
    succeeded: bool = False
    escalated: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    result: Any = None


@dataclass
class RetryResult(Generic[T]):
    success: bool
    state: RetryState
    result: Optional[T] = None


@dataclass
class RetryStats:
    active_operations: int
    completed_operations: int
    successful_operations: int
    failed_operations: int
    escalated_operations: int
    total_retries: int


EscalationHandler = Callable[
    [str, str, list[ErrorContext], dict[str, Any]],
    Optional[Awaitable[None]],
]


def default_escalation_handler(
    operation_id: str,
    operation_name: str,
    errors: list[ErrorContext],
    metadata: dict[str, Any],
) -> None:
    logger.error(
        "retry.escalation",
        operation_id=operation_id,
        operation=operation_name,
        attempts=len(errors),
        last_error=errors[-1].message if errors else None,
    )


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> int:
    """
    Delay in milliseconds before retrying after failed attempt ``attempt`` (1-indexed).

        delay = min(initial_delay_ms * backoff_multiplier ^ (attempt - 1), max_delay_ms)

    With jitter enabled up to 25% of the delay is added on top.
    """
    delay = config.initial_delay_ms * (config.backoff_multiplier ** (attempt - 1))
    delay = min(delay, config.max_delay_ms)
    if config.jitter:
        delay += delay * JITTER_FRACTION * random.random()
    return int(delay)


def _error_code(error: BaseException | str) -> Optional[str]:
    if isinstance(error, str):
        return None
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else None


def is_retryable_error(error: BaseException | str, config: Optional[RetryConfig] = None) -> bool:
    """
    Decide whether a failure is worth another attempt.

    Not retryable:
    - messages or codes containing a configured non-retryable marker
    - Anthropic authentication, permission and bad-request errors

    Everything else is treated as transient.
    """
    if isinstance(error, _NON_RETRYABLE_API_ERRORS):
        return False
    markers = config.non_retryable_errors if config is not None else NON_RETRYABLE_ERRORS
    message = error if isinstance(error, str) else str(error)
    code = _error_code(error)
    for marker in markers:
        if marker in message or code == marker:
            return False
    return True


class RetryManager:
    """
    Runs operations with retries, tracks their state and escalates failures.

    Notifications go to ``events`` (a ListenerRegistry): operation:start,
    attempt:start, attempt:error, retry:scheduled, operation:success,
    operation:non_retryable, operation:escalated and escalation:error.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        escalation_handler: Optional[EscalationHandler] = None,
        events: Optional[ListenerRegistry] = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._escalation_handler: EscalationHandler = escalation_handler or default_escalation_handler
        self.events = events or ListenerRegistry()
        self._active: dict[str, RetryState] = {}
        self._completed: list[RetryState] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, pattern: str, listener: EventListener) -> str:
        return self.events.subscribe(pattern, listener)

    def off(self, subscription_id: str) -> bool:
        return self.events.unsubscribe(subscription_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation_id: str,
        operation_name: str,
        fn: Callable[[], Awaitable[T]],
        metadata: Optional[dict[str, Any]] = None,
    ) -> RetryResult[T]:
        metadata = dict(metadata or {})
        config = self._config
        state = RetryState(operation_id=operation_id, operation_name=operation_name)
        self._active[operation_id] = state
        self.events.emit(OperationStartEvent(
            operation_id=operation_id, operation_name=operation_name, metadata=metadata,
        ))

        while state.attempt < config.max_retries:
            state.attempt += 1
            self.events.emit(AttemptStartEvent(
                operation_id=operation_id, operation_name=operation_name, attempt=state.attempt,
            ))
            try:
                result = await fn()
            except Exception as e:
                context = ErrorContext(
                    message=str(e) or type(e).__name__,
                    operation=operation_name,
                    attempt=state.attempt,
                    code=_error_code(e),
                    stack="".join(traceback.format_exception(e)),
                    metadata=metadata,
                    exception=e,
                )
                state.errors.append(context)
                retryable = is_retryable_error(e, config)
                logger.warning(
                    "retry.attempt_failed",
                    operation_id=operation_id,
                    operation=operation_name,
                    attempt=state.attempt,
                    max_retries=config.max_retries,
                    error_type=type(e).__name__,
                    error=context.message[:200],
                    retryable=retryable,
                )
                self.events.emit(AttemptErrorEvent(
                    operation_id=operation_id, operation_name=operation_name,
                    attempt=state.attempt, error=context.message, retryable=retryable,
                ))
                if not retryable:
                    self.events.emit(OperationNonRetryableEvent(
                        operation_id=operation_id, operation_name=operation_name,
                        attempt=state.attempt, error=context.message,
                    ))
                    break
                if state.attempt < config.max_retries:
                    delay_ms = calculate_backoff_delay(state.attempt, config)
                    self.events.emit(RetryScheduledEvent(
                        operation_id=operation_id, operation_name=operation_name,
                        attempt=state.attempt, delay_ms=delay_ms,
                    ))
                    await asyncio.sleep(delay_ms / 1000)
            else:
                state.succeeded = True
                state.result = result
                state.end_time = datetime.now(timezone.utc)
                self._finish(state)
                self.events.emit(OperationSuccessEvent(
                    operation_id=operation_id, operation_name=operation_name, attempt=state.attempt,
                ))
                if state.attempt > 1:
                    logger.info(
                        "retry.recovered", operation_id=operation_id, attempts=state.attempt,
                    )
                return RetryResult(success=True, state=state, result=result)

        await self._escalate(state, metadata)
        return RetryResult(success=False, state=state)

    async def _escalate(self, state: RetryState, metadata: dict[str, Any]) -> None:
        state.escalated = True
        state.end_time = datetime.now(timezone.utc)
        self.events.emit(OperationEscalatedEvent(
            operation_id=state.operation_id,
            operation_name=state.operation_name,
            attempts=state.attempt,
            errors=[e.message for e in state.errors],
        ))
        try:
            outcome = self._escalation_handler(
                state.operation_id, state.operation_name, list(state.errors), metadata,
            )
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "retry.escalation_handler_failed",
                operation_id=state.operation_id,
                error=str(e),
            )
            self.events.emit(EscalationErrorEvent(
                operation_id=state.operation_id,
                operation_name=state.operation_name,
                error=str(e),
            ))
        self._finish(state)

    def _finish(self, state: RetryState) -> None:
        self._active.pop(state.operation_id, None)
        self._completed.append(state)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_active_operations(self) -> list[RetryState]:
        return list(self._active.values())

    def get_completed_operations(self, limit: Optional[int] = None) -> list[RetryState]:
        if limit:
            return self._completed[-limit:]
        return list(self._completed)

    def get_operation_state(self, operation_id: str) -> Optional[RetryState]:
        """Active state first, then the most recent completed run with this id."""
        if operation_id in self._active:
            return self._active[operation_id]
        for state in reversed(self._completed):
            if state.operation_id == operation_id:
                return state
        return None

    def clear_history(self) -> None:
        self._completed = []

    def get_stats(self) -> RetryStats:
        completed = self._completed
        return RetryStats(
            active_operations=len(self._active),
            completed_operations=len(completed),
            successful_operations=sum(1 for s in completed if s.succeeded),
            failed_operations=sum(1 for s in completed if not s.succeeded),
            escalated_operations=sum(1 for s in completed if s.escalated),
            total_retries=sum(max(0, s.attempt - 1) for s in completed),
        )

    # ------------------------------------------------------------------
    # Runtime configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> RetryConfig:
        return self._config.copy()

    def update_config(self, **changes: Any) -> RetryConfig:
        self._config = self._config.copy(**changes)
        logger.debug("retry.config_updated", **{k: v for k, v in changes.items() if k != "non_retryable_errors"})
        return self.config

    def set_escalation_handler(self, handler: EscalationHandler) -> None:
        self._escalation_handler = handler


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    operation_name: str = "anonymous",
) -> T:
    """Run ``fn`` with retries and return its result, re-raising the last error on failure."""
    manager = RetryManager(config)
    operation_id = f"op-{uuid.uuid4().hex[:12]}"
    outcome = await manager.execute_with_retry(operation_id, operation_name, fn)
    if outcome.success:
        return outcome.result  # type: ignore[return-value]
    last = outcome.state.errors[-1] if outcome.state.errors else None
    if last is not None and last.exception is not None:
        raise last.exception
    raise AgentOperationError(last.message if last else "Operation failed after retries")


def retryable(config: Optional[RetryConfig] = None) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of ``with_retry`` for async functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(lambda: func(*args, **kwargs), config, operation_name=func.__name__)

        return wrapper

    return decorator
