"""
Runtime Events: Typed notifications between runtime components.

Events are Pydantic models. ``event_type`` is derived from the class name:
the first CamelCase word becomes the namespace and the rest are joined with
underscores, so ``OperationNonRetryableEvent`` is ``operation:non_retryable``.

Dispatch model:
  - emit() calls matching listeners synchronously, in registration order
  - Listeners registered before an emit are always invoked for it
  - Listener exceptions are logged and do not propagate
  - A listener returning a coroutine has it scheduled on the running loop
"""

from __future__ import annotations

import asyncio
import fnmatch as _fnmatch_mod
import re
import uuid
from typing import Any, Callable

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventListener = Callable[["RuntimeEvent"], Any]

_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


class RuntimeEvent(BaseModel):
    """Base class for all runtime events."""

    event_type: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = [p.lower() for p in _CAMEL_SPLIT_RE.findall(name)]
            if len(parts) > 1:
                self.event_type = f"{parts[0]}:{'_'.join(parts[1:])}"
            else:
                self.event_type = parts[0] if parts else name.lower()


class _Subscription:
    """Internal subscription record."""

    __slots__ = ("sub_id", "pattern", "listener", "_compiled")

    def __init__(self, sub_id: str, pattern: str, listener: EventListener) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.listener = listener
        self._compiled: re.Pattern[str] = re.compile(_fnmatch_mod.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._compiled.match(event_type) is not None


class ListenerRegistry:
    """Ordered listener lists with fnmatch-style patterns.

      "attempt:*"    matches "attempt:start", "attempt:error"
      "operation:*"  matches every operation lifecycle event
      "*"            matches everything
    """

    def __init__(self) -> None:
        # dicts keep insertion order, which is the invocation order
        self._subscriptions: dict[str, _Subscription] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, pattern: str, listener: EventListener) -> str:
        """Register a listener. Returns an id for unsubscribe()."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, listener)
        logger.debug("events.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug("events.unsubscribed", sub_id=subscription_id)
        return removed is not None

    def unsubscribe_listener(self, pattern: str, listener: EventListener) -> int:
        """Remove every registration of ``listener`` under ``pattern``."""
        ids = [
            sub_id for sub_id, sub in self._subscriptions.items()
            if sub.pattern == pattern and sub.listener == listener
        ]
        for sub_id in ids:
            del self._subscriptions[sub_id]
        return len(ids)

    def emit(self, event: RuntimeEvent) -> None:
        for sub in list(self._subscriptions.values()):
            if sub.matches(event.event_type):
                self._invoke(sub, event)

    def _invoke(self, sub: _Subscription, event: RuntimeEvent) -> None:
        try:
            result = sub.listener(event)
        except Exception:
            logger.error(
                "events.listener_error",
                pattern=sub.pattern,
                event_type=event.event_type,
                exc_info=True,
            )
            return
        if asyncio.iscoroutine(result):
            try:
                task = asyncio.get_running_loop().create_task(result)
            except RuntimeError:
                result.close()
                logger.warning("events.async_listener_without_loop", event_type=event.event_type)
                return
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


# ---------------------------------------------------------------------------
# Retry events
# ---------------------------------------------------------------------------

class _OperationEvent(RuntimeEvent):
    operation_id: str
    operation_name: str


class OperationStartEvent(_OperationEvent):
    """Emitted once before the first attempt."""

    metadata: dict[str, Any] = Field(default_factory=dict)


class AttemptStartEvent(_OperationEvent):
    attempt: int


class OperationSuccessEvent(_OperationEvent):
    attempt: int


class AttemptErrorEvent(_OperationEvent):
    attempt: int
    error: str
    retryable: bool


class OperationNonRetryableEvent(_OperationEvent):
    attempt: int
    error: str


class RetryScheduledEvent(_OperationEvent):
    attempt: int
    delay_ms: int


class OperationEscalatedEvent(_OperationEvent):
    """Emitted when an operation gives up and is handed to the escalation handler."""

    attempts: int
    errors: list[str] = Field(default_factory=list)


class EscalationErrorEvent(_OperationEvent):
    error: str


def create_listener_registry() -> ListenerRegistry:
    return ListenerRegistry()

