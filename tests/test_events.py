"""Tests for brain.events: ListenerRegistry and typed runtime events."""

from __future__ import annotations

import asyncio

import pytest

from brain.events import (
    AttemptErrorEvent,
    EscalationErrorEvent,
    ListenerRegistry,
    OperationEscalatedEvent,
    OperationNonRetryableEvent,
    OperationStartEvent,
    RetryScheduledEvent,
    create_listener_registry,
)


# ---------------------------------------------------------------------------
# Event type derivation
# ---------------------------------------------------------------------------


class TestEventType:

    @pytest.mark.parametrize("event,expected", [
        (OperationStartEvent(operation_id="o", operation_name="n"), "operation:start"),
        (OperationNonRetryableEvent(operation_id="o", operation_name="n", attempt=1, error="e"),
         "operation:non_retryable"),
        (RetryScheduledEvent(operation_id="o", operation_name="n", attempt=1, delay_ms=10),
         "retry:scheduled"),
        (EscalationErrorEvent(operation_id="o", operation_name="n", error="e"), "escalation:error"),
    ])
    def test_derived_from_class_name(self, event, expected) -> None:
        assert event.event_type == expected

    def test_escalated_event_carries_messages(self) -> None:
        event = OperationEscalatedEvent(
            operation_id="o", operation_name="n", attempts=2, errors=["a", "b"],
        )
        assert event.event_type == "operation:escalated"
        assert event.errors == ["a", "b"]


# ---------------------------------------------------------------------------
# ListenerRegistry
# ---------------------------------------------------------------------------


def _attempt_error() -> AttemptErrorEvent:
    return AttemptErrorEvent(operation_id="o", operation_name="n", attempt=1, error="e", retryable=True)


class TestListenerRegistry:

    def test_patterns(self) -> None:
        registry = create_listener_registry()
        hits: list[str] = []
        registry.subscribe("attempt:*", lambda e: hits.append("attempt"))
        registry.subscribe("operation:*", lambda e: hits.append("operation"))
        registry.subscribe("*", lambda e: hits.append("all"))

        registry.emit(_attempt_error())

        assert hits == ["attempt", "all"]

    def test_registration_order(self) -> None:
        registry = ListenerRegistry()
        order: list[int] = []
        for i in range(5):
            registry.subscribe("*", lambda e, i=i: order.append(i))
        registry.emit(_attempt_error())
        assert order == [0, 1, 2, 3, 4]

    def test_listener_errors_are_isolated(self) -> None:
        registry = ListenerRegistry()
        hits: list[str] = []

        def broken(event) -> None:
            raise RuntimeError("boom")

        registry.subscribe("*", broken)
        registry.subscribe("*", lambda e: hits.append(e.event_type))
        registry.emit(_attempt_error())
        assert hits == ["attempt:error"]

    def test_unsubscribe(self) -> None:
        registry = ListenerRegistry()
        hits: list[str] = []
        sub_id = registry.subscribe("*", hits.append)
        assert registry.subscription_count == 1
        assert registry.unsubscribe(sub_id)
        assert not registry.unsubscribe(sub_id)
        registry.emit(_attempt_error())
        assert hits == []

    def test_unsubscribe_listener(self) -> None:
        registry = ListenerRegistry()

        def listener(event) -> None:
            pass

        registry.subscribe("attempt:*", listener)
        registry.subscribe("attempt:*", listener)
        registry.subscribe("*", listener)
        assert registry.unsubscribe_listener("attempt:*", listener) == 2
        assert registry.subscription_count == 1

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self) -> None:
        registry = ListenerRegistry()
        done = asyncio.Event()

        async def listener(event) -> None:
            done.set()

        registry.subscribe("*", listener)
        registry.emit(_attempt_error())
        await asyncio.wait_for(done.wait(), timeout=1.0)

    def test_async_listener_without_loop_is_dropped(self) -> None:
        registry = ListenerRegistry()
        called: list[bool] = []

        async def listener(event) -> None:
            called.append(True)

        registry.subscribe("*", listener)
        registry.emit(_attempt_error())
        assert called == []
