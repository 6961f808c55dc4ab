"""Event bus for RunWarden.

Executors and the self-healing engine communicate through immutable event
records published on an in-process bus. Handlers may be plain functions or
coroutines; coroutine handlers are scheduled as tasks so a slow subscriber
never blocks the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from runwarden.models import (
    Alert,
    AlertRule,
    ExecutionStatus,
    HealingStatus,
    StepStatus,
    utc_now,
)


class Event(BaseModel):
    """Base class for all events."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)


class StepCompleted(Event):
    """A step reached a terminal status."""

    execution_id: str
    step_id: str
    step_name: str
    status: StepStatus
    run_id: str | None = None
    duration: timedelta | None = None
    error_message: str | None = None


class ExecutionStatusChanged(Event):
    """A runbook execution changed status."""

    execution_id: str
    runbook_id: str
    old_status: ExecutionStatus
    new_status: ExecutionStatus


class AlertFired(Event):
    """An alert fired in the alert engine."""

    alert: Alert
    rule: AlertRule


class AlertResolved(Event):
    """A previously fired alert was resolved."""

    alert: Alert


class HealingTriggered(Event):
    """A remediation runbook was started for a self-healing rule."""

    healing_execution_id: str
    rule_id: str
    rule_name: str
    alert_id: str | None = None
    remediation_execution_id: str | None = None


class HealingCompleted(Event):
    """A self-healing execution finished."""

    healing_execution_id: str
    rule_id: str
    status: HealingStatus
    duration: timedelta | None = None
    error_message: str | None = None


class ApprovalRequired(Event):
    """A self-healing execution is waiting for a human decision."""

    healing_execution_id: str
    rule_id: str
    rule_name: str
    alert_id: str | None = None


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """In-process publish/subscribe for events."""

    def __init__(self):
        self._handlers: dict[type[Event], list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        """Register a handler for an event type."""
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_type: type[Event]) -> int:
        return len(self._handlers.get(event_type, []))

    def emit(self, event: Event) -> None:
        """Deliver an event to every subscriber of its type.

        Handler errors are logged and never propagate to the emitter.
        """
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {type(event).__name__}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event handler failed: {exc}")

    async def drain(self) -> None:
        """Wait for all pending async handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
