"""
In-process notifications for execution progress.

The coordinator publishes after the corresponding record is persisted.
Delivery is scheduled on the event loop rather than performed inline, so
a slow or failing subscriber can never stall or break scheduling.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set, Union

from controlroom.core.models import ExecutionStatus, StepStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class StepCompletedEvent:
    """A step settled (succeeded, failed, skipped or canceled)."""

    execution_id: str
    step_id: str
    status: StepStatus
    attempt: int
    run_id: Optional[str] = None
    error_message: Optional[str] = None
    ts: datetime = field(default_factory=_now)


@dataclass(slots=True)
class ExecutionStatusChangedEvent:
    """Overall execution status moved from one value to another."""

    execution_id: str
    runbook_id: str
    status: ExecutionStatus
    previous_status: Optional[ExecutionStatus] = None
    error_message: Optional[str] = None
    ts: datetime = field(default_factory=_now)


ExecutionEvent = Union[StepCompletedEvent, ExecutionStatusChangedEvent]
Subscriber = Callable[[ExecutionEvent], Union[None, Awaitable[Any]]]


class NotificationSink(Protocol):
    """Receives execution events; must not block or raise."""

    def publish(self, event: ExecutionEvent) -> None:  # pragma: no cover - interface contract
        ...


class NullSink:
    """Sink that discards every event."""

    def publish(self, event: ExecutionEvent) -> None:
        return None


class EventBus:
    """Fan-out sink delivering events to sync or async subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Future[Any]] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            Callable that removes the subscription
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: ExecutionEvent) -> None:
        loop = asyncio.get_running_loop()
        for callback in list(self._subscribers):
            loop.call_soon(self._deliver, callback, event)

    def _deliver(self, callback: Subscriber, event: ExecutionEvent) -> None:
        try:
            result = callback(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Event subscriber %r failed: %s", callback, exc)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Async event subscriber failed: %s", exc)

    async def drain(self) -> None:
        """Wait until every scheduled delivery has run."""
        # One loop iteration lets call_soon deliveries start.
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "EventBus",
    "ExecutionEvent",
    "ExecutionStatusChangedEvent",
    "NotificationSink",
    "NullSink",
    "StepCompletedEvent",
    "Subscriber",
]
