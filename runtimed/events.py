"""
Transition events - relaying execution lifecycle changes.

Every ledger transition the dispatcher makes is published as a
TransitionEvent. The transport layer subscribes to relay them to clients.

Each event is also written to the 'runtimed.events' logger with
`extra={"event": ..., "metadata": ...}`, which StructuredFormatter turns into
a JSON log line. That log is the audit trail even with no subscribers.

Usage:
    bus = EventBus()
    bus.subscribe(lambda event: websocket.send(event.to_dict()))
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from runtimed.schemas import ExecutionRecord, ExecutionStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[["TransitionEvent"], None]


@dataclass(frozen=True)
class TransitionEvent:
    """
    An execution entered a new status.

    Attributes:
        execution_id: The execution that changed
        runtime_id: The runtime it belongs to
        status: The status entered
        previous: The status left (None when first queued)
        at: When the transition was recorded
        code_cell_id: Associated code cell, if any
        reason: Explanation for terminal transitions, if any
    """
    execution_id: str
    runtime_id: str
    status: ExecutionStatus
    previous: Optional[ExecutionStatus]
    at: datetime
    code_cell_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def event_type(self) -> str:
        return f"execution.{self.status.value}"

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "TransitionEvent":
        """Build the event for the latest transition of a record."""
        last = record.transitions[-1]
        return cls(
            execution_id=record.execution_id,
            runtime_id=record.runtime_id,
            status=last.status,
            previous=last.previous,
            at=last.at,
            code_cell_id=record.code_cell_id,
            reason=last.reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "event_type": self.event_type,
            "execution_id": self.execution_id,
            "runtime_id": self.runtime_id,
            "status": self.status.value,
            "at": self.at.isoformat(),
        }
        if self.previous is not None:
            result["previous"] = self.previous.value
        if self.code_cell_id is not None:
            result["code_cell_id"] = self.code_cell_id
        if self.reason is not None:
            result["reason"] = self.reason
        return result


class EventBus:
    """
    Fan-out of TransitionEvents to subscribers.

    Subscribers run synchronously on the publishing thread. A subscriber that
    raises is logged and skipped; it never affects the transition that was
    already recorded, nor the other subscribers.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Add a subscriber.

        Returns:
            A function that removes the subscriber again
        """
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: TransitionEvent) -> None:
        """Log the event, then deliver it to every subscriber."""
        logger.info(
            f"{event.event_type} {event.execution_id} on runtime {event.runtime_id}",
            extra={"event": event.event_type, "metadata": event.to_dict()},
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {event.event_type} {event.execution_id}")
