"""
Runtime protocol adapters.

An adapter speaks the kernel wire protocol for one runtime. The dispatcher
only needs three primitives from it:

- execute(execution_id, source, on_result, on_message): start running code
  and return immediately; relay each iopub message for it through on_message
  and deliver the outcome later by calling on_result
- send_interrupt(): ask the kernel to interrupt what it is running
- shutdown(): release sockets/processes; called once the runtime is dead

The dispatcher obtains adapters from an AdapterFactory, one per runtime,
on first use.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Protocol

from runtimed.schemas import ExecutionStatus, RuntimeSnapshot

logger = logging.getLogger(__name__)


class ResultCallback(Protocol):
    """How an adapter reports that an execution finished."""

    def __call__(
        self,
        execution_id: str,
        outcome: ExecutionStatus | str,
        reason: Optional[str] = None,
    ) -> object:
        ...


class MessageCallback(Protocol):
    """How an adapter hands over a kernel message (header, parent_header, content, metadata)."""

    def __call__(self, execution_id: str, message: Mapping[str, Any]) -> object:
        ...


class RuntimeAdapter(ABC):
    """
    Abstract base class for runtime protocol adapters.

    execute() must not block waiting for the kernel. One slow kernel must
    never stall the daemon, so outputs and the result are delivered through
    on_message and on_result from whatever thread the adapter reads replies on.
    """

    @abstractmethod
    def execute(
        self,
        execution_id: str,
        source: str,
        on_result: ResultCallback,
        on_message: MessageCallback,
    ) -> None:
        """
        Send code to the kernel.

        Args:
            execution_id: Id to report the outcome under
            source: Code to run
            on_result: Call with (execution_id, outcome, reason) when done
            on_message: Call with (execution_id, message) for every iopub
                message whose parent is this request

        Raises:
            Exception: If the request could not be sent at all
        """
        pass

    @abstractmethod
    def send_interrupt(self) -> None:
        """Interrupt the currently running code."""
        pass

    def shutdown(self) -> None:
        """Release resources held for this runtime."""
        pass


AdapterFactory = Callable[[RuntimeSnapshot], RuntimeAdapter]


class NoOpAdapter(RuntimeAdapter):
    """
    No-op adapter for dry-run mode.

    Every execution completes immediately without touching a kernel and
    without producing output.
    """

    def execute(
        self,
        execution_id: str,
        source: str,
        on_result: ResultCallback,
        on_message: MessageCallback,
    ) -> None:
        logger.debug(f"[DRY-RUN] Would execute {execution_id} ({len(source)} chars)")
        on_result(execution_id, ExecutionStatus.COMPLETED)

    def send_interrupt(self) -> None:
        logger.debug("[DRY-RUN] Would send interrupt")


class RecordingAdapter(RuntimeAdapter):
    """
    Adapter that records requests and leaves completion to the caller.

    Useful for tests and for driving the dispatcher by hand: inspect
    `executed` to see what was sent, then call `finish()` to deliver a result
    through the callback the dispatcher supplied. `emit()` relays a kernel
    message the same way.
    """

    def __init__(self, fail_execute: bool = False):
        self.fail_execute = fail_execute
        self.executed: list[tuple[str, str]] = []
        self.interrupts = 0
        self.shut_down = False
        self._callbacks: dict[str, ResultCallback] = {}
        self._message_callbacks: dict[str, MessageCallback] = {}
        self._lock = threading.Lock()

    def execute(
        self,
        execution_id: str,
        source: str,
        on_result: ResultCallback,
        on_message: MessageCallback,
    ) -> None:
        if self.fail_execute:
            raise ConnectionError("shell channel closed")
        with self._lock:
            self.executed.append((execution_id, source))
            self._callbacks[execution_id] = on_result
            self._message_callbacks[execution_id] = on_message

    def send_interrupt(self) -> None:
        with self._lock:
            self.interrupts += 1

    def shutdown(self) -> None:
        self.shut_down = True

    def finish(
        self,
        execution_id: str,
        outcome: ExecutionStatus | str = ExecutionStatus.COMPLETED,
        reason: Optional[str] = None,
    ) -> object:
        """Deliver a result for a previously executed request."""
        with self._lock:
            callback = self._callbacks.pop(execution_id)
        return callback(execution_id, outcome, reason)

    def emit(self, execution_id: str, message: Mapping[str, Any]) -> object:
        """Relay a kernel message for a previously executed request."""
        with self._lock:
            callback = self._message_callbacks[execution_id]
        return callback(execution_id, message)


def noop_factory(snapshot: RuntimeSnapshot) -> RuntimeAdapter:
    """AdapterFactory that gives every runtime a NoOpAdapter."""
    return NoOpAdapter()
