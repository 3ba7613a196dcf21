"""
ExecutionDispatcher - Per-runtime FIFO execution state machine.

The Dispatcher implements:
- submit: mint an id, record it queued, append to the runtime's queue
- advance: when the runtime is idle, start the head of its queue
- complete: record the outcome reported by the adapter, then advance
- interrupt: cancel a queued execution, or signal the kernel for a running one
- cascade_cancel: fail everything pending on a runtime that died
- close_orphans: end executions a previous daemon process left unfinished

Execution flow for one runtime:
1. submit() records `queued` and appends the id to the lane queue
2. advance() marks the runtime busy, records `running`, calls adapter.execute()
3. The adapter relays kernel output through the ledger's record_message(),
   then calls complete() with the outcome
4. complete() records the terminal state, marks the runtime idle, points the
   code cell at the execution, and advances to the next queued id

Concurrency:
Each runtime has a lane guarded by its own RLock. submit, advance, complete,
interrupt and cascade_cancel for one runtime are serialized on that lock;
lanes never share a lock, so runtimes do not block each other. Waiting for a
kernel never happens under the lock: execute() returns immediately and the
result arrives later through complete().

Lanes exist only for registered, live runtimes that have been submitted to.
A lane is dropped once its runtime is dead and its work cancelled.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from runtimed.associations import AssociationIndex
from runtimed.errors import InvalidTransition, RuntimeDead
from runtimed.events import EventBus, TransitionEvent
from runtimed.ids import IdGenerator
from runtimed.ledger import ExecutionLedger, parse_outcome
from runtimed.protocol import AdapterFactory, RuntimeAdapter, noop_factory
from runtimed.registry import RuntimeRegistry
from runtimed.schemas import ExecutionRecord, ExecutionStatus, RuntimeSnapshot, RuntimeStatus

logger = logging.getLogger(__name__)

RUNTIME_DIED = "runtime died"
INTERRUPTED_BEFORE_START = "interrupted before start"
DAEMON_RESTARTED = "daemon restarted"


@dataclass
class _Lane:
    """Dispatch state for one runtime. Only touched under `lock`."""
    runtime_id: str
    lock: threading.RLock = field(default_factory=threading.RLock)
    queue: deque = field(default_factory=deque)
    current: Optional[str] = None
    adapter: Optional[RuntimeAdapter] = None
    # Set while adapter.execute() runs, so a synchronous completion does not
    # recurse into advance; the dispatch loop picks up the next item instead.
    dispatching: bool = False


class ExecutionDispatcher:
    """
    Drives executions through their lifecycle, one runtime lane at a time.

    Usage:
        registry = RuntimeRegistry()
        ledger = ExecutionLedger()
        dispatcher = ExecutionDispatcher(registry, ledger, adapter_factory=connect)

        runtime_id = registry.register(connection_info)
        registry.mark_ready(runtime_id)

        execution_id = dispatcher.submit(runtime_id, "1 + 1", code_cell_id="cell-1")
        # ... the adapter for runtime_id calls dispatcher.complete(execution_id, "completed")

    The dispatcher subscribes itself to the registry: a runtime going dead
    triggers cascade_cancel(), a runtime becoming ready triggers advance().
    """

    def __init__(
        self,
        registry: RuntimeRegistry,
        ledger: ExecutionLedger,
        adapter_factory: Optional[AdapterFactory] = None,
        associations: Optional[AssociationIndex] = None,
        events: Optional[EventBus] = None,
        ids: Optional[IdGenerator] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: RuntimeRegistry the runtimes live in
            ledger: ExecutionLedger to record transitions in
            adapter_factory: Builds the protocol adapter for a runtime
                (default: NoOpAdapter, every execution completes at once)
            associations: AssociationIndex to update on terminal transitions
            events: EventBus to publish transitions on
            ids: Identifier generator for execution ids
        """
        self._registry = registry
        self._ledger = ledger
        self._adapter_factory = adapter_factory or noop_factory
        self._associations = associations
        self._events = events
        self._ids = ids or IdGenerator()
        self._lanes: dict[str, _Lane] = {}
        self._lanes_guard = threading.Lock()

        registry.add_listener(self._on_runtime_status)

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    def _lane(self, runtime_id: str) -> _Lane:
        with self._lanes_guard:
            lane = self._lanes.get(runtime_id)
            if lane is None:
                lane = _Lane(runtime_id=runtime_id)
                self._lanes[runtime_id] = lane
            return lane

    def _existing_lane(self, runtime_id: str) -> Optional[_Lane]:
        with self._lanes_guard:
            return self._lanes.get(runtime_id)

    def _drop_lane(self, lane: _Lane) -> None:
        with self._lanes_guard:
            if self._lanes.get(lane.runtime_id) is lane:
                del self._lanes[lane.runtime_id]

    def _adapter_for(self, lane: _Lane, snapshot: RuntimeSnapshot) -> RuntimeAdapter:
        if lane.adapter is None:
            lane.adapter = self._adapter_factory(snapshot)
        return lane.adapter

    def lane_count(self) -> int:
        """Number of runtimes with dispatch state held."""
        with self._lanes_guard:
            return len(self._lanes)

    def queue_depth(self, runtime_id: str) -> int:
        """Number of executions waiting (not running) on a runtime."""
        self._registry.lookup(runtime_id)
        lane = self._existing_lane(runtime_id)
        if lane is None:
            return 0
        with lane.lock:
            return len(lane.queue)

    def running(self, runtime_id: str) -> Optional[str]:
        """Id of the execution currently running on a runtime, if any."""
        self._registry.lookup(runtime_id)
        lane = self._existing_lane(runtime_id)
        if lane is None:
            return None
        with lane.lock:
            return lane.current

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _publish(self, record: ExecutionRecord) -> None:
        if self._events is not None:
            self._events.publish(TransitionEvent.from_record(record))

    def _terminated(self, record: ExecutionRecord) -> None:
        """Bookkeeping shared by every terminal transition."""
        if self._associations is not None and record.code_cell_id is not None:
            self._associations.attach(record.code_cell_id, record.execution_id)
        self._publish(record)

    def submit(
        self,
        runtime_id: str,
        source: str,
        code_cell_id: Optional[str] = None,
    ) -> str:
        """
        Queue code for a runtime.

        The execution starts right away if the runtime is idle with nothing
        ahead of it; otherwise it waits its turn.

        Returns:
            The new execution id

        Raises:
            UnknownRuntime: If the runtime is not registered
            RuntimeDead: If the runtime is dead
        """
        snapshot = self._registry.lookup(runtime_id)
        if snapshot.is_dead:
            raise RuntimeDead(runtime_id, snapshot.dead_reason)

        lane = self._lane(runtime_id)
        with lane.lock:
            snapshot = self._registry.lookup(runtime_id)
            if snapshot.is_dead:
                # Died while we waited; cascade_cancel may already have dropped its lane
                self._drop_lane(lane)
                raise RuntimeDead(runtime_id, snapshot.dead_reason)

            execution_id = self._ids.new_id()
            position = len(lane.queue) + (1 if lane.current is not None else 0)
            record = self._ledger.record_queued(
                execution_id,
                runtime_id,
                code_cell_id=code_cell_id,
                source=source,
                position=position,
            )
            lane.queue.append(execution_id)
            self._publish(record)

            self._advance_locked(lane)

        return execution_id

    def advance(self, runtime_id: str) -> Optional[str]:
        """
        Start the next queued execution if the runtime is idle.

        Returns:
            The id now running on the runtime (None if nothing is)

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        self._registry.lookup(runtime_id)
        lane = self._existing_lane(runtime_id)
        if lane is None:
            return None
        with lane.lock:
            self._advance_locked(lane)
            return lane.current

    def _advance_locked(self, lane: _Lane) -> None:
        if lane.dispatching:
            return

        while lane.current is None and lane.queue:
            snapshot = self._registry.lookup(lane.runtime_id)
            if snapshot.status != RuntimeStatus.IDLE:
                return
            try:
                self._registry.mark_busy(lane.runtime_id)
            except InvalidTransition:
                # Died between the lookup and here; cascade_cancel drains the queue
                return

            execution_id = lane.queue.popleft()
            record = self._ledger.record_started(execution_id)
            lane.current = execution_id
            self._publish(record)

            lane.dispatching = True
            try:
                adapter = self._adapter_for(lane, snapshot)
                adapter.execute(execution_id, record.source, self.complete, self._ledger.record_message)
            except Exception as e:
                logger.error(f"Dispatch of {execution_id} to runtime {lane.runtime_id} failed: {e}")
                if lane.current == execution_id:
                    self._finish_locked(lane, execution_id, ExecutionStatus.ERRORED, f"dispatch failed: {e}")
            finally:
                lane.dispatching = False

    def _finish_locked(
        self,
        lane: _Lane,
        execution_id: str,
        outcome: ExecutionStatus,
        reason: Optional[str],
    ) -> ExecutionRecord:
        record = self._ledger.record_terminal(execution_id, outcome, reason)
        lane.current = None
        try:
            if self._registry.lookup(lane.runtime_id).status == RuntimeStatus.BUSY:
                self._registry.mark_idle(lane.runtime_id)
        except InvalidTransition:
            logger.debug(f"Runtime {lane.runtime_id} died while finishing {execution_id}")
        self._terminated(record)

        self._advance_locked(lane)
        return record

    def complete(
        self,
        execution_id: str,
        outcome: ExecutionStatus | str,
        reason: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Record the outcome of a running execution and move the queue along.

        Called by protocol adapters. If the execution already reached a
        terminal state (it lost a race with cascade_cancel, say) this is a
        no-op and the existing record is returned.

        Raises:
            UnknownExecution: If the execution is not in the ledger
            InvalidTransition: If the execution is not running on its
                runtime, or the outcome is not a terminal status
        """
        record = self._ledger.get(execution_id)
        if record.is_terminal:
            logger.debug(f"Ignoring {outcome} for already {record.status.value} execution {execution_id}")
            return record
        outcome = parse_outcome(record, outcome)

        lane = self._existing_lane(record.runtime_id)
        if lane is None:
            raise InvalidTransition(f"execution {execution_id}", record.status.value, outcome.value)
        with lane.lock:
            record = self._ledger.get(execution_id)
            if record.is_terminal:
                logger.debug(f"Ignoring {outcome.value} for already {record.status.value} execution {execution_id}")
                return record
            if lane.current != execution_id:
                raise InvalidTransition(f"execution {execution_id}", record.status.value, outcome.value)
            return self._finish_locked(lane, execution_id, outcome, reason)

    def interrupt(self, execution_id: str) -> ExecutionStatus:
        """
        Interrupt an execution.

        - queued: removed from the queue and recorded `interrupted`
        - running: the kernel is sent an interrupt; the terminal state arrives
          later through complete(). Interrupting again re-sends the signal.
        - terminal: nothing happens

        Returns:
            The execution's status after the call

        Raises:
            UnknownExecution: If the execution is not in the ledger
            InvalidTransition: If the execution is not queued or running on
                any lane of this dispatcher (left behind by another process)
        """
        record = self._ledger.get(execution_id)
        if record.is_terminal:
            return record.status

        not_dispatched = InvalidTransition(
            f"execution {execution_id}", record.status.value, ExecutionStatus.INTERRUPTED.value
        )
        lane = self._existing_lane(record.runtime_id)
        if lane is None:
            raise not_dispatched

        with lane.lock:
            record = self._ledger.get(execution_id)
            if record.is_terminal:
                return record.status

            if record.status == ExecutionStatus.QUEUED:
                if execution_id not in lane.queue:
                    raise not_dispatched
                lane.queue.remove(execution_id)
                record = self._ledger.record_terminal(
                    execution_id, ExecutionStatus.INTERRUPTED, INTERRUPTED_BEFORE_START
                )
                self._terminated(record)
                logger.info(f"Interrupted queued execution {execution_id}")
                return record.status

            if lane.current != execution_id or lane.adapter is None:
                raise not_dispatched
            lane.adapter.send_interrupt()
            logger.info(f"Sent interrupt for running execution {execution_id}")
            return record.status

    def cascade_cancel(self, runtime_id: str, reason: str = RUNTIME_DIED) -> list[str]:
        """
        Fail all pending work of a runtime without contacting it.

        The running execution (if any) becomes `errored`; every queued one
        becomes `interrupted`. A runtime that is still alive is marked dead
        with the same reason, so it can never be left busy with nothing
        running. Idempotent: a second call finds nothing left.

        Returns:
            Ids of the executions that were cancelled

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        self._registry.lookup(runtime_id)
        cancelled: list[str] = []
        adapter = None

        lane = self._existing_lane(runtime_id)
        if lane is not None:
            with lane.lock:
                if lane.current is not None:
                    execution_id = lane.current
                    lane.current = None
                    if not self._ledger.get(execution_id).is_terminal:
                        record = self._ledger.record_terminal(execution_id, ExecutionStatus.ERRORED, reason)
                        self._terminated(record)
                        cancelled.append(execution_id)

                while lane.queue:
                    execution_id = lane.queue.popleft()
                    record = self._ledger.record_terminal(execution_id, ExecutionStatus.INTERRUPTED, reason)
                    self._terminated(record)
                    cancelled.append(execution_id)

                adapter, lane.adapter = lane.adapter, None

        # No-op when the registry already has it dead (the listener path)
        self._registry.mark_dead(runtime_id, reason)

        if lane is not None:
            self._drop_lane(lane)

        if cancelled:
            logger.warning(f"Cancelled {len(cancelled)} execution(s) on runtime {runtime_id}: {reason}")
        if adapter is not None:
            try:
                adapter.shutdown()
            except Exception:
                logger.exception(f"Adapter shutdown failed for runtime {runtime_id}")
        return cancelled

    def close_orphans(self, reason: str = DAEMON_RESTARTED) -> list[str]:
        """
        End every unfinished execution whose runtime is not registered here.

        A durable ledger outlives the process that wrote it. Executions it left
        queued become `interrupted` and those left running become `errored`.

        Returns:
            Ids of the executions that were closed
        """
        closed = []
        for record in self._ledger.history():
            if record.is_terminal or self._registry.has(record.runtime_id):
                continue
            outcome = ExecutionStatus.INTERRUPTED if record.status == ExecutionStatus.QUEUED else ExecutionStatus.ERRORED
            try:
                record = self._ledger.record_terminal(record.execution_id, outcome, reason)
            except InvalidTransition:
                continue
            self._terminated(record)
            closed.append(record.execution_id)

        if closed:
            logger.warning(f"Closed {len(closed)} execution(s) left unfinished: {reason}")
        return closed

    def shutdown_runtime(self, runtime_id: str) -> bool:
        """
        Explicitly shut a runtime down.

        Marks it dead with reason "shutdown", which cancels its pending work.

        Returns:
            False if it was already dead

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        return self._registry.mark_dead(runtime_id, "shutdown")

    def shutdown_adapters(self) -> int:
        """
        Shut down the protocol adapter of every lane.

        Runtimes stay registered and their executions stay as recorded; a
        later close_orphans() ends whatever a durable ledger still holds.

        Returns:
            Number of adapters shut down
        """
        with self._lanes_guard:
            lanes = list(self._lanes.values())

        count = 0
        for lane in lanes:
            with lane.lock:
                adapter, lane.adapter = lane.adapter, None
            if adapter is None:
                continue
            try:
                adapter.shutdown()
                count += 1
            except Exception:
                logger.exception(f"Adapter shutdown failed for runtime {lane.runtime_id}")
        return count

    def _on_runtime_status(self, snapshot: RuntimeSnapshot, previous: RuntimeStatus) -> None:
        if snapshot.status == RuntimeStatus.DEAD:
            self.cascade_cancel(snapshot.runtime_id)
        elif snapshot.status == RuntimeStatus.IDLE and previous == RuntimeStatus.STARTING:
            self.advance(snapshot.runtime_id)
