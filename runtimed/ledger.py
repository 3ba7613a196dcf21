"""
ExecutionLedger - Append-only lifecycle history of every execution.

The ledger is the durable source of truth for recall. It enforces the
execution state machine; the LedgerStore underneath only persists.

    record_queued    ->  queued
    record_started   ->  queued -> running
    record_terminal  ->  running -> completed | errored | interrupted
                         queued  -> interrupted

Nothing is ever deleted. Once a record is terminal it is immutable.
Kernel output is kept next to the records as an append-only message log
per execution.

Locking is per record: two executions never contend, so ledger throughput
scales with the number of runtimes. A record's lock is dropped once the
record is terminal, since nothing can change it after that.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

from runtimed.errors import DuplicateExecutionId, InvalidTransition, UnknownExecution
from runtimed.ledger_store import InMemoryLedgerStore, LedgerStore
from runtimed.schemas import ExecutionMessage, ExecutionRecord, ExecutionStatus, can_transition

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_outcome(record: ExecutionRecord, outcome: ExecutionStatus | str) -> ExecutionStatus:
    """
    Coerce an outcome reported for a record into a terminal ExecutionStatus.

    Raises:
        InvalidTransition: If the outcome is not a terminal status
    """
    try:
        status = ExecutionStatus(outcome)
    except ValueError:
        status = None
    if status is None or not status.is_terminal:
        target = status.value if status is not None else str(outcome)
        raise InvalidTransition(f"execution {record.execution_id}", record.status.value, target)
    return status


class History:
    """
    A lazy, restartable view over ledger records.

    Nothing is read until iteration starts. Each iteration re-reads the store,
    so iterating twice reflects any transitions recorded in between. Records
    come back in identifier order, which for ULIDs is submission order.
    """

    def __init__(
        self,
        store: LedgerStore,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ):
        self._store = store
        self.runtime_id = runtime_id
        self.code_cell_id = code_cell_id
        self.execution_id = execution_id

    def _matches(self, record: ExecutionRecord) -> bool:
        if self.runtime_id is not None and record.runtime_id != self.runtime_id:
            return False
        if self.code_cell_id is not None and record.code_cell_id != self.code_cell_id:
            return False
        return True

    def __iter__(self) -> Iterator[ExecutionRecord]:
        if self.execution_id is not None:
            ids = [self.execution_id]
        else:
            ids = self._store.ids(runtime_id=self.runtime_id, code_cell_id=self.code_cell_id)

        for execution_id in ids:
            record = self._store.get(execution_id)
            if record is not None and self._matches(record):
                yield record

    def ids(self) -> list[str]:
        """Execution ids in this view, oldest first."""
        return [record.execution_id for record in self]

    def __repr__(self) -> str:
        return (
            f"History(runtime_id={self.runtime_id}, code_cell_id={self.code_cell_id}, "
            f"execution_id={self.execution_id})"
        )


class ExecutionLedger:
    """
    Records execution lifecycle transitions.

    Usage:
        ledger = ExecutionLedger()              # in-memory
        ledger = ExecutionLedger(FileLedgerStore("~/.runtimed/ledger"))

        ledger.record_queued(execution_id, runtime_id, code_cell_id="cell-1")
        ledger.record_started(execution_id)
        ledger.record_terminal(execution_id, ExecutionStatus.COMPLETED)

        for record in ledger.history(runtime_id=runtime_id):
            print(record.execution_id, record.status.value)
    """

    def __init__(self, store: Optional[LedgerStore] = None):
        self._store = store if store is not None else InMemoryLedgerStore()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> LedgerStore:
        return self._store

    def _lock_for(self, execution_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[execution_id] = lock
            return lock

    def record_queued(
        self,
        execution_id: str,
        runtime_id: str,
        code_cell_id: Optional[str] = None,
        source: str = "",
        position: int = 0,
    ) -> ExecutionRecord:
        """
        Record a newly submitted execution.

        Raises:
            DuplicateExecutionId: If the id is already in the ledger
        """
        record = ExecutionRecord.queued(
            execution_id=execution_id,
            runtime_id=runtime_id,
            code_cell_id=code_cell_id,
            source=source,
            position=position,
            at=_utcnow(),
        )
        with self._lock_for(execution_id):
            if not self._store.insert(record):
                existing = self._store.get(execution_id)
                if existing is None or existing.is_terminal:
                    self._release_lock(execution_id)
                raise DuplicateExecutionId(execution_id)
        logger.debug(f"Execution {execution_id} queued on runtime {runtime_id} at position {position}")
        return record

    def record_started(self, execution_id: str) -> ExecutionRecord:
        """
        Move a queued execution to running.

        Raises:
            UnknownExecution: If the id is not in the ledger
            InvalidTransition: If the execution is not queued
        """
        return self._transition(execution_id, ExecutionStatus.RUNNING)

    def record_terminal(
        self,
        execution_id: str,
        outcome: ExecutionStatus | str,
        reason: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Move an execution to a terminal state.

        Running executions may end in any terminal state. Queued executions may
        only be interrupted (cancelled before dispatch).

        Raises:
            UnknownExecution: If the id is not in the ledger
            InvalidTransition: If the outcome is not terminal or not reachable
        """
        outcome = parse_outcome(self.get(execution_id), outcome)
        return self._transition(execution_id, outcome, reason)

    def _transition(
        self,
        execution_id: str,
        target: ExecutionStatus,
        reason: Optional[str] = None,
    ) -> ExecutionRecord:
        with self._lock_for(execution_id):
            current = self._store.get(execution_id)
            try:
                if current is None:
                    raise UnknownExecution(execution_id)
                if not can_transition(current.status, target):
                    raise InvalidTransition(
                        f"execution {execution_id}", current.status.value, target.value
                    )
                current = current.advanced(target, at=_utcnow(), reason=reason)
                self._store.replace(current)
            finally:
                # Missing and terminal records never change again
                if current is None or current.is_terminal:
                    self._release_lock(execution_id)

        logger.debug(f"Execution {execution_id}: {current.transitions[-1].previous.value} -> {target.value}")
        return current

    def _release_lock(self, execution_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(execution_id, None)

    def lock_count(self) -> int:
        """Number of per-record locks held, one per live (non-terminal) record touched."""
        with self._locks_guard:
            return len(self._locks)

    def record_message(self, execution_id: str, message: Mapping[str, Any]) -> ExecutionMessage:
        """
        Append a kernel message to an execution's output log.

        Messages are accepted in any status: iopub output can trail the
        execute reply that ended the execution.

        Raises:
            UnknownExecution: If the id is not in the ledger
        """
        record = self.get(execution_id)
        stored = ExecutionMessage.from_jupyter(execution_id, record.runtime_id, message, at=_utcnow())
        self._store.append_message(stored)
        return stored

    def messages(self, execution_id: str) -> list[ExecutionMessage]:
        """
        Kernel messages recorded for an execution, in arrival order.

        Raises:
            UnknownExecution: If the id is not in the ledger
        """
        self.get(execution_id)
        return self._store.messages(execution_id)

    def get(self, execution_id: str) -> ExecutionRecord:
        """
        Fetch the current record for an execution.

        Raises:
            UnknownExecution: If the id is not in the ledger
        """
        record = self._store.get(execution_id)
        if record is None:
            raise UnknownExecution(execution_id)
        return record

    def exists(self, execution_id: str) -> bool:
        return self._store.get(execution_id) is not None

    def history(
        self,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> History:
        """
        Query records by runtime, by code cell, or by id.

        Filters combine; with none given every record is returned. The result
        is lazy and may be iterated any number of times.
        """
        return History(
            self._store,
            runtime_id=runtime_id,
            code_cell_id=code_cell_id,
            execution_id=execution_id,
        )
