"""
Execution schemas - the lifecycle record of one code submission.

An ExecutionRecord is frozen. The ledger never edits a record in place:
every status change appends a Transition and stores a new record, so the
full trail (queued -> running -> completed, say) stays recallable.

Legal transitions:
    queued  -> running
    queued  -> interrupted       (cancelled before dispatch)
    running -> completed | errored | interrupted
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Status of an execution."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.ERRORED,
    ExecutionStatus.INTERRUPTED,
})

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.INTERRUPTED}),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.ERRORED: frozenset(),
    ExecutionStatus.INTERRUPTED: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Check whether current -> target is a legal execution transition."""
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class Transition:
    """
    One appended lifecycle event.

    Attributes:
        status: The status entered
        at: When it was entered
        previous: The status left (None for the initial queued entry)
        reason: Optional explanation (e.g. "runtime died")
    """
    status: ExecutionStatus
    at: datetime
    previous: Optional[ExecutionStatus] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status.value,
            "at": self.at.isoformat(),
        }
        if self.previous is not None:
            result["previous"] = self.previous.value
        if self.reason is not None:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transition":
        return cls(
            status=ExecutionStatus(data["status"]),
            at=datetime.fromisoformat(data["at"]),
            previous=ExecutionStatus(data["previous"]) if data.get("previous") else None,
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """
    A record of one execution.

    The execution_id is a ULID providing both uniqueness and time-ordering.
    The owning runtime never changes after creation.

    Attributes:
        execution_id: ULID uniquely identifying this execution
        runtime_id: The runtime it was submitted to
        submitted_at: When it was queued
        status: Current status (the last transition's status)
        position: Executions ahead of it on its runtime at submission time
        code_cell_id: Code cell it ran for, if any
        source: The submitted source text
        started_at: When it started running (None until running)
        ended_at: When it reached a terminal state (None until terminal)
        reason: Explanation attached to the terminal transition, if any
        transitions: Every lifecycle event, oldest first
    """
    execution_id: ULID
    runtime_id: ULID
    submitted_at: datetime
    status: ExecutionStatus = ExecutionStatus.QUEUED
    position: int = 0
    code_cell_id: Optional[str] = None
    source: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    reason: Optional[str] = None
    transitions: tuple[Transition, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.position < 0:
            raise ValueError("position must be >= 0")
        if self.status == ExecutionStatus.QUEUED:
            if self.started_at is not None or self.ended_at is not None:
                raise ValueError("Queued executions should not have started_at or ended_at")
        elif self.status == ExecutionStatus.RUNNING:
            if self.started_at is None:
                raise ValueError("Running executions must have started_at")
            if self.ended_at is not None:
                raise ValueError("Running executions should not have ended_at")
        elif self.ended_at is None:
            raise ValueError(f"{self.status.value} executions must have ended_at")

    @classmethod
    def queued(
        cls,
        execution_id: ULID,
        runtime_id: ULID,
        code_cell_id: Optional[str] = None,
        source: str = "",
        position: int = 0,
        at: Optional[datetime] = None,
    ) -> "ExecutionRecord":
        """Build the initial record for a freshly submitted execution."""
        at = at or _utcnow()
        return cls(
            execution_id=execution_id,
            runtime_id=runtime_id,
            submitted_at=at,
            position=position,
            code_cell_id=code_cell_id,
            source=source,
            transitions=(Transition(status=ExecutionStatus.QUEUED, at=at),),
        )

    def advanced(
        self,
        status: ExecutionStatus,
        at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> "ExecutionRecord":
        """
        Return a new record with one more transition appended.

        Does not check legality; ExecutionLedger does that under the record lock.
        """
        at = at or _utcnow()
        changes: dict[str, Any] = {
            "status": status,
            "transitions": self.transitions + (
                Transition(status=status, at=at, previous=self.status, reason=reason),
            ),
        }
        if status == ExecutionStatus.RUNNING:
            changes["started_at"] = at
        if status.is_terminal:
            changes["ended_at"] = at
            changes["reason"] = reason
        return replace(self, **changes)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        """Running time in milliseconds, if it both started and ended."""
        if self.started_at and self.ended_at:
            delta = self.ended_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "execution_id": self.execution_id,
            "runtime_id": self.runtime_id,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status.value,
            "position": self.position,
            "source": self.source,
            "transitions": [t.to_dict() for t in self.transitions],
        }
        if self.code_cell_id is not None:
            result["code_cell_id"] = self.code_cell_id
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.ended_at is not None:
            result["ended_at"] = self.ended_at.isoformat()
        if self.reason is not None:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        """Deserialize from dictionary."""
        return cls(
            execution_id=data["execution_id"],
            runtime_id=data["runtime_id"],
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            status=ExecutionStatus(data.get("status", "queued")),
            position=data.get("position", 0),
            code_cell_id=data.get("code_cell_id"),
            source=data.get("source", ""),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            reason=data.get("reason"),
            transitions=tuple(Transition.from_dict(t) for t in data.get("transitions", [])),
        )
