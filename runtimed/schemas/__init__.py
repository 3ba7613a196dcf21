"""
runtimed.schemas - Data structures for the execution tracking core.

ConnectionInfo -> RuntimeSnapshot -> ExecutionRecord -> CodeCell

Lifecycle:
1. ConnectionInfo: Validated kernel connection descriptor handed to register()
2. RuntimeSnapshot: Immutable view of a registered runtime and its liveness
3. ExecutionRecord: One submission of code, with its appended Transitions
4. CodeCell: Client document slot pointing at its latest ExecutionRecord
5. ExecutionMessage: Kernel output captured for an ExecutionRecord

Ownership:
- RuntimeRegistry owns runtimes
- ExecutionLedger owns executions
- AssociationIndex only holds execution ids
"""

from .runtime import (
    ConnectionInfo,
    RuntimeSnapshot,
    RuntimeStatus,
)
from .execution import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ExecutionRecord,
    ExecutionStatus,
    Transition,
    ULID,
    can_transition,
)
from .code_cell import CodeCell
from .message import ExecutionMessage

__all__ = [
    # Runtime
    "ConnectionInfo",
    "RuntimeSnapshot",
    "RuntimeStatus",
    # Execution
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ExecutionRecord",
    "ExecutionStatus",
    "Transition",
    "ULID",
    "can_transition",
    # Code cell
    "CodeCell",
    # Kernel output
    "ExecutionMessage",
]
