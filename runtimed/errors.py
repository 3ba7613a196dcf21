"""
Error classes for runtimed.

Every error here is raised synchronously by the operation that detected it.
The transport layer catches them at its boundary and translates them into
client-visible responses.

Runtime death and keepalive timeouts are NOT errors: they are recorded as
terminal states (errored / interrupted) in the ledger and surface only
through history queries.
"""


class RuntimedError(Exception):
    """Base exception for runtimed."""
    pass


class UnknownRuntime(RuntimedError):
    """The runtime id is not in the registry."""

    def __init__(self, runtime_id: str):
        self.runtime_id = runtime_id
        super().__init__(f"Unknown runtime: {runtime_id}")


class UnknownExecution(RuntimedError):
    """The execution id is not in the ledger."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Unknown execution: {execution_id}")


class RuntimeDead(RuntimedError):
    """Work was submitted to a runtime that is already dead."""

    def __init__(self, runtime_id: str, reason: str | None = None):
        self.runtime_id = runtime_id
        self.reason = reason
        message = f"Runtime is dead: {runtime_id}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class InvalidTransition(RuntimedError):
    """
    A status change not permitted by the lifecycle.

    Raised for both runtime transitions (e.g. mark_ready on an idle runtime)
    and execution transitions (e.g. completing a queued execution).
    """

    def __init__(self, subject: str, current: str, target: str):
        self.subject = subject
        self.current = current
        self.target = target
        super().__init__(f"{subject}: cannot transition {current} -> {target}")


class DuplicateExecutionId(RuntimedError):
    """An execution id was recorded twice."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Duplicate execution id: {execution_id}")


class InvalidDescriptor(RuntimedError):
    """A runtime connection descriptor is malformed."""
    pass


class ConfigError(RuntimedError):
    """Configuration validation error."""
    pass
