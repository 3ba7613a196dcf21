"""
RuntimeRegistry - The set of known runtimes and their liveness.

The registry provides:
- Registration of kernel connection descriptors (validated)
- Runtime status transitions (starting -> idle <-> busy, any -> dead)
- Keepalive timestamps for the liveness monitor
- Status-change listeners, which is how a dead runtime's pending work
  gets cancelled by the dispatcher

Locking is per runtime. Listeners are always called after the record lock
is released, so a listener may call back into the registry.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from runtimed.errors import InvalidTransition, UnknownRuntime
from runtimed.ids import IdGenerator
from runtimed.schemas import ConnectionInfo, RuntimeSnapshot, RuntimeStatus

logger = logging.getLogger(__name__)

# Called with (snapshot after the change, status before the change)
RuntimeListener = Callable[[RuntimeSnapshot, RuntimeStatus], None]


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class _Entry:
    lock: threading.Lock
    snapshot: RuntimeSnapshot


class RuntimeRegistry:
    """
    Registry of runtimes keyed by ULID.

    Usage:
        registry = RuntimeRegistry()
        runtime_id = registry.register(connection_file_dict)
        registry.mark_ready(runtime_id)

        registry.add_listener(on_status_change)
        registry.mark_dead(runtime_id, "shutdown")
    """

    def __init__(
        self,
        ids: Optional[IdGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            ids: Identifier generator (shared with the dispatcher in a daemon)
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        self._ids = ids or IdGenerator()
        self._clock = clock or _utcnow
        self._entries: dict[str, _Entry] = {}
        self._entries_guard = threading.Lock()
        self._listeners: list[RuntimeListener] = []

    def add_listener(self, listener: RuntimeListener) -> None:
        """Subscribe to every runtime status change."""
        self._listeners.append(listener)

    def _entry(self, runtime_id: str) -> _Entry:
        entry = self._entries.get(runtime_id)
        if entry is None:
            raise UnknownRuntime(runtime_id)
        return entry

    def _notify(self, snapshot: RuntimeSnapshot, previous: RuntimeStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot, previous)
            except Exception:
                logger.exception(
                    f"Runtime listener failed for {snapshot.runtime_id} "
                    f"({previous.value} -> {snapshot.status.value})"
                )

    def register(self, descriptor: ConnectionInfo | dict[str, Any]) -> str:
        """
        Register a kernel connection.

        The runtime starts in 'starting'; call mark_ready() once the kernel
        answers. Its keepalive clock starts now.

        Raises:
            InvalidDescriptor: If the descriptor is malformed
        """
        connection = ConnectionInfo.from_dict(descriptor)
        now = self._clock()
        runtime_id = self._ids.new_id()
        snapshot = RuntimeSnapshot(
            runtime_id=runtime_id,
            connection=connection,
            status=RuntimeStatus.STARTING,
            registered_at=now,
            last_keepalive=now,
        )
        with self._entries_guard:
            self._entries[runtime_id] = _Entry(lock=threading.Lock(), snapshot=snapshot)

        logger.info(
            f"Registered runtime {runtime_id} "
            f"(kernel={connection.kernel_name or 'unknown'}, {connection.transport}://{connection.ip})"
        )
        return runtime_id

    def lookup(self, runtime_id: str) -> RuntimeSnapshot:
        """
        Get the current snapshot of a runtime.

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        return self._entry(runtime_id).snapshot

    def has(self, runtime_id: str) -> bool:
        return runtime_id in self._entries

    def runtime_ids(self) -> list[str]:
        """All registered runtime ids, oldest first."""
        with self._entries_guard:
            return sorted(self._entries)

    def snapshots(self) -> list[RuntimeSnapshot]:
        """Snapshots of every registered runtime, oldest first."""
        with self._entries_guard:
            entries = [self._entries[k] for k in sorted(self._entries)]
        return [entry.snapshot for entry in entries]

    def _transition(
        self,
        runtime_id: str,
        allowed_from: tuple[RuntimeStatus, ...],
        target: RuntimeStatus,
    ) -> RuntimeSnapshot:
        entry = self._entry(runtime_id)
        with entry.lock:
            previous = entry.snapshot.status
            if previous not in allowed_from:
                raise InvalidTransition(f"runtime {runtime_id}", previous.value, target.value)
            entry.snapshot = replace(entry.snapshot, status=target)
            snapshot = entry.snapshot
        self._notify(snapshot, previous)
        return snapshot

    def mark_ready(self, runtime_id: str) -> RuntimeSnapshot:
        """
        starting -> idle.

        Raises:
            UnknownRuntime: If the runtime is not registered
            InvalidTransition: If the runtime is not starting
        """
        snapshot = self._transition(runtime_id, (RuntimeStatus.STARTING,), RuntimeStatus.IDLE)
        logger.info(f"Runtime {runtime_id} ready")
        return snapshot

    def mark_busy(self, runtime_id: str) -> RuntimeSnapshot:
        """idle -> busy. Used by the dispatcher when it starts an execution."""
        return self._transition(runtime_id, (RuntimeStatus.IDLE,), RuntimeStatus.BUSY)

    def mark_idle(self, runtime_id: str) -> RuntimeSnapshot:
        """busy -> idle. Used by the dispatcher when an execution ends."""
        return self._transition(runtime_id, (RuntimeStatus.BUSY,), RuntimeStatus.IDLE)

    def mark_dead(self, runtime_id: str, reason: str) -> bool:
        """
        Any state -> dead.

        Idempotent: marking a dead runtime dead again changes nothing and
        notifies nobody.

        Returns:
            True if the runtime was alive and is now dead

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        entry = self._entry(runtime_id)
        with entry.lock:
            previous = entry.snapshot.status
            if previous == RuntimeStatus.DEAD:
                return False
            entry.snapshot = replace(
                entry.snapshot,
                status=RuntimeStatus.DEAD,
                dead_reason=reason,
                died_at=self._clock(),
            )
            snapshot = entry.snapshot

        logger.warning(f"Runtime {runtime_id} marked dead ({previous.value}): {reason}")
        self._notify(snapshot, previous)
        return True

    def touch(self, runtime_id: str, at: Optional[datetime] = None) -> bool:
        """
        Record a keepalive.

        Dead runtimes are immutable, so a late keepalive from one is ignored.

        Returns:
            True if the keepalive was recorded

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        entry = self._entry(runtime_id)
        with entry.lock:
            if entry.snapshot.status == RuntimeStatus.DEAD:
                logger.debug(f"Ignoring keepalive from dead runtime {runtime_id}")
                return False
            entry.snapshot = replace(entry.snapshot, last_keepalive=at or self._clock())
        return True
