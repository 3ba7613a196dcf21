"""
LivenessMonitor - Keepalive tracking and timeout sweeps.

Runtimes emit keepalives; heartbeat() records them on the registry. A sweep
marks every live runtime whose last keepalive is older than the timeout
dead with reason "keepalive timeout". The registry notifies the dispatcher,
which cancels the runtime's pending work.

sweep() can be called directly (tests, or a caller-owned scheduler), or
start() runs it on a daemon thread every `sweep_interval` seconds.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from runtimed.registry import RuntimeRegistry
from runtimed.schemas import RuntimeStatus

logger = logging.getLogger(__name__)

KEEPALIVE_TIMEOUT = "keepalive timeout"


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class LivenessMonitor:
    """
    Marks runtimes dead when they stop sending keepalives.

    Usage:
        monitor = LivenessMonitor(registry, keepalive_timeout=30.0, sweep_interval=5.0)
        monitor.start()
        ...
        monitor.heartbeat(runtime_id)   # on every keepalive from the adapter
        ...
        monitor.stop()
    """

    def __init__(
        self,
        registry: RuntimeRegistry,
        keepalive_timeout: float = 30.0,
        sweep_interval: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            registry: RuntimeRegistry holding the runtimes to watch
            keepalive_timeout: Seconds without a keepalive before a runtime is dead
            sweep_interval: Seconds between background sweeps
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        if keepalive_timeout <= 0:
            raise ValueError("keepalive_timeout must be > 0")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be > 0")
        self._registry = registry
        self._timeout = timedelta(seconds=keepalive_timeout)
        self._interval = sweep_interval
        self._clock = clock or _utcnow
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def keepalive_timeout(self) -> float:
        return self._timeout.total_seconds()

    def heartbeat(self, runtime_id: str) -> bool:
        """
        Record a keepalive at the current time.

        Returns:
            False if the runtime is already dead (the keepalive is ignored)

        Raises:
            UnknownRuntime: If the runtime is not registered
        """
        return self._registry.touch(runtime_id, self._clock())

    def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Mark every timed-out runtime dead.

        Returns:
            Ids of the runtimes this sweep killed
        """
        now = now or self._clock()
        expired = []
        for snapshot in self._registry.snapshots():
            if snapshot.status == RuntimeStatus.DEAD:
                continue
            silence = now - snapshot.last_keepalive
            if silence > self._timeout:
                logger.warning(
                    f"Runtime {snapshot.runtime_id} silent for {silence.total_seconds():.1f}s "
                    f"(timeout {self.keepalive_timeout:.1f}s)"
                )
                # A heartbeat or another sweep may have won the race
                if self._registry.mark_dead(snapshot.runtime_id, KEEPALIVE_TIMEOUT):
                    expired.append(snapshot.runtime_id)
        return expired

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")

    def start(self) -> None:
        """Start sweeping on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="runtimed-liveness", daemon=True)
        self._thread.start()
        logger.info(f"Liveness monitor started (timeout={self.keepalive_timeout}s, interval={self._interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Liveness monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
