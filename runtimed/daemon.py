"""
Daemon - Owns and wires the execution tracking services.

One Daemon per process. It builds each service once, passes them to each
other explicitly, and ties the background liveness sweep to start()/stop().
start() also closes executions an earlier process left unfinished in a
durable ledger; stop() shuts down every protocol adapter.

    Daemon
      ├── IdGenerator          (shared by registry and dispatcher)
      ├── EventBus             (transport subscribes here)
      ├── RuntimeRegistry
      ├── ExecutionLedger      (LedgerStore chosen by config)
      ├── AssociationIndex
      ├── ExecutionDispatcher  (listens to the registry)
      └── LivenessMonitor
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from runtimed.associations import AssociationIndex
from runtimed.config import RuntimedConfig
from runtimed.discovery import discover_connections
from runtimed.dispatcher import ExecutionDispatcher
from runtimed.events import EventBus
from runtimed.ids import IdGenerator
from runtimed.ledger import ExecutionLedger
from runtimed.ledger_store import LedgerStore, create_store
from runtimed.liveness import LivenessMonitor
from runtimed.protocol import AdapterFactory
from runtimed.registry import RuntimeRegistry

logger = logging.getLogger(__name__)


class Daemon:
    """
    Service container for one runtimed process.

    Usage:
        with Daemon(load_config(), adapter_factory=connect_kernel) as daemon:
            daemon.events.subscribe(relay_to_clients)
            runtime_id = daemon.registry.register(connection_info)
            daemon.registry.mark_ready(runtime_id)
            execution_id = daemon.dispatcher.submit(runtime_id, "1 + 1")
    """

    def __init__(
        self,
        config: Optional[RuntimedConfig] = None,
        store: Optional[LedgerStore] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            config: Daemon configuration (defaults to RuntimedConfig())
            store: Ledger store (defaults to the one config.ledger_backend names)
            adapter_factory: Builds protocol adapters (default: no-op adapters)
            clock: Current-time source for the registry and liveness monitor
        """
        self.config = config or RuntimedConfig()
        self.config.validate()

        self.ids = IdGenerator()
        self.events = EventBus()
        self.registry = RuntimeRegistry(ids=self.ids, clock=clock)
        self.ledger = ExecutionLedger(store if store is not None else create_store(self.config))
        self.associations = AssociationIndex(self.ledger)
        self.dispatcher = ExecutionDispatcher(
            self.registry,
            self.ledger,
            adapter_factory=adapter_factory,
            associations=self.associations,
            events=self.events,
            ids=self.ids,
        )
        self.liveness = LivenessMonitor(
            self.registry,
            keepalive_timeout=self.config.keepalive_timeout_seconds,
            sweep_interval=self.config.sweep_interval_seconds,
            clock=clock,
        )

    def start(self) -> None:
        """
        Close executions a previous process left unfinished, then start the
        liveness sweep.
        """
        self.dispatcher.close_orphans()
        self.liveness.start()
        logger.info(f"runtimed started (ledger={self.config.ledger_backend})")

    def stop(self) -> None:
        """Stop background work, shut down protocol adapters and release the ledger store."""
        self.liveness.stop()
        self.dispatcher.shutdown_adapters()
        close = getattr(self.ledger.store, "close", None)
        if close is not None:
            close()
        logger.info("runtimed stopped")

    def register_discovered(self, runtime_dir: Optional[Path | str] = None) -> list[str]:
        """
        Register every kernel found in the Jupyter runtime directory.

        Runtimes are registered in 'starting'; whoever attaches the protocol
        adapter marks them ready.

        Returns:
            The new runtime ids
        """
        runtime_dir = runtime_dir or self.config.jupyter_runtime_dir
        runtime_ids = [self.registry.register(info) for info in discover_connections(runtime_dir)]
        logger.info(f"Registered {len(runtime_ids)} discovered runtime(s)")
        return runtime_ids

    def __enter__(self) -> "Daemon":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
