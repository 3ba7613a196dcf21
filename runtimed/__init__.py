"""
runtimed - Execution tracking and runtime lifecycle for interactive kernels

Accepts code submissions for running REPL processes, serializes them per
runtime, records every lifecycle transition, and cancels pending work when a
runtime dies.
"""

__version__ = "0.1.0"


__all__ = [
    "Daemon",
    "ExecutionDispatcher",
    "ExecutionLedger",
    "RuntimeRegistry",
    "LivenessMonitor",
    "AssociationIndex",
    "RuntimedConfig",
    "load_config",
    "get_runtimed_home",
]

from .associations import AssociationIndex
from .config import RuntimedConfig, load_config, get_runtimed_home
from .daemon import Daemon
from .dispatcher import ExecutionDispatcher
from .ledger import ExecutionLedger
from .liveness import LivenessMonitor
from .registry import RuntimeRegistry
