"""
AssociationIndex - Code cell -> latest execution.

A cell's pointer only ever moves forward: attach() with an execution id that
is not newer (by ULID order) than the current pointer is ignored. Results
that arrive out of order therefore cannot roll a cell back to stale output.

The index holds ids only. It never keeps an execution alive and never
touches a cell's source text except through edit(), which is the client's
operation.
"""

import logging
import threading
from dataclasses import replace
from typing import Optional

from runtimed.errors import UnknownExecution
from runtimed.ledger import ExecutionLedger
from runtimed.schemas import CodeCell

logger = logging.getLogger(__name__)


class AssociationIndex:
    """Tracks the most recent execution of each code cell."""

    def __init__(self, ledger: ExecutionLedger):
        self._ledger = ledger
        self._cells: dict[str, CodeCell] = {}
        self._lock = threading.Lock()

    def attach(self, code_cell_id: str, execution_id: str) -> bool:
        """
        Point a cell at an execution if it is newer than the current one.

        Returns:
            True if the pointer moved

        Raises:
            UnknownExecution: If the execution is not in the ledger
        """
        if not self._ledger.exists(execution_id):
            raise UnknownExecution(execution_id)

        with self._lock:
            cell = self._cells.get(code_cell_id) or CodeCell(cell_id=code_cell_id)
            current = cell.latest_execution_id
            if current is not None and execution_id <= current:
                logger.debug(f"Cell {code_cell_id}: keeping {current}, ignoring older {execution_id}")
                return False
            self._cells[code_cell_id] = replace(cell, latest_execution_id=execution_id)
        return True

    def latest(self, code_cell_id: str) -> Optional[str]:
        """The most recent execution id attached to a cell, if any."""
        cell = self._cells.get(code_cell_id)
        return cell.latest_execution_id if cell else None

    def edit(self, code_cell_id: str, source: str) -> CodeCell:
        """Store the client's current source text for a cell."""
        with self._lock:
            cell = self._cells.get(code_cell_id) or CodeCell(cell_id=code_cell_id)
            cell = replace(cell, source=source)
            self._cells[code_cell_id] = cell
        return cell

    def cell(self, code_cell_id: str) -> Optional[CodeCell]:
        return self._cells.get(code_cell_id)
