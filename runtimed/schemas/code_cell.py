"""
CodeCell schema - an editable slot in a client document.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class CodeCell:
    """
    A code cell and the most recent execution that ran it.

    The client owns `source`; the daemon only ever moves
    `latest_execution_id`, and only forward in time.
    """
    cell_id: str
    source: Optional[str] = None
    latest_execution_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"cell_id": self.cell_id}
        if self.source is not None:
            result["source"] = self.source
        if self.latest_execution_id is not None:
            result["latest_execution_id"] = self.latest_execution_id
        return result
