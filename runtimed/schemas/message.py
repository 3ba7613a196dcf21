"""
ExecutionMessage schema - kernel output captured for one execution.

Kernels broadcast outputs (stream text, results, errors, display data,
status changes) on the iopub channel. The protocol adapter matches each
message to the execution whose request it answers (via the parent header)
and hands it to the ledger, so outputs can be recalled by execution long
after the kernel is gone.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionMessage:
    """
    One kernel message attributed to an execution.

    Attributes:
        execution_id: The execution the message belongs to
        runtime_id: The runtime that sent it
        msg_type: Jupyter message type ('stream', 'execute_result', 'error', ...)
        content: Message content as sent by the kernel
        received_at: When the daemon recorded it
        msg_id: The kernel's message id, if present
        parent_msg_id: msg_id of the request this message answers, if present
        metadata: Message metadata as sent by the kernel
    """
    execution_id: str
    runtime_id: str
    msg_type: str
    content: dict[str, Any]
    received_at: datetime
    msg_id: Optional[str] = None
    parent_msg_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_jupyter(
        cls,
        execution_id: str,
        runtime_id: str,
        message: Mapping[str, Any],
        at: Optional[datetime] = None,
    ) -> "ExecutionMessage":
        """
        Build from a Jupyter wire message (header / parent_header / content / metadata).

        A flat mapping with a top-level 'msg_type' is accepted as well.

        Raises:
            TypeError: If the message is not a mapping
        """
        if not isinstance(message, Mapping):
            raise TypeError(f"Kernel message must be a mapping, got {type(message).__name__}")
        header = message.get("header") or {}
        parent_header = message.get("parent_header") or {}
        return cls(
            execution_id=execution_id,
            runtime_id=runtime_id,
            msg_type=header.get("msg_type") or message.get("msg_type") or "unknown",
            content=dict(message.get("content") or {}),
            received_at=at or _utcnow(),
            msg_id=header.get("msg_id") or message.get("msg_id"),
            parent_msg_id=parent_header.get("msg_id"),
            metadata=dict(message.get("metadata") or {}),
        )

    def text(self) -> str:
        """Human-readable rendering of the content."""
        content = self.content
        if self.msg_type == "stream":
            return content.get("text", "")
        if self.msg_type in ("execute_result", "display_data"):
            data = content.get("data") or {}
            if "text/plain" in data:
                return data["text/plain"]
        if self.msg_type == "error":
            return f"{content.get('ename', 'Error')}: {content.get('evalue', '')}"
        return json.dumps(content, sort_keys=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "execution_id": self.execution_id,
            "runtime_id": self.runtime_id,
            "msg_type": self.msg_type,
            "content": self.content,
            "received_at": self.received_at.isoformat(),
        }
        if self.msg_id is not None:
            result["msg_id"] = self.msg_id
        if self.parent_msg_id is not None:
            result["parent_msg_id"] = self.parent_msg_id
        if self.metadata:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionMessage":
        """Deserialize from dictionary."""
        return cls(
            execution_id=data["execution_id"],
            runtime_id=data["runtime_id"],
            msg_type=data["msg_type"],
            content=data.get("content", {}),
            received_at=datetime.fromisoformat(data["received_at"]),
            msg_id=data.get("msg_id"),
            parent_msg_id=data.get("parent_msg_id"),
            metadata=data.get("metadata", {}),
        )
