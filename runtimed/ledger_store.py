"""
LedgerStore - Persist execution records.

The ExecutionLedger decides what may be written; a LedgerStore only keeps
records keyed by execution id and hands them back. Any store can back the
ledger interchangeably.

Storage backends:
- In-memory (default, and for testing)
- File-based (one JSON document per execution, one JSON-lines file of
  kernel messages per execution)
- SQLite (one row per execution, one row per kernel message)
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from runtimed.errors import ConfigError
from runtimed.schemas import ExecutionMessage, ExecutionRecord

if TYPE_CHECKING:
    from runtimed.config import RuntimedConfig


class LedgerStore(ABC):
    """
    Abstract base class for execution record storage.

    Implementations must provide methods to:
    - Insert a new record (refusing duplicates)
    - Replace an existing record with its successor
    - Retrieve a record by id
    - List ids in identifier order, optionally filtered by runtime or cell
    - Append and read back kernel messages per execution
    """

    @abstractmethod
    def insert(self, record: ExecutionRecord) -> bool:
        """
        Store a new record.

        Args:
            record: The record to store

        Returns:
            False if a record with this id already exists (nothing is written)
        """
        pass

    @abstractmethod
    def replace(self, record: ExecutionRecord) -> None:
        """
        Overwrite the stored record with a newer version of itself.

        Args:
            record: The successor record (same execution_id)
        """
        pass

    @abstractmethod
    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        """
        Retrieve a record by id.

        Returns:
            The ExecutionRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def ids(
        self,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
    ) -> list[str]:
        """
        List stored execution ids.

        Args:
            runtime_id: Only executions on this runtime
            code_cell_id: Only executions of this code cell

        Returns:
            Ids sorted ascending (time order for ULIDs)
        """
        pass

    @abstractmethod
    def append_message(self, message: ExecutionMessage) -> None:
        """Append a kernel message to its execution's output log."""
        pass

    @abstractmethod
    def messages(self, execution_id: str) -> list[ExecutionMessage]:
        """
        Kernel messages of an execution.

        Returns:
            Messages in arrival order (empty if there are none)
        """
        pass


def _matches(record: ExecutionRecord, runtime_id: Optional[str], code_cell_id: Optional[str]) -> bool:
    if runtime_id is not None and record.runtime_id != runtime_id:
        return False
    if code_cell_id is not None and record.code_cell_id != code_cell_id:
        return False
    return True


class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._records: dict[str, ExecutionRecord] = {}
        self._messages: dict[str, list[ExecutionMessage]] = {}
        self._lock = threading.Lock()

    def insert(self, record: ExecutionRecord) -> bool:
        with self._lock:
            if record.execution_id in self._records:
                return False
            self._records[record.execution_id] = record
            return True

    def replace(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records[record.execution_id] = record

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._records.get(execution_id)

    def ids(
        self,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
    ) -> list[str]:
        with self._lock:
            return sorted(
                execution_id
                for execution_id, record in self._records.items()
                if _matches(record, runtime_id, code_cell_id)
            )

    def append_message(self, message: ExecutionMessage) -> None:
        with self._lock:
            self._messages.setdefault(message.execution_id, []).append(message)

    def messages(self, execution_id: str) -> list[ExecutionMessage]:
        with self._lock:
            return list(self._messages.get(execution_id, []))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._records.clear()
            self._messages.clear()


class FileLedgerStore(LedgerStore):
    """
    File-based implementation of LedgerStore.

    Stores records as JSON files in a directory tree:
        store_dir/
            executions/
                {execution_id}.json
            messages/
                {execution_id}.jsonl

    Filtered id listings load every record; use SQLite for large ledgers.
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._executions_dir = self._store_dir / "executions"
        self._messages_dir = self._store_dir / "messages"
        self._executions_dir.mkdir(parents=True, exist_ok=True)
        self._messages_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _path(self, execution_id: str) -> Path:
        return self._executions_dir / f"{execution_id}.json"

    def _write(self, record: ExecutionRecord) -> None:
        path = self._path(record.execution_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        tmp_path.replace(path)

    def insert(self, record: ExecutionRecord) -> bool:
        with self._lock:
            if self._path(record.execution_id).exists():
                return False
            self._write(record)
            return True

    def replace(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._write(record)

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        path = self._path(execution_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return ExecutionRecord.from_dict(data)

    def ids(
        self,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
    ) -> list[str]:
        all_ids = sorted(p.stem for p in self._executions_dir.glob("*.json"))
        if runtime_id is None and code_cell_id is None:
            return all_ids
        result = []
        for execution_id in all_ids:
            record = self.get(execution_id)
            if record is not None and _matches(record, runtime_id, code_cell_id):
                result.append(execution_id)
        return result

    def append_message(self, message: ExecutionMessage) -> None:
        path = self._messages_dir / f"{message.execution_id}.jsonl"
        with self._lock:
            with open(path, "a") as f:
                f.write(json.dumps(message.to_dict()) + "\n")

    def messages(self, execution_id: str) -> list[ExecutionMessage]:
        path = self._messages_dir / f"{execution_id}.jsonl"
        if not path.exists():
            return []
        with open(path) as f:
            return [ExecutionMessage.from_dict(json.loads(line)) for line in f if line.strip()]


class SqliteLedgerStore(LedgerStore):
    """
    SQLite implementation of LedgerStore.

    One row per execution and one per kernel message. The runtime and cell
    columns back filtered id listings; record reads go through the JSON
    document so the record shape stays in one place.
    """

    SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id TEXT PRIMARY KEY,
    runtime_id TEXT NOT NULL,
    code_cell_id TEXT,
    status TEXT NOT NULL,
    document TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_executions_runtime ON executions (runtime_id);
CREATE INDEX IF NOT EXISTS idx_executions_cell ON executions (code_cell_id);
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL,
    runtime_id TEXT NOT NULL,
    msg_id TEXT,
    parent_msg_id TEXT,
    msg_type TEXT NOT NULL,
    received_at TEXT NOT NULL,
    document TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_execution ON messages (execution_id);
"""

    def __init__(self, db_path: Path | str):
        if str(db_path) == ":memory:":
            self._db_path = ":memory:"
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._db_path = str(path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(self.SCHEMA)
            self._conn.commit()

    def insert(self, record: ExecutionRecord) -> bool:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO executions (execution_id, runtime_id, code_cell_id, status, document) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        record.execution_id,
                        record.runtime_id,
                        record.code_cell_id,
                        record.status.value,
                        json.dumps(record.to_dict()),
                    ),
                )
            except sqlite3.IntegrityError:
                return False
            self._conn.commit()
            return True

    def replace(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE executions SET status = ?, document = ? WHERE execution_id = ?",
                (record.status.value, json.dumps(record.to_dict()), record.execution_id),
            )
            self._conn.commit()

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
        if row is None:
            return None
        return ExecutionRecord.from_dict(json.loads(row[0]))

    def ids(
        self,
        runtime_id: Optional[str] = None,
        code_cell_id: Optional[str] = None,
    ) -> list[str]:
        clauses = []
        params = []
        if runtime_id is not None:
            clauses.append("runtime_id = ?")
            params.append(runtime_id)
        if code_cell_id is not None:
            clauses.append("code_cell_id = ?")
            params.append(code_cell_id)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT execution_id FROM executions {where}ORDER BY execution_id",
                params,
            ).fetchall()
        return [row[0] for row in rows]

    def append_message(self, message: ExecutionMessage) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO messages "
                "(execution_id, runtime_id, msg_id, parent_msg_id, msg_type, received_at, document) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    message.execution_id,
                    message.runtime_id,
                    message.msg_id,
                    message.parent_msg_id,
                    message.msg_type,
                    message.received_at.isoformat(),
                    json.dumps(message.to_dict()),
                ),
            )
            self._conn.commit()

    def messages(self, execution_id: str) -> list[ExecutionMessage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT document FROM messages WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            ).fetchall()
        return [ExecutionMessage.from_dict(json.loads(row[0])) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_store(config: "RuntimedConfig") -> LedgerStore:
    """
    Build the LedgerStore named by config.ledger_backend.

    Raises:
        ConfigError: If the backend is unknown or needs a path that is missing
    """
    backend = config.ledger_backend
    if backend == "memory":
        return InMemoryLedgerStore()

    if not config.ledger_path:
        raise ConfigError(f"ledger_backend '{backend}' requires ledger_path")
    path = Path(config.ledger_path).expanduser()

    if backend == "file":
        return FileLedgerStore(path)
    if backend == "sqlite":
        return SqliteLedgerStore(path)
    raise ConfigError(f"Unknown ledger_backend: {backend}")
