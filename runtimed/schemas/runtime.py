"""
Runtime schemas - connection descriptors and runtime snapshots.

ConnectionInfo mirrors the Jupyter connection file a kernel writes on start.
The core treats it as opaque beyond validating that it is well formed; only
the protocol adapter ever opens the sockets it describes.

RuntimeSnapshot is the immutable view of a registry record handed out by
RuntimeRegistry.lookup().
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from runtimed.errors import InvalidDescriptor

ULID = str

TRANSPORTS = ("tcp", "ipc")
PORT_FIELDS = ("shell_port", "iopub_port", "stdin_port", "control_port", "hb_port")


class RuntimeStatus(str, Enum):
    """Liveness state of a runtime."""
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


@dataclass(frozen=True)
class ConnectionInfo:
    """
    How to reach a kernel process.

    Attributes:
        ip: Host the kernel listens on
        transport: 'tcp' or 'ipc'
        shell_port: Shell channel (execute requests)
        iopub_port: IOPub channel (broadcast outputs and status)
        stdin_port: Stdin channel (input requests)
        control_port: Control channel (interrupt, shutdown)
        hb_port: Heartbeat channel
        key: HMAC signing key
        signature_scheme: e.g. 'hmac-sha256'
        kernel_name: Kernelspec name, may be empty
        connection_file: Path the descriptor was read from, if any
    """
    ip: str
    transport: str
    shell_port: int
    iopub_port: int
    stdin_port: int
    control_port: int
    hb_port: int
    key: str = ""
    signature_scheme: str = "hmac-sha256"
    kernel_name: str = ""
    connection_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ConnectionInfo":
        """
        Validate and build a descriptor.

        Accepts a mapping shaped like a Jupyter connection file, or an
        existing ConnectionInfo (returned unchanged).

        Raises:
            InvalidDescriptor: If the descriptor is malformed
        """
        if isinstance(data, ConnectionInfo):
            return data
        if not isinstance(data, Mapping):
            raise InvalidDescriptor(
                f"Connection descriptor must be a mapping, got {type(data).__name__}"
            )

        missing = [k for k in ("ip", "transport", *PORT_FIELDS) if k not in data]
        if missing:
            raise InvalidDescriptor(f"Connection descriptor missing keys: {missing}")

        transport = data["transport"]
        if transport not in TRANSPORTS:
            raise InvalidDescriptor(
                f"Unknown transport: {transport!r} (expected one of {list(TRANSPORTS)})"
            )

        ip = data["ip"]
        if not isinstance(ip, str) or not ip:
            raise InvalidDescriptor("Connection descriptor 'ip' must be a non-empty string")

        ports = {}
        for name in PORT_FIELDS:
            value = data[name]
            # bool is an int subclass; a port of True is a malformed file
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidDescriptor(f"{name} must be an integer, got {value!r}")
            if transport == "tcp" and not 1 <= value <= 65535:
                raise InvalidDescriptor(f"{name} out of range: {value}")
            ports[name] = value

        key = data.get("key") or ""
        if not isinstance(key, str):
            raise InvalidDescriptor("Connection descriptor 'key' must be a string")

        return cls(
            ip=ip,
            transport=transport,
            key=key,
            signature_scheme=data.get("signature_scheme") or "hmac-sha256",
            kernel_name=data.get("kernel_name") or "",
            connection_file=data.get("connection_file"),
            **ports,
        )

    def channel_url(self, channel: str) -> str:
        """Build the zmq URL for a channel ('shell', 'iopub', 'stdin', 'control', 'hb')."""
        port = getattr(self, f"{channel}_port")
        if self.transport == "ipc":
            return f"ipc://{self.ip}-{port}"
        return f"tcp://{self.ip}:{port}"

    def to_dict(self, redact: bool = False) -> dict[str, Any]:
        """Serialize to dictionary. With redact=True the signing key is dropped."""
        result = asdict(self)
        if redact:
            result.pop("key")
        if result["connection_file"] is None:
            result.pop("connection_file")
        return result


@dataclass(frozen=True)
class RuntimeSnapshot:
    """
    Point-in-time view of a registered runtime.

    Attributes:
        runtime_id: ULID of the runtime
        connection: The descriptor it was registered with
        status: starting, idle, busy or dead
        registered_at: When register() was called
        last_keepalive: Most recent heartbeat (registration time until the first one)
        dead_reason: Why the runtime died (None while alive)
        died_at: When it was marked dead (None while alive)
    """
    runtime_id: ULID
    connection: ConnectionInfo
    status: RuntimeStatus
    registered_at: datetime
    last_keepalive: datetime
    dead_reason: Optional[str] = None
    died_at: Optional[datetime] = None

    @property
    def is_dead(self) -> bool:
        return self.status == RuntimeStatus.DEAD

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "runtime_id": self.runtime_id,
            "connection": self.connection.to_dict(redact=True),
            "status": self.status.value,
            "registered_at": self.registered_at.isoformat(),
            "last_keepalive": self.last_keepalive.isoformat(),
        }
        if self.dead_reason is not None:
            result["dead_reason"] = self.dead_reason
        if self.died_at is not None:
            result["died_at"] = self.died_at.isoformat()
        return result
