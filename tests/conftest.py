from datetime import datetime, timedelta, timezone

import pytest

from runtimed.associations import AssociationIndex
from runtimed.dispatcher import ExecutionDispatcher
from runtimed.events import EventBus
from runtimed.ids import IdGenerator
from runtimed.ledger import ExecutionLedger
from runtimed.protocol import RecordingAdapter
from runtimed.registry import RuntimeRegistry


class FakeClock:
    """Settable clock returning aware datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class AdapterPool:
    """AdapterFactory handing each runtime its own RecordingAdapter."""

    def __init__(self):
        self.adapters: dict[str, RecordingAdapter] = {}

    def __call__(self, snapshot):
        adapter = RecordingAdapter()
        self.adapters[snapshot.runtime_id] = adapter
        return adapter

    def __getitem__(self, runtime_id: str) -> RecordingAdapter:
        return self.adapters[runtime_id]


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.config/runtimed."""
    home = tmp_path / "runtimed_home"
    monkeypatch.setenv("RUNTIMED_HOME", str(home))
    return home


@pytest.fixture
def connection_info() -> dict:
    """A valid Jupyter connection file payload."""
    return {
        "shell_port": 53794,
        "iopub_port": 53795,
        "stdin_port": 53796,
        "control_port": 53797,
        "hb_port": 53798,
        "ip": "127.0.0.1",
        "key": "a0436f6c-1916-498b-8eb9-e81ab9368e84",
        "transport": "tcp",
        "signature_scheme": "hmac-sha256",
        "kernel_name": "python3",
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ids() -> IdGenerator:
    return IdGenerator()


@pytest.fixture
def registry(ids, clock) -> RuntimeRegistry:
    return RuntimeRegistry(ids=ids, clock=clock)


@pytest.fixture
def ledger() -> ExecutionLedger:
    return ExecutionLedger()


@pytest.fixture
def associations(ledger) -> AssociationIndex:
    return AssociationIndex(ledger)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def adapters() -> AdapterPool:
    return AdapterPool()


@pytest.fixture
def dispatcher(registry, ledger, adapters, associations, events, ids) -> ExecutionDispatcher:
    return ExecutionDispatcher(
        registry,
        ledger,
        adapter_factory=adapters,
        associations=associations,
        events=events,
        ids=ids,
    )


@pytest.fixture
def ready_runtime(registry, dispatcher, connection_info) -> str:
    """A registered, idle runtime (dispatcher already listening)."""
    runtime_id = registry.register(connection_info)
    registry.mark_ready(runtime_id)
    return runtime_id
