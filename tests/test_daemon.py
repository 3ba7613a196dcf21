"""Tests for Daemon wiring."""

import json
import sqlite3

import pytest

from runtimed.config import RuntimedConfig
from runtimed.daemon import Daemon
from runtimed.dispatcher import DAEMON_RESTARTED
from runtimed.errors import ConfigError, RuntimeDead
from runtimed.ledger_store import FileLedgerStore, InMemoryLedgerStore, SqliteLedgerStore
from runtimed.protocol import RecordingAdapter
from runtimed.schemas import ExecutionStatus


class TestConstruction:
    """Tests for building a Daemon."""

    def test_defaults(self):
        """With no arguments the ledger is in memory and the default timeout applies."""
        daemon = Daemon()
        assert isinstance(daemon.ledger.store, InMemoryLedgerStore)
        assert daemon.liveness.keepalive_timeout == 30.0

    def test_store_from_config(self, tmp_path):
        """ledger_backend picks the store."""
        config = RuntimedConfig(ledger_backend="file", ledger_path=str(tmp_path / "ledger"))
        assert isinstance(Daemon(config).ledger.store, FileLedgerStore)

    def test_explicit_store_wins(self, tmp_path):
        """A store passed in is used over the configured one."""
        store = InMemoryLedgerStore()
        config = RuntimedConfig(ledger_backend="file", ledger_path=str(tmp_path / "ledger"))
        assert Daemon(config, store=store).ledger.store is store

    def test_invalid_config(self):
        """An invalid config is rejected at construction."""
        with pytest.raises(ConfigError):
            Daemon(RuntimedConfig(keepalive_timeout_seconds=-1))


class TestEndToEnd:
    """Submissions through a fully wired daemon."""

    def test_submit_complete_recall(self, connection_info):
        """submit -> complete -> recall by id, cell and event, then shut the runtime down."""
        adapters = {}

        def factory(snapshot):
            adapters[snapshot.runtime_id] = RecordingAdapter()
            return adapters[snapshot.runtime_id]

        received = []
        with Daemon(adapter_factory=factory) as daemon:
            daemon.events.subscribe(received.append)
            runtime_id = daemon.registry.register(connection_info)
            daemon.registry.mark_ready(runtime_id)

            eid = daemon.dispatcher.submit(runtime_id, "1+1", code_cell_id="c1")
            adapters[runtime_id].emit(eid, {"header": {"msg_type": "stream"}, "content": {"text": "2"}})
            adapters[runtime_id].finish(eid)

            assert daemon.ledger.get(eid).status == ExecutionStatus.COMPLETED
            assert [m.text() for m in daemon.ledger.messages(eid)] == ["2"]
            assert daemon.associations.latest("c1") == eid
            assert received[-1].event_type == "execution.completed"

            daemon.dispatcher.shutdown_runtime(runtime_id)
            with pytest.raises(RuntimeDead):
                daemon.dispatcher.submit(runtime_id, "2+2")

    def test_start_stop(self):
        """start() runs the liveness sweep and stop() ends it."""
        daemon = Daemon()
        daemon.start()
        assert daemon.liveness.running
        daemon.stop()
        assert not daemon.liveness.running

    def test_stop_closes_sqlite(self, tmp_path):
        """The sqlite connection is closed once the daemon stops."""
        config = RuntimedConfig(ledger_backend="sqlite", ledger_path=str(tmp_path / "l.db"))
        daemon = Daemon(config)
        assert isinstance(daemon.ledger.store, SqliteLedgerStore)
        daemon.start()
        daemon.stop()
        with pytest.raises(sqlite3.ProgrammingError):
            daemon.ledger.store.ids()

    def test_stop_shuts_down_adapters(self, connection_info):
        """Adapters of live runtimes are shut down on stop."""
        adapters = {}

        def factory(snapshot):
            adapters[snapshot.runtime_id] = RecordingAdapter()
            return adapters[snapshot.runtime_id]

        with Daemon(adapter_factory=factory) as daemon:
            runtime_id = daemon.registry.register(connection_info)
            daemon.registry.mark_ready(runtime_id)
            daemon.dispatcher.submit(runtime_id, "while True: pass")
            assert adapters[runtime_id].shut_down is False

        assert adapters[runtime_id].shut_down is True


class TestRestart:
    """A second daemon opening the ledger an earlier one left behind."""

    def test_unfinished_executions_closed_on_start(self, tmp_path, connection_info):
        """Queued work becomes interrupted and running work errored, and neither can be touched again."""
        store_dir = tmp_path / "ledger"

        first = Daemon(store=FileLedgerStore(store_dir), adapter_factory=lambda snap: RecordingAdapter())
        first.start()
        starting = first.registry.register(connection_info)
        waiting = first.dispatcher.submit(starting, "import numpy")
        busy = first.registry.register(connection_info)
        first.registry.mark_ready(busy)
        running = first.dispatcher.submit(busy, "while True: pass")
        first.liveness.stop()  # process gone without a clean stop

        second = Daemon(store=FileLedgerStore(store_dir))
        with second:
            waiting_record = second.ledger.get(waiting)
            running_record = second.ledger.get(running)
            assert waiting_record.status == ExecutionStatus.INTERRUPTED
            assert waiting_record.reason == DAEMON_RESTARTED
            assert running_record.status == ExecutionStatus.ERRORED
            assert running_record.reason == DAEMON_RESTARTED

            assert second.dispatcher.interrupt(waiting) == ExecutionStatus.INTERRUPTED
            assert second.dispatcher.complete(running, ExecutionStatus.COMPLETED).status == ExecutionStatus.ERRORED

    def test_finished_executions_untouched(self, tmp_path, connection_info):
        """Terminal records from the earlier process keep their trail."""
        store_dir = tmp_path / "ledger"
        with Daemon(store=FileLedgerStore(store_dir)) as first:
            runtime_id = first.registry.register(connection_info)
            first.registry.mark_ready(runtime_id)
            eid = first.dispatcher.submit(runtime_id, "1+1")

        with Daemon(store=FileLedgerStore(store_dir)) as second:
            record = second.ledger.get(eid)
            assert record.status == ExecutionStatus.COMPLETED
            assert len(record.transitions) == 3


class TestRegisterDiscovered:
    """Tests for register_discovered()."""

    def test_registers_each_kernel(self, tmp_path, connection_info):
        """Every valid connection file becomes a starting runtime; bad files are skipped."""
        for name in ("kernel-a.json", "kernel-b.json"):
            (tmp_path / name).write_text(json.dumps(connection_info))
        (tmp_path / "kernel-bad.json").write_text("nope")

        daemon = Daemon(RuntimedConfig(jupyter_runtime_dir=str(tmp_path)))
        runtime_ids = daemon.register_discovered()

        assert len(runtime_ids) == 2
        assert daemon.registry.runtime_ids() == runtime_ids
        snapshot = daemon.registry.lookup(runtime_ids[0])
        assert snapshot.connection.connection_file == str(tmp_path / "kernel-a.json")

    def test_empty_directory(self, tmp_path):
        """An empty runtime directory registers nothing."""
        assert Daemon().register_discovered(tmp_path) == []
