"""Tests for kernel connection discovery."""

import json

import pytest

from runtimed.discovery import default_runtime_dir, discover_connections, read_connection_file
from runtimed.errors import InvalidDescriptor


def _write(directory, name, payload):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


class TestReadConnectionFile:
    """Tests for read_connection_file()."""

    def test_reads_and_records_path(self, tmp_path, connection_info):
        """The file's path is kept on the ConnectionInfo."""
        path = _write(tmp_path, "kernel-1.json", connection_info)
        info = read_connection_file(path)
        assert info.shell_port == 53794
        assert info.connection_file == str(path)

    def test_not_json(self, tmp_path):
        """Invalid JSON is an InvalidDescriptor."""
        path = _write(tmp_path, "kernel-1.json", "{not json")
        with pytest.raises(InvalidDescriptor, match="Cannot read"):
            read_connection_file(path)

    def test_missing_file(self, tmp_path):
        """A missing file is an InvalidDescriptor."""
        with pytest.raises(InvalidDescriptor):
            read_connection_file(tmp_path / "kernel-missing.json")

    def test_malformed_descriptor(self, tmp_path, connection_info):
        """Missing keys are reported by name."""
        del connection_info["shell_port"]
        path = _write(tmp_path, "kernel-1.json", connection_info)
        with pytest.raises(InvalidDescriptor, match="shell_port"):
            read_connection_file(path)

    def test_json_array(self, tmp_path):
        """A JSON array is not a descriptor."""
        path = _write(tmp_path, "kernel-1.json", "[1, 2]")
        with pytest.raises(InvalidDescriptor, match="mapping"):
            read_connection_file(path)


class TestDiscoverConnections:
    """Tests for discover_connections()."""

    def test_finds_kernel_files_in_order(self, tmp_path, connection_info):
        """Only kernel-*.json files are read, in name order."""
        _write(tmp_path, "kernel-b.json", {**connection_info, "kernel_name": "ir"})
        _write(tmp_path, "kernel-a.json", connection_info)
        _write(tmp_path, "nbserver-1.json", {"port": 8888})

        found = list(discover_connections(tmp_path))
        assert [info.kernel_name for info in found] == ["python3", "ir"]

    def test_skips_malformed(self, tmp_path, connection_info, caplog):
        """A broken file is logged and skipped."""
        _write(tmp_path, "kernel-bad.json", "{")
        _write(tmp_path, "kernel-good.json", connection_info)

        found = list(discover_connections(tmp_path))
        assert len(found) == 1
        assert "Skipping kernel-bad.json" in caplog.text

    def test_missing_directory(self, tmp_path):
        """A missing directory yields nothing."""
        assert list(discover_connections(tmp_path / "nope")) == []

    def test_env_var_directory(self, tmp_path, monkeypatch, connection_info):
        """JUPYTER_RUNTIME_DIR is the default directory."""
        monkeypatch.setenv("JUPYTER_RUNTIME_DIR", str(tmp_path))
        _write(tmp_path, "kernel-a.json", connection_info)
        assert default_runtime_dir() == tmp_path
        assert len(list(discover_connections())) == 1
