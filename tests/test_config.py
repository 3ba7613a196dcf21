"""Tests for runtimed configuration."""

import os
from pathlib import Path

import pytest
import yaml

from runtimed.config import RuntimedConfig, get_runtimed_home, load_config
from runtimed.errors import ConfigError


def _write_config(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    return path


class TestGetRuntimedHome:
    """Tests for get_runtimed_home()."""

    def test_env_var(self, monkeypatch, tmp_path):
        """RUNTIMED_HOME overrides the default."""
        monkeypatch.setenv("RUNTIMED_HOME", str(tmp_path / "custom"))
        assert get_runtimed_home() == tmp_path / "custom"

    def test_default(self, monkeypatch):
        """Without RUNTIMED_HOME the home is ~/.config/runtimed."""
        monkeypatch.delenv("RUNTIMED_HOME", raising=False)
        assert get_runtimed_home() == Path("~/.config/runtimed").expanduser()


class TestRuntimedConfig:
    """Tests for RuntimedConfig."""

    def test_defaults(self):
        """Defaults are valid."""
        config = RuntimedConfig()
        assert config.keepalive_timeout_seconds == 30.0
        assert config.sweep_interval_seconds == 5.0
        assert config.ledger_backend == "memory"
        config.validate()

    def test_from_dict_coerces_numbers(self):
        """Integer durations become floats."""
        config = RuntimedConfig.from_dict({"keepalive_timeout_seconds": 10, "sweep_interval_seconds": 1})
        assert config.keepalive_timeout_seconds == 10.0
        assert isinstance(config.sweep_interval_seconds, float)

    def test_unknown_key(self):
        """Unknown keys are a ConfigError."""
        with pytest.raises(ConfigError, match="Unknown config keys"):
            RuntimedConfig.from_dict({"keepalive": 10})

    @pytest.mark.parametrize("data", [
        {"keepalive_timeout_seconds": 0},
        {"sweep_interval_seconds": -1},
        {"keepalive_timeout_seconds": 2, "sweep_interval_seconds": 5},
        {"ledger_backend": "postgres"},
        {"ledger_backend": "sqlite"},
        {"log_format": "xml"},
        {"log_level": "LOUD"},
        {"keepalive_timeout_seconds": "soon"},
    ])
    def test_invalid_values(self, data):
        """Bad values are a ConfigError."""
        with pytest.raises(ConfigError):
            RuntimedConfig.from_dict(data)

    def test_to_dict(self):
        """to_dict() output loads back to an equal config."""
        data = RuntimedConfig(ledger_backend="file", ledger_path="/tmp/l").to_dict()
        assert data["ledger_backend"] == "file"
        assert RuntimedConfig.from_dict(data) == RuntimedConfig(ledger_backend="file", ledger_path="/tmp/l")


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file(self, isolated_home):
        """A missing config.yaml raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="config.yaml not found"):
            load_config()

    def test_loads_from_home(self, isolated_home):
        """config.yaml is read from RUNTIMED_HOME."""
        _write_config(isolated_home / "config.yaml", {"keepalive_timeout_seconds": 60})
        assert load_config().keepalive_timeout_seconds == 60.0

    def test_explicit_path(self, tmp_path):
        """An explicit path wins over the home directory."""
        path = _write_config(tmp_path / "other.yaml", {"log_format": "pretty"})
        assert load_config(path).log_format == "pretty"

    def test_empty_file_gives_defaults(self, tmp_path):
        """An empty file is the default config."""
        path = _write_config(tmp_path / "config.yaml", "")
        assert load_config(path) == RuntimedConfig()

    def test_bad_yaml(self, tmp_path):
        """Unparseable YAML is a ConfigError."""
        path = _write_config(tmp_path / "config.yaml", "key: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        """A YAML list is a ConfigError."""
        path = _write_config(tmp_path / "config.yaml", "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_env_file_loaded(self, tmp_path, monkeypatch):
        """The configured .env file is loaded into the environment."""
        monkeypatch.delenv("RUNTIMED_TEST_TOKEN", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("RUNTIMED_TEST_TOKEN=abc123\n")
        path = _write_config(tmp_path / "config.yaml", {"env_file": str(env_file)})

        load_config(path)
        assert os.environ["RUNTIMED_TEST_TOKEN"] == "abc123"
        monkeypatch.delenv("RUNTIMED_TEST_TOKEN")

    def test_missing_env_file_is_ignored(self, tmp_path):
        """A missing .env file is not an error."""
        path = _write_config(tmp_path / "config.yaml", {"env_file": str(tmp_path / "nope.env")})
        assert load_config(path).env_file == str(tmp_path / "nope.env")
