"""
Configuration management for runtimed.

Configuration lives in $RUNTIMED_HOME/config.yaml (default
~/.config/runtimed/config.yaml). An optional `env_file` named in the config
is loaded into the process environment with python-dotenv.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from runtimed.errors import ConfigError

LEDGER_BACKENDS = ("memory", "file", "sqlite")
LOG_FORMATS = ("structured", "pretty")


def get_runtimed_home() -> Path:
    """Directory holding config.yaml (RUNTIMED_HOME, else ~/.config/runtimed)."""
    home = os.environ.get("RUNTIMED_HOME")
    if home:
        return Path(home)
    return Path("~/.config/runtimed").expanduser()


@dataclass
class RuntimedConfig:
    """
    Daemon configuration.

    Attributes:
        keepalive_timeout_seconds: Silence after which a runtime is declared dead
        sweep_interval_seconds: How often the liveness monitor checks
        ledger_backend: 'memory', 'file' or 'sqlite'
        ledger_path: Directory (file) or database path (sqlite)
        log_level: DEBUG, INFO, WARNING, ERROR
        log_format: 'structured' (JSON lines) or 'pretty' (rich console)
        log_file: Where structured logs go, if anywhere
        jupyter_runtime_dir: Where to discover kernel connection files
        env_file: Dotenv file loaded on startup
    """
    keepalive_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 5.0
    ledger_backend: str = "memory"
    ledger_path: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: Optional[str] = None
    jupyter_runtime_dir: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """
        Check value ranges and enumerations.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.keepalive_timeout_seconds <= 0:
            raise ConfigError("keepalive_timeout_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ConfigError("sweep_interval_seconds must be > 0")
        if self.sweep_interval_seconds > self.keepalive_timeout_seconds:
            raise ConfigError("sweep_interval_seconds must not exceed keepalive_timeout_seconds")
        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ConfigError(
                f"ledger_backend must be one of {list(LEDGER_BACKENDS)}, got {self.ledger_backend!r}"
            )
        if self.ledger_backend != "memory" and not self.ledger_path:
            raise ConfigError(f"ledger_backend '{self.ledger_backend}' requires ledger_path")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {list(LOG_FORMATS)}, got {self.log_format!r}")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuntimedConfig":
        """
        Build a config from parsed YAML.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")
        try:
            config = cls(**data)
            config.keepalive_timeout_seconds = float(config.keepalive_timeout_seconds)
            config.sweep_interval_seconds = float(config.sweep_interval_seconds)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config: {e}")
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(config_path: Optional[Path] = None) -> RuntimedConfig:
    """
    Load daemon configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $RUNTIMED_HOME/config.yaml

    Returns:
        RuntimedConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_runtimed_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"runtimed config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    config = RuntimedConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config
