"""
Kernel connection discovery.

Every Jupyter kernel writes a connection file (kernel-<id>.json) into the
Jupyter runtime directory when it starts. Reading those files is how the
daemon learns about kernels it did not launch itself.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Iterator, Optional

from runtimed.errors import InvalidDescriptor
from runtimed.schemas import ConnectionInfo

logger = logging.getLogger(__name__)

CONNECTION_FILE_GLOB = "kernel-*.json"


def default_runtime_dir() -> Path:
    """
    Locate the Jupyter runtime directory.

    JUPYTER_RUNTIME_DIR wins; otherwise the per-platform default jupyter_core
    would pick.
    """
    env_dir = os.environ.get("JUPYTER_RUNTIME_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    if sys.platform == "darwin":
        return Path("~/Library/Jupyter/runtime").expanduser()
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "~")).expanduser() / "jupyter" / "runtime"
    data_home = os.environ.get("XDG_DATA_HOME") or "~/.local/share"
    return Path(data_home).expanduser() / "jupyter" / "runtime"


def read_connection_file(path: Path | str) -> ConnectionInfo:
    """
    Parse one connection file.

    Raises:
        InvalidDescriptor: If the file is unreadable, not JSON, or malformed
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidDescriptor(f"Cannot read connection file {path}: {e}")

    if isinstance(data, dict):
        data = {**data, "connection_file": str(path)}
    return ConnectionInfo.from_dict(data)


def discover_connections(runtime_dir: Optional[Path | str] = None) -> Iterator[ConnectionInfo]:
    """
    Yield a ConnectionInfo for every readable connection file.

    Malformed files are logged and skipped; a stale file from a crashed
    kernel should not hide the healthy ones.
    """
    directory = Path(runtime_dir).expanduser() if runtime_dir else default_runtime_dir()
    if not directory.is_dir():
        logger.debug(f"Jupyter runtime directory does not exist: {directory}")
        return

    for path in sorted(directory.glob(CONNECTION_FILE_GLOB)):
        try:
            yield read_connection_file(path)
        except InvalidDescriptor as e:
            logger.warning(f"Skipping {path.name}: {e}")
