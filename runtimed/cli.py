"""
CLI interface for runtimed.

Provides commands to set up configuration, run the daemon, inspect
discovered kernel connections, and recall execution history from a
persistent ledger.

The ledger must use the 'file' or 'sqlite' backend for history to survive
the daemon process; the in-memory backend has nothing to show here.
"""

import json
from contextlib import contextmanager
from pathlib import Path

import click
import yaml

from runtimed import __version__


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'runtimed init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@contextmanager
def _open_ledger(ctx):
    """Open the configured persistent ledger read side; the store is closed on exit."""
    from runtimed.ledger import ExecutionLedger
    from runtimed.ledger_store import create_store

    config = _require_config(ctx)
    if config.ledger_backend == "memory":
        click.echo("✗ ledger_backend is 'memory'; there is no persistent history to read.", err=True)
        click.echo("Set ledger_backend to 'file' or 'sqlite' in config.yaml.", err=True)
        raise SystemExit(1)

    store = create_store(config)
    try:
        yield ExecutionLedger(store)
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()


@click.group()
@click.version_option(version=__version__, prog_name="runtimed")
@click.pass_context
def main(ctx):
    """
    runtimed - Execution tracking for notebook and console runtimes.
    """
    from runtimed.config import load_config
    from runtimed.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except Exception as e:
        # init does not need a config; other commands check ctx.obj themselves
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        Path(config.log_file).expanduser() if config.log_file else None,
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=False,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize runtimed configuration."""
    from runtimed.config import RuntimedConfig, get_runtimed_home

    home = get_runtimed_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = RuntimedConfig(
        ledger_backend="sqlite",
        ledger_path=str(home / "ledger.db"),
        log_file=str(home / "logs" / "runtimed.log"),
        env_file=str(home / ".env"),
    ).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# JUPYTER_RUNTIME_DIR=...\n")

    click.echo(f"Initialized runtimed config at {cfg_path}")


@main.command("config")
@click.pass_context
def show_config(ctx):
    """Show the effective configuration."""
    config = _require_config(ctx)
    click.echo(yaml.safe_dump(config.to_dict(), sort_keys=False).rstrip())


@main.command("serve")
@click.option("--runtime-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Jupyter runtime directory (default: config, then JUPYTER_RUNTIME_DIR)")
@click.pass_context
def serve(ctx, runtime_dir: Path | None):
    """Run the daemon until interrupted.

    Registers every kernel found in the Jupyter runtime directory, then keeps
    the liveness sweep running until SIGINT or SIGTERM.
    """
    import signal
    import threading

    from runtimed.daemon import Daemon
    from runtimed.errors import RuntimedError
    from runtimed.utils import setup_logging

    config = _require_config(ctx)
    setup_logging(
        Path(config.log_file).expanduser() if config.log_file else None,
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=True,
    )

    stop = threading.Event()

    def request_stop(signum, frame):
        stop.set()

    previous = {sig: signal.signal(sig, request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with Daemon(config) as daemon:
            runtime_ids = daemon.register_discovered(runtime_dir)
            click.echo(f"runtimed serving {len(runtime_ids)} runtime(s); press Ctrl+C to stop")
            while not stop.wait(0.2):
                pass
    except RuntimedError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    click.echo("runtimed stopped")


# =============================================================================
# Connections - discovered kernel connection files
# =============================================================================

@main.group("connections")
def connections_group():
    """Inspect kernel connection files."""
    pass


@connections_group.command("list")
@click.option("--runtime-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Jupyter runtime directory (default: config, then JUPYTER_RUNTIME_DIR)")
@click.pass_context
def list_connections(ctx, runtime_dir: Path | None):
    """List kernels discovered in the Jupyter runtime directory."""
    from rich.table import Table

    from runtimed.discovery import discover_connections
    from runtimed.utils import console

    if runtime_dir is None and "config" in ctx.obj:
        runtime_dir = ctx.obj["config"].jupyter_runtime_dir

    connections = list(discover_connections(runtime_dir))
    if not connections:
        click.echo("No kernel connection files found.")
        return

    table = Table(title="Kernel connections")
    table.add_column("file")
    table.add_column("kernel")
    table.add_column("shell")
    table.add_column("iopub")
    table.add_column("control")
    table.add_column("hb")
    for info in connections:
        table.add_row(
            Path(info.connection_file or "").name,
            info.kernel_name or "-",
            info.channel_url("shell"),
            info.channel_url("iopub"),
            info.channel_url("control"),
            info.channel_url("hb"),
        )
    console.print(table)


@connections_group.command("show")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def show_connection(path: Path):
    """Validate and print one connection file (signing key redacted)."""
    from runtimed.discovery import read_connection_file
    from runtimed.errors import InvalidDescriptor

    try:
        info = read_connection_file(path)
    except InvalidDescriptor as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(info.to_dict(redact=True), indent=2))


# =============================================================================
# History - recall executions from the persistent ledger
# =============================================================================

@main.command("history")
@click.option("--runtime", "runtime_id", help="Only executions on this runtime")
@click.option("--cell", "code_cell_id", help="Only executions of this code cell")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON lines instead of a table")
@click.option("--messages", "with_messages", is_flag=True, help="Include kernel output (JSON only)")
@click.pass_context
def history(ctx, runtime_id: str | None, code_cell_id: str | None, as_json: bool, with_messages: bool):
    """Show executions in submission order.

    Examples:

        runtimed history

        runtimed history --runtime 01J9Z3Q4X00000000000000000

        runtimed history --cell cell-7 --json --messages
    """
    from rich.table import Table

    from runtimed.utils import console

    with _open_ledger(ctx) as ledger:
        records = list(ledger.history(runtime_id=runtime_id, code_cell_id=code_cell_id))

        if as_json:
            for record in records:
                data = record.to_dict()
                if with_messages:
                    data["messages"] = [m.to_dict() for m in ledger.messages(record.execution_id)]
                click.echo(json.dumps(data))
            return

    if not records:
        click.echo("No executions recorded.")
        return

    table = Table(title="Executions")
    table.add_column("execution")
    table.add_column("runtime")
    table.add_column("cell")
    table.add_column("status")
    table.add_column("duration")
    table.add_column("reason")
    for record in records:
        table.add_row(
            record.execution_id,
            record.runtime_id,
            record.code_cell_id or "-",
            record.status.value,
            f"{record.duration_ms}ms" if record.duration_ms is not None else "-",
            record.reason or "",
        )
    console.print(table)


@main.command("show")
@click.argument("execution_id")
@click.pass_context
def show_execution(ctx, execution_id: str):
    """Show one execution with its full transition trail and kernel output."""
    from runtimed.errors import UnknownExecution

    with _open_ledger(ctx) as ledger:
        try:
            record = ledger.get(execution_id)
        except UnknownExecution as e:
            click.echo(f"✗ {e}", err=True)
            raise SystemExit(1)
        messages = ledger.messages(execution_id)

    click.echo(f"Execution: {record.execution_id}")
    click.echo(f"Runtime: {record.runtime_id}")
    if record.code_cell_id:
        click.echo(f"Cell: {record.code_cell_id}")
    click.echo(f"Status: {record.status.value}")
    if record.reason:
        click.echo(f"Reason: {record.reason}")
    click.echo()
    for transition in record.transitions:
        line = f"  {transition.at.isoformat()}  {transition.status.value}"
        if transition.reason:
            line += f"  ({transition.reason})"
        click.echo(line)
    click.echo()
    click.echo(record.source)

    if messages:
        click.echo()
        click.echo("Output:")
        for message in messages:
            click.echo(f"  [{message.msg_type}] {message.text().rstrip()}")


if __name__ == "__main__":
    main()
