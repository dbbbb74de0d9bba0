"""CLI entry point for nodemonitor."""

import asyncio
import json as jsonmod
import logging
import signal
import threading
import time
from pathlib import Path

import click

from nodemonitor.cancel import CancellationToken
from nodemonitor.config import (
    AppConfig, BoardAssociation, ConfigError, DEFAULT_BAUD_RATE, SETTABLE_KEYS,
    find_board, get_config_value, load_app_config, remember_project,
    save_app_config, set_config_value,
)
from nodemonitor.orchestrator import BuildOrchestrator, RunReport, associate_device
from nodemonitor.runner import ProcessRunner, read_environments, tool_status
from nodemonitor.serial.port import list_serial_ports
from nodemonitor.serial.session import SerialSessionManager


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              envvar="NODEMONITOR_CONFIG", help="Config file (default: per-user app dir).")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx, config_path, verbose):
    """Monitor serial nodes and build/upload their PlatformIO projects."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config_path


def _load_config(ctx) -> AppConfig:
    try:
        return load_app_config(ctx.obj)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _save_config(ctx, config: AppConfig) -> None:
    save_app_config(config, ctx.obj)


def _require_board(config: AppConfig, board_id: str) -> BoardAssociation:
    board = find_board(config, board_id)
    if board is None:
        known = ", ".join(b.id for b in config.boards) or "none"
        click.echo(f"Error: Unknown board: {board_id}. Configured boards: {known}", err=True)
        raise SystemExit(1)
    return board


def _run_cancellable(coro, cancel):
    """Run ``coro`` to completion, turning Ctrl-C into ``cancel()``."""

    async def runner():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            pass
        return await coro

    return asyncio.run(runner())


# ---------------------------------------------------------------------------
# Serial commands
# ---------------------------------------------------------------------------

@main.command("ports")
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
def ports_cmd(use_json):
    """List available serial ports."""
    ports = list_serial_ports()
    if use_json:
        data = [{"device": p.device, "description": p.description, "hwid": p.hwid} for p in ports]
        click.echo(jsonmod.dumps(data, indent=2))
        return
    if not ports:
        click.echo("No serial ports found.")
        return
    for p in ports:
        click.echo(f"  {p.device:<25} {p.description}")


def _parse_port_spec(spec: str, default_baud: int) -> tuple[str, int]:
    """Parse PORT or PORT:BAUD."""
    port, sep, baud = spec.rpartition(":")
    if sep and baud.isdigit() and port:
        return port, int(baud)
    return spec, default_baud


@main.command("monitor")
@click.option("--port", "port_specs", multiple=True, required=True,
              help="Serial port, optionally PORT:BAUD. Repeat for several ports.")
@click.option("--baud", type=int, default=DEFAULT_BAUD_RATE, show_default=True, help="Default baud rate.")
@click.option("--duration", type=float, help="Stop after this many seconds.")
@click.option("--send", "send_text", type=str, help="Line to send to every port after connecting.")
@click.option("--no-associate", is_flag=True, help="Don't attach identified devices to configured boards.")
@click.option("--json", "use_json", is_flag=True, help="Output JSON lines.")
@click.pass_context
def monitor_cmd(ctx, port_specs, baud, duration, send_text, no_associate, use_json):
    """Stream lines from one or more serial ports."""
    config = _load_config(ctx)
    save_lock = threading.Lock()

    def emit(event: str, port: str, **fields):
        if use_json:
            click.echo(jsonmod.dumps({"event": event, "port": port, **fields}))
        elif event == "line":
            click.echo(f"[{port}] {fields['line']}")
        elif event == "identified":
            click.echo(f"[{port}] identified {fields['id']} ({fields['board']})")
        else:
            click.echo(f"[{port}] error: {fields['error']}", err=True)

    def on_identified(port, device_id, board_type):
        emit("identified", port, id=device_id, board=board_type)
        if no_associate:
            return
        with save_lock:
            board = associate_device(config.boards, port, device_id, board_type)
            if board is not None:
                _save_config(ctx, config)
                click.echo(f"Associated {board.id} with {port}", err=True)

    sessions = SerialSessionManager()
    sessions.line_received.subscribe(lambda port, line: emit("line", port, line=line))
    sessions.identified.subscribe(on_identified)
    sessions.error.subscribe(lambda port, e: emit("error", port, error=str(e)))

    with sessions:
        connected = []
        for spec in port_specs:
            port, port_baud = _parse_port_spec(spec, baud)
            if sessions.connect(port, port_baud):
                connected.append(port)
        if not connected:
            click.echo("Error: No port could be opened.", err=True)
            raise SystemExit(2)

        if send_text:
            for port in connected:
                sessions.write(port, send_text)

        start = time.monotonic()
        try:
            while duration is None or time.monotonic() - start < duration:
                time.sleep(0.1)
        except KeyboardInterrupt:
            pass


# ---------------------------------------------------------------------------
# Build commands
# ---------------------------------------------------------------------------

@main.command("envs")
@click.argument("project", type=click.Path(file_okay=False, path_type=Path))
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
def envs_cmd(project, use_json):
    """List the environments of a PlatformIO project."""
    environments = read_environments(project)
    if use_json:
        click.echo(jsonmod.dumps(environments))
        return
    if not environments:
        click.echo("No environments found.")
        return
    for env in environments:
        click.echo(env)


def _make_orchestrator(config: AppConfig, settle_delay: float | None = None) -> BuildOrchestrator:
    runner = ProcessRunner(config.tool_path)
    runner.output.subscribe(click.echo)
    orchestrator = BuildOrchestrator(SerialSessionManager(), runner)
    if settle_delay is not None:
        orchestrator.settle_delay = settle_delay
    orchestrator.status.subscribe(lambda text: click.echo(text, err=True))
    return orchestrator


def _report(report: RunReport) -> None:
    for item in report.results:
        mark = "OK" if item.result.success else "!!"
        click.echo(f"[{mark}] {item.board.id}", err=True)
    if report.success:
        return
    raise SystemExit(1)


@main.command("build")
@click.argument("board_id")
@click.pass_context
def build_cmd(ctx, board_id):
    """Build the project of a configured board."""
    config = _load_config(ctx)
    board = _require_board(config, board_id)
    orchestrator = _make_orchestrator(config)
    result = _run_cancellable(orchestrator.build_one(board), orchestrator.cancel)
    raise SystemExit(0 if result.success else 1)


@main.command("upload")
@click.argument("board_id")
@click.option("--port", type=str, help="Upload port (default: the board's port).")
@click.option("--monitor", is_flag=True, help="Reopen the port after a successful upload and print its output.")
@click.option("--duration", type=float, default=5.0, show_default=True,
              help="Seconds to monitor with --monitor.")
@click.option("--settle-delay", type=float, help="Seconds to wait before reopening the port.")
@click.pass_context
def upload_cmd(ctx, board_id, port, monitor, duration, settle_delay):
    """Build and upload the project of a configured board."""
    config = _load_config(ctx)
    board = _require_board(config, board_id)
    if port:
        board.port = port
    orchestrator = _make_orchestrator(config, settle_delay)
    sessions = orchestrator.sessions
    sessions.line_received.subscribe(lambda p, line: click.echo(f"[{p}] {line}"))
    with sessions:
        result = _run_cancellable(orchestrator.upload_one(board, reconnect=monitor), orchestrator.cancel)
        if result.success and monitor and sessions.is_connected(board.port):
            try:
                time.sleep(duration)
            except KeyboardInterrupt:
                pass
    raise SystemExit(0 if result.success else 1)


@main.command("clean")
@click.argument("board_id")
@click.pass_context
def clean_cmd(ctx, board_id):
    """Remove build artifacts of a configured board's project."""
    config = _load_config(ctx)
    board = _require_board(config, board_id)
    if not board.project_path:
        click.echo(f"Error: No project configured for {board.id}", err=True)
        raise SystemExit(1)
    runner = ProcessRunner(config.tool_path)
    runner.output.subscribe(click.echo)
    token = CancellationToken()
    result = _run_cancellable(runner.clean(board.project_path, token=token), token.cancel)
    raise SystemExit(0 if result.success else 1)


@main.command("build-all")
@click.pass_context
def build_all_cmd(ctx):
    """Build every board that has a project."""
    config = _load_config(ctx)
    orchestrator = _make_orchestrator(config)
    _report(_run_cancellable(orchestrator.build_all(config.boards), orchestrator.cancel))


@main.command("upload-all")
@click.pass_context
def upload_all_cmd(ctx):
    """Upload to every board that has a project and a port."""
    config = _load_config(ctx)
    orchestrator = _make_orchestrator(config)
    _report(_run_cancellable(orchestrator.upload_all(config.boards), orchestrator.cancel))


# ---------------------------------------------------------------------------
# Board command group
# ---------------------------------------------------------------------------

@main.group()
def board():
    """Manage board associations."""
    pass


@board.command("list")
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def board_list_cmd(ctx, use_json):
    """List configured boards."""
    config = _load_config(ctx)
    if use_json:
        click.echo(jsonmod.dumps([b.to_dict() for b in config.boards], indent=2))
        return
    if not config.boards:
        click.echo("No boards configured.")
        return
    for b in config.boards:
        env = f" [{b.environment}]" if b.environment else ""
        click.echo(f"  {b.id:<16} {b.board_type or '-':<16} {b.port or '-':<20} {b.baud_rate:<7} {b.project_path or '-'}{env}")


def _board_options(func):
    func = click.option("--env", "environment", type=str, help="PlatformIO environment.")(func)
    func = click.option("--project", "project_path", type=click.Path(file_okay=False), help="Project directory.")(func)
    func = click.option("--baud", "baud_rate", type=int, help="Baud rate.")(func)
    func = click.option("--port", type=str, help="Serial port.")(func)
    func = click.option("--board-type", type=str, help="Board type reported by the device.")(func)
    return func


def _apply_board_options(board_def: BoardAssociation, board_type, port, baud_rate, project_path, environment):
    if board_type is not None:
        board_def.board_type = board_type
    if port is not None:
        board_def.port = port or None
    if baud_rate is not None:
        board_def.baud_rate = baud_rate
    if project_path is not None:
        board_def.project_path = str(Path(project_path).resolve()) if project_path else None
    if environment is not None:
        board_def.environment = environment or None


@board.command("add")
@click.argument("board_id")
@_board_options
@click.pass_context
def board_add_cmd(ctx, board_id, board_type, port, baud_rate, project_path, environment):
    """Add a board association."""
    config = _load_config(ctx)
    if find_board(config, board_id):
        click.echo(f"Error: Board {board_id} already exists.", err=True)
        raise SystemExit(1)
    board_def = BoardAssociation(id=board_id)
    _apply_board_options(board_def, board_type, port, baud_rate, project_path, environment)
    config.boards.append(board_def)
    if board_def.project_path:
        remember_project(config, board_def.project_path)
    _save_config(ctx, config)
    click.echo(f"Added {board_id}")


@board.command("set")
@click.argument("board_id")
@_board_options
@click.pass_context
def board_set_cmd(ctx, board_id, board_type, port, baud_rate, project_path, environment):
    """Change fields of a board association. Pass '' to clear a field."""
    config = _load_config(ctx)
    board_def = _require_board(config, board_id)
    _apply_board_options(board_def, board_type, port, baud_rate, project_path, environment)
    if board_def.project_path:
        remember_project(config, board_def.project_path)
    _save_config(ctx, config)
    click.echo(f"Updated {board_id}")


@board.command("remove")
@click.argument("board_id")
@click.pass_context
def board_remove_cmd(ctx, board_id):
    """Remove a board association."""
    config = _load_config(ctx)
    board_def = _require_board(config, board_id)
    config.boards.remove(board_def)
    _save_config(ctx, config)
    click.echo(f"Removed {board_id}")


# ---------------------------------------------------------------------------
# Config and doctor
# ---------------------------------------------------------------------------

@main.command("config")
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--list", "show_list", is_flag=True, help="Show all config values.")
@click.pass_context
def config_cmd(ctx, key, value, show_list):
    """Get or set nodemonitor settings."""
    config = _load_config(ctx)

    if show_list:
        for k in SETTABLE_KEYS:
            click.echo(f"  {k} = {getattr(config, k)}")
        return

    try:
        if key and value is not None:
            set_config_value(config, key, value)
            _save_config(ctx, config)
            click.echo(f"Set {key} = {value}")
            return
        if key:
            val = get_config_value(config, key)
            if val is None:
                click.echo(f"{key} is not set.")
            else:
                click.echo(f"{key} = {val}")
            return
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo("Usage: nodemonitor config <KEY> [VALUE] or nodemonitor config --list")


@main.command()
@click.pass_context
def doctor(ctx):
    """Check for PlatformIO and serial ports."""
    config = _load_config(ctx)
    ok = True

    runner = ProcessRunner(config.tool_path)
    status = tool_status(runner.tool_path)
    if status["ok"]:
        click.echo(f"[OK] {status['message']}")
    else:
        click.echo(f"[!!] {status['message']}")
        ok = False

    ports = list_serial_ports()
    if ports:
        click.echo("[OK] Serial ports found:")
        for p in ports:
            click.echo(f"     {p.device}")
    else:
        click.echo("[!!] No serial ports detected. Is a board connected via USB?")
        ok = False

    if ok:
        click.echo("\nAll checks passed.")
    else:
        click.echo("\nSome checks failed. Fix the issues above.")
