"""CLI entry point for wizterm."""

from __future__ import annotations

import logging
import os
import queue
import selectors
import shutil
import signal
import sys
import termios
import threading
import time
import tty
from dataclasses import dataclass
from datetime import datetime
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from wizterm import __version__
from wizterm.config import WizTermConfig
from wizterm.errors import PTYError
from wizterm.events import EventType, Wire, WireEvent
from wizterm.history import JsonlSessionHistory
from wizterm.pty import PTYManager, SpawnRequest
from wizterm.tmux import TmuxAdapter

app = typer.Typer(
    name="wizterm",
    help="Terminal sessions that survive restarts, backed by a private tmux server.",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Inspect or reset the tmux config file.", no_args_is_help=True)
app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)
console = Console()

# Ctrl-\ detaches the local terminal; the session keeps running
DETACH_KEY = b"\x1c"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@dataclass
class _State:
    config: WizTermConfig


@app.callback()
def _main(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    setup_logging(verbose)
    ctx.obj = _State(config=WizTermConfig.load(config_file))


def _config(ctx: typer.Context) -> WizTermConfig:
    return ctx.ensure_object(_State).config


def _history(config: WizTermConfig) -> JsonlSessionHistory:
    return JsonlSessionHistory(config.history_path, config.preferences_path)


def _build_manager(config: WizTermConfig, wire: Wire) -> PTYManager:
    return PTYManager.from_config(config, wire, history=_history(config))


def _adapter(config: WizTermConfig) -> TmuxAdapter:
    return TmuxAdapter(
        config_path=config.tmux_config_path,
        socket_name=config.tmux.socket_name,
        session_prefix=config.tmux.session_prefix,
        shell=config.terminal.shell,
    )


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Interactive attach
# ---------------------------------------------------------------------------


@dataclass
class _Outcome:
    detached: bool = False
    exit_code: int | None = None


def _pump_output(
    events: queue.Queue[WireEvent | None],
    session_id: str,
    outcome: _Outcome,
    done: threading.Event,
) -> None:
    """Copy a session's output events to stdout until it exits or the wire closes."""
    out = sys.stdout.buffer
    try:
        while True:
            event = events.get()
            if event is None:
                break
            if event.data.get("session_id") != session_id:
                continue
            if event.type == EventType.TERMINAL_OUTPUT:
                out.write(event.data["data"])
                out.flush()
            elif event.type == EventType.TERMINAL_EXIT:
                outcome.exit_code = event.data.get("exit_code")
                break
    finally:
        done.set()


def _interact(
    manager: PTYManager,
    events: queue.Queue[WireEvent | None],
    session_id: str,
) -> _Outcome:
    """Put the local terminal in raw mode and bridge it to a session."""
    outcome = _Outcome()
    done = threading.Event()
    pump = threading.Thread(
        target=_pump_output,
        args=(events, session_id, outcome, done),
        name="wizterm-output",
        daemon=True,
    )
    pump.start()

    stdin_fd = sys.stdin.fileno()
    # The handler only flags; the manager locks are not reentrant
    resized = threading.Event()

    def _on_winch(signum: int, frame: object) -> None:
        resized.set()

    saved_attrs = termios.tcgetattr(stdin_fd)
    previous_winch = signal.signal(signal.SIGWINCH, _on_winch)
    tty.setraw(stdin_fd)
    try:
        with selectors.DefaultSelector() as sel:
            sel.register(stdin_fd, selectors.EVENT_READ)
            while not done.is_set():
                if resized.is_set():
                    resized.clear()
                    _sync_size(manager, session_id)
                if not sel.select(timeout=0.1):
                    continue
                data = os.read(stdin_fd, 1024)
                if not data:
                    break
                if DETACH_KEY in data:
                    data = data.split(DETACH_KEY, 1)[0]
                    outcome.detached = True
                if data:
                    try:
                        manager.write(session_id, data)
                    except PTYError:
                        break
                if outcome.detached:
                    break
    finally:
        termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
        signal.signal(signal.SIGWINCH, previous_winch)

    # Let trailing output land before the caller prints anything
    done.wait(timeout=0.2)
    return outcome


def _run_session(
    manager: PTYManager,
    wire: Wire,
    events: queue.Queue[WireEvent | None],
    session_id: str,
    persistent: bool,
) -> None:
    try:
        outcome = _interact(manager, events, session_id)
    finally:
        manager.shutdown()
        wire.close()

    if outcome.detached:
        if persistent:
            typer.echo(f"\r\nDetached. Reattach with: wizterm attach {session_id}")
        else:
            typer.echo("\r\nDetached; session was not persistent and has been closed.")
        return
    code = "?" if outcome.exit_code is None else str(outcome.exit_code)
    typer.echo(f"\r\n[session {session_id[:8]} exited, code={code}]")


def _terminal_size() -> tuple[int, int]:
    size = shutil.get_terminal_size()
    return size.columns, size.lines


def _sync_size(manager: PTYManager, session_id: str) -> None:
    cols, rows = _terminal_size()
    try:
        manager.resize(session_id, cols, rows)
    except PTYError as e:
        logger.debug("Resize after SIGWINCH failed: %s", e)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("open")
def open_session(
    ctx: typer.Context,
    cmd: str | None = typer.Option(
        None, "--cmd", help="Program to run (default: your shell)."
    ),
    cwd: str | None = typer.Option(None, "--cwd", help="Working directory."),
    no_tmux: bool = typer.Option(
        False, "--no-tmux", help="Run directly on a PTY without tmux persistence."
    ),
) -> None:
    """Open a new terminal session and attach this terminal to it."""
    if not sys.stdin.isatty():
        _fail("wizterm open needs an interactive terminal")

    config = _config(ctx)
    if no_tmux:
        config.tmux.enabled = False

    wire = Wire()
    events = wire.subscribe()
    manager = _build_manager(config, wire)
    cols, rows = _terminal_size()
    try:
        info = manager.spawn(SpawnRequest(command=cmd, cwd=cwd, cols=cols, rows=rows))
    except PTYError as e:
        wire.close()
        _fail(str(e))

    typer.echo(
        f"Session {info.id} ({'tmux' if info.is_tmux else 'direct'}); "
        "Ctrl-\\ to detach"
    )
    _run_session(manager, wire, events, info.id, info.is_tmux)


@app.command()
def attach(
    ctx: typer.Context,
    session_id: str = typer.Argument(help="Session id to reattach."),
) -> None:
    """Reattach this terminal to a persistent session."""
    if not sys.stdin.isatty():
        _fail("wizterm attach needs an interactive terminal")

    wire = Wire()
    events = wire.subscribe()
    manager = _build_manager(_config(ctx), wire)
    if not manager.is_using_tmux():
        wire.close()
        _fail("tmux persistence is not available")

    cols, rows = _terminal_size()
    try:
        info = manager.reconnect(session_id, cols=cols, rows=rows)
    except PTYError as e:
        wire.close()
        _fail(str(e))

    _run_session(manager, wire, events, info.id, persistent=True)


@app.command()
def sessions(ctx: typer.Context) -> None:
    """List persistent sessions that can be reattached."""
    wire = Wire()
    manager = _build_manager(_config(ctx), wire)
    if not manager.is_using_tmux():
        typer.echo("tmux is not available; no persistent sessions.")
        return

    found = manager.list_reconnectable()
    if not found:
        typer.echo("No persistent sessions.")
        return

    table = Table(title="Persistent sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("tmux session")
    table.add_column("Created")
    table.add_column("Attached")
    for s in sorted(found, key=lambda s: s.created_at):
        table.add_row(
            s.session_id,
            s.tmux_session_name,
            datetime.fromtimestamp(s.created_at).strftime("%Y-%m-%d %H:%M:%S"),
            "yes" if s.attached else "no",
        )
    console.print(table)


@app.command()
def kill(
    ctx: typer.Context,
    session_id: str = typer.Argument(help="Session id to destroy."),
) -> None:
    """Destroy a persistent session."""
    config = _config(ctx)
    adapter = _adapter(config)
    if not adapter.available:
        _fail("tmux is not available")
    if not adapter.exists(session_id):
        _fail(f"Session not found: {session_id}")
    try:
        adapter.kill(session_id)
    except PTYError as e:
        _fail(str(e))
    _history(config).record_session_end(session_id, int(time.time()), None)
    typer.echo(f"Killed {session_id}")


@app.command()
def history(
    ctx: typer.Context,
    active: bool = typer.Option(
        False, "--active", help="Only sessions without a recorded end."
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show."),
) -> None:
    """Show recorded sessions, newest first."""
    store = _history(_config(ctx))
    records = store.active() if active else store.records()
    if not records:
        typer.echo("No recorded sessions.")
        return

    table = Table(title="Recorded sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Command")
    table.add_column("Started")
    table.add_column("Ended")
    table.add_column("Exit")
    for r in records[:limit]:
        table.add_row(
            r.id,
            " ".join([r.command, *r.args]),
            _format_ts(r.created_at),
            _format_ts(r.ended_at) if r.ended_at is not None else "-",
            "-" if r.exit_code is None else str(r.exit_code),
        )
    console.print(table)


@app.command()
def doctor(ctx: typer.Context) -> None:
    """Report where tmux was found and which files wizterm uses."""
    config = _config(ctx)
    adapter = _adapter(config)
    binary = adapter.locate()

    typer.echo(f"wizterm v{__version__}")
    typer.echo(f"tmux persistence: {'enabled' if config.tmux.enabled else 'disabled'}")
    if binary is None:
        typer.echo("tmux: not found")
    else:
        typer.echo(f"tmux: {binary} ({adapter.version() or 'unknown version'})")
    typer.echo(f"Socket: -L {config.tmux.socket_name}")
    typer.echo(f"tmux config: {config.tmux_config_path}")
    typer.echo(f"History: {config.history_path}")
    typer.echo(f"Shell: {config.terminal.shell or os.environ.get('SHELL') or '/bin/sh'}")


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the tmux config (the defaults if none was written yet)."""
    typer.echo(_adapter(_config(ctx)).read_config(), nl=False)


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Print the tmux config file path."""
    typer.echo(str(_adapter(_config(ctx)).config_path))


@config_app.command("reset")
def config_reset(ctx: typer.Context) -> None:
    """Overwrite the tmux config with the defaults."""
    adapter = _adapter(_config(ctx))
    try:
        adapter.reset_config()
    except PTYError as e:
        _fail(str(e))
    typer.echo(f"Reset {adapter.config_path}")


def _format_ts(ts: int) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
