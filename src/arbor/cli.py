"""CLI entry point for arbor."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import sys
import threading

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from arbor.config import SupervisorConfig
from arbor.git import GitError
from arbor.pty import PtyError, SessionNotFound
from arbor.session.wire import EventType, WireEvent
from arbor.supervisor import Supervisor

app = typer.Typer(
    name="arbor",
    help="Process and watcher supervisor for terminal sessions across git worktrees.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "added": "green",
    "modified": "yellow",
    "deleted": "red",
    "renamed": "cyan",
    "untracked": "magenta",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _print_progress(event: WireEvent) -> None:
    if event.type is EventType.SHUTDOWN_PROGRESS:
        err_console.print(f"[dim]{event.data['phase']}:[/dim] {event.data['message']}")


def _forward_stdin(supervisor: Supervisor, session_id: str) -> None:
    """Copy stdin lines into the session until either side goes away."""
    for line in sys.stdin:
        try:
            supervisor.write(session_id, line)
        except SessionNotFound:
            break


async def _stream_session(
    supervisor: Supervisor,
    cwd: str,
    command: str,
    shell: str | None,
    cols: int,
    rows: int,
) -> int | None:
    """Spawn a session and echo its output until it exits. Returns the exit code."""
    # Subscribe before spawning so no early output is missed
    events = supervisor.wire.subscribe_async()
    session_id = supervisor.spawn("cli", cwd, command, cols=cols, rows=rows, shell=shell)

    threading.Thread(
        target=_forward_stdin, args=(supervisor, session_id), name="arbor-stdin", daemon=True
    ).start()

    while True:
        event = await events.get()
        if event is None:
            return None
        if event.data.get("ptyId") != session_id:
            continue
        if event.type is EventType.PTY_OUTPUT:
            sys.stdout.write(event.data["data"])
            sys.stdout.flush()
        elif event.type is EventType.PTY_EXIT:
            return event.data.get("exitCode")


@app.command()
def run(
    command: str = typer.Argument("shell", help="Command line to run ('shell' for a login shell)."),
    cwd: str = typer.Option(".", "--cwd", "-C", help="Working directory."),
    shell: str | None = typer.Option(None, "--shell", "-s", help="Run the command through this shell."),
    cols: int = typer.Option(80, "--cols", help="Terminal width."),
    rows: int = typer.Option(24, "--rows", help="Terminal height."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Run a command on a PTY and stream its output."""
    setup_logging(verbose)

    working_dir = os.path.abspath(cwd)
    if not os.path.isdir(working_dir):
        typer.echo(f"Error: Not a directory: {working_dir}", err=True)
        raise typer.Exit(1)

    supervisor = Supervisor(SupervisorConfig.load(config_file))

    try:
        exit_code = asyncio.run(
            _stream_session(supervisor, working_dir, command, shell, cols, rows)
        )
    except PtyError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        supervisor.wire.add_listener(_print_progress)
        supervisor.shutdown_blocking()
        raise typer.Exit(130)

    supervisor.shutdown_blocking()
    raise typer.Exit(exit_code if exit_code is not None else 1)


@app.command()
def watch(
    path: str = typer.Argument(help="Worktree to watch."),
    merge: bool = typer.Option(False, "--merge", help="Also report when an in-progress merge ends."),
    rebase: bool = typer.Option(False, "--rebase", help="Also report when an in-progress rebase ends."),
    config_changes: bool = typer.Option(
        False, "--config-changes", help="Also report arbor config file edits."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Watch a worktree and print events as JSON lines until Ctrl-C."""
    setup_logging(verbose)

    worktree = os.path.abspath(path)
    if not os.path.isdir(worktree):
        typer.echo(f"Error: Not a directory: {worktree}", err=True)
        raise typer.Exit(1)

    supervisor = Supervisor(SupervisorConfig.load(config_file))
    events = supervisor.wire.subscribe()
    worktree_id = os.path.basename(worktree) or worktree

    supervisor.watchers.watch_worktree(worktree_id, worktree)
    if merge and not supervisor.watchers.watch_merge_state(worktree_id, worktree):
        typer.echo("No merge in progress", err=True)
    if rebase and not supervisor.watchers.watch_rebase_state(worktree_id, worktree):
        typer.echo("No rebase in progress", err=True)
    if config_changes:
        supervisor.watchers.watch_config(worktree)

    try:
        while True:
            try:
                event = events.get(timeout=0.5)
            except queue.Empty:
                continue
            if event is None:
                break
            typer.echo(json.dumps({"event": event.name, **event.data}))
            if event.type is EventType.WORKTREE_REMOVED:
                break
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.watchers.stop_all(timeout=1.0)


@app.command()
def status(
    path: str = typer.Argument(".", help="Worktree to inspect."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """Print the changed files of a worktree."""
    setup_logging(False)
    supervisor = Supervisor()

    try:
        files = supervisor.changed_files(os.path.abspath(path))
    except GitError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps([f.model_dump(mode="json", exclude_none=True) for f in files]))
        return

    if not files:
        console.print("[dim]No changes[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Status")
    table.add_column("Path")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")
    for f in files:
        style = STATUS_STYLES.get(f.status.value, "")
        table.add_row(
            f"[{style}]{f.status.value}[/{style}]" if style else f.status.value,
            escape(f.path),
            "" if f.insertions is None else str(f.insertions),
            "" if f.deletions is None else str(f.deletions),
        )
    console.print(table)


if __name__ == "__main__":
    app()
