"""
relaybridge sessions: list, inspect, and delete sessions.

When a server answers at the configured address every command goes through
its HTTP API, so live sessions are reported (and deleted) by their owner.
Otherwise the commands read the sessions directory directly; listed statuses
are then the last ones recorded in each log.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, NoReturn

import click
import httpx
from rich.console import Console
from rich.table import Table

from relaybridge.cli import _client
from relaybridge.core.constants import ExitCode

console = Console()


@click.group("sessions", invoke_without_command=True)
@click.pass_context
def sessions_group(ctx: click.Context) -> None:
    """Inspect sessions recorded on this machine."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(sessions_list)


@sessions_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
def sessions_list(as_json: bool = False) -> None:
    """List sessions with a durable log."""
    cmd_sessions_list(as_json=as_json, console=console)


@sessions_group.command("show")
@click.argument("session_id")
@click.option("--lines", "-n", default=20, show_default=True, help="Envelopes of history to show")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
def sessions_show(session_id: str, lines: int = 20, as_json: bool = False) -> None:
    """Show one session and the tail of its event log."""
    cmd_sessions_show(session_id=session_id, lines=lines, as_json=as_json, console=console)


@sessions_group.command("delete")
@click.argument("session_id")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation")
def sessions_delete(session_id: str, yes: bool = False) -> None:
    """Delete a session's log permanently."""
    if not yes:
        click.confirm(f"Delete session {session_id} and its log?", abort=True)
    cmd_sessions_delete(session_id=session_id, console=console)


def _load_config(console: Console):
    from relaybridge.core.config import load_config
    from relaybridge.core.exceptions import ConfigError

    try:
        return load_config()
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)


def _open_manager(config):
    """Build an offline SessionManager over the configured sessions directory."""
    from relaybridge.core.session.manager import SessionManager

    return SessionManager(config)


def _server_failed(console: Console, config, exc: httpx.HTTPError) -> NoReturn:
    console.print(f"[red]Server at {_client.server_url(config)} failed:[/red] {exc}")
    sys.exit(ExitCode.ERROR)


def _not_found(console: Console, session_id: str) -> NoReturn:
    console.print(f"[red]Session not found: {session_id}[/red]")
    sys.exit(ExitCode.NOT_FOUND)


def _fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "-"


def _status_label(source: str) -> str:
    return "Status" if source == "server" else "Last known status"


# ------------------------------------------------------------------
# sessions list
# ------------------------------------------------------------------

_STATUS_STYLE = {
    "starting": "yellow",
    "ready": "green",
    "busy": "bold cyan",
    "waiting_for_input": "bold magenta",
    "dead": "dim",
}


def _fetch_sessions(config, console: Console) -> tuple[list[dict[str, Any]], str]:
    server = _client.connect(config)
    if server is None:
        return [s.to_dict() for s in _open_manager(config).list_sessions()], "log"
    with server:
        try:
            return server.list_sessions(), "server"
        except httpx.HTTPError as exc:
            _server_failed(console, config, exc)


def cmd_sessions_list(*, as_json: bool, console: Console) -> None:
    """List every known session, live ones from the server when it is running."""
    config = _load_config(console)
    rows, source = _fetch_sessions(config, console)

    if as_json:
        print(json.dumps([{**row, "status_source": source} for row in rows], indent=2))
        return

    if not rows:
        console.print("[bold]Sessions[/bold]\n")
        console.print("  [dim]No sessions recorded.[/dim]")
        console.print("\nRun [cyan]relaybridge serve[/cyan] and create one over the API.")
        return

    table = Table(title="Sessions", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column(_status_label(source))
    table.add_column("Created", style="dim")
    table.add_column("Last active", style="dim")
    table.add_column("Cost (USD)", justify="right")
    table.add_column("Directory")

    for row in rows:
        status = str(row["status"])
        style = _STATUS_STYLE.get(status, "")
        table.add_row(
            row["id"],
            f"[{style}]{status}[/{style}]",
            _fmt_time(row["created_at"]),
            _fmt_time(row["last_active_at"]),
            f"{row['total_cost_usd']:.4f}",
            row["working_directory"] or "-",
        )

    console.print(table)
    if source == "log":
        console.print(
            f"[dim]No server at {_client.server_url(config)}; "
            "statuses are the last recorded in each log.[/dim]"
        )


# ------------------------------------------------------------------
# sessions show
# ------------------------------------------------------------------


def _fetch_session(config, session_id: str, lines: int, console: Console):
    from relaybridge.core.exceptions import SessionNotFoundError

    server = _client.connect(config)
    try:
        if server is None:
            manager = _open_manager(config)
            data = manager.describe(session_id).to_dict()
            data["history"] = [e.to_dict() for e in manager.read_history(session_id, lines)]
            return data, "log"
        with server:
            return server.get_session(session_id, lines), "server"
    except SessionNotFoundError:
        _not_found(console, session_id)
    except httpx.HTTPError as exc:
        _server_failed(console, config, exc)


def cmd_sessions_show(*, session_id: str, lines: int, as_json: bool, console: Console) -> None:
    """Show one session's summary and its most recent envelopes."""
    config = _load_config(console)
    data, source = _fetch_session(config, session_id, lines, console)

    if as_json:
        data["status_source"] = source
        print(json.dumps(data, indent=2))
        return

    status = str(data["status"])
    style = _STATUS_STYLE.get(status, "")
    label = f"{_status_label(source)}:"
    console.print(f"\n[bold]Session {data['id']}[/bold]")
    console.print(f"  {label:<18}[{style}]{status}[/{style}]")
    console.print(f"  {'Directory:':<18}{data['working_directory'] or '-'}")
    console.print(f"  {'Conversation:':<18}{data['cli_session_id'] or '-'}")
    console.print(f"  {'Created:':<18}{_fmt_time(data['created_at'])}")
    console.print(f"  {'Last active:':<18}{_fmt_time(data['last_active_at'])}")
    console.print(f"  {'Cost (USD):':<18}{data['total_cost_usd']:.4f}")

    history = data["history"]
    if not history:
        return

    console.print(f"\n[bold]Last {len(history)} events[/bold]")
    table = Table(show_lines=False)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Event")
    table.add_column("Time", style="dim")
    table.add_column("Data", overflow="fold")
    for envelope in history:
        payload = json.dumps(envelope["data"], ensure_ascii=False)
        if len(payload) > 120:
            payload = payload[:117] + "..."
        table.add_row(
            str(envelope["id"]),
            str(envelope["event"]),
            _fmt_time(envelope["timestamp"]),
            payload,
        )
    console.print(table)


# ------------------------------------------------------------------
# sessions delete
# ------------------------------------------------------------------


def cmd_sessions_delete(*, session_id: str, console: Console) -> None:
    """
    Delete a session and its log.

    A running server deletes it (stopping the process first if it is live).
    Without one, the log is removed directly, unless another server still
    owns the sessions directory.
    """
    from relaybridge.core.exceptions import SessionNotFoundError, SessionsDirectoryInUseError

    config = _load_config(console)
    server = _client.connect(config)
    try:
        if server is None:
            asyncio.run(_open_manager(config).destroy_session(session_id))
        else:
            with server:
                server.delete_session(session_id)
    except SessionNotFoundError:
        _not_found(console, session_id)
    except SessionsDirectoryInUseError as exc:
        console.print(f"[red]{exc}[/red]")
        console.print(
            f"It does not answer at {_client.server_url(config)}; "
            "point server.host and server.port at it, or stop it first."
        )
        sys.exit(ExitCode.ERROR)
    except httpx.HTTPError as exc:
        _server_failed(console, config, exc)
    console.print(f"[green]Deleted[/green] {session_id}")
