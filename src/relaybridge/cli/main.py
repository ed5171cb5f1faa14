"""
RelayBridge CLI entry point.

Commands:
  relaybridge serve                 run the HTTP/SSE API server
  relaybridge sessions [list]       list recorded sessions
  relaybridge sessions show <id>    show one session and its recent events
  relaybridge sessions delete <id>  delete a session log permanently
  relaybridge config init           write a default config file
  relaybridge config show           print the effective configuration
  relaybridge version               show version information
"""

from __future__ import annotations

import sys

import click
from rich.console import Console

from relaybridge import __version__
from relaybridge.core.constants import ExitCode

console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="relaybridge %(version)s")
@click.option(
    "--log-level", default="WARNING", hidden=True, help="Log level for structured logging."
)
@click.option("--log-json", is_flag=True, default=False, hidden=True, help="Emit JSON log lines.")
def cli(log_level: str, log_json: bool) -> None:
    """RelayBridge: drive a line-delimited JSON CLI agent over HTTP and SSE."""
    from relaybridge.core.logging import configure_logging

    configure_logging(level=log_level, json_output=log_json)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Port (overrides config)")
@click.option("--sessions-dir", default=None, help="Durable session log directory")
def serve(host: str | None, port: int | None, sessions_dir: str | None) -> None:
    """Run the session API server in the foreground."""
    from relaybridge.core.config import load_config
    from relaybridge.core.exceptions import ConfigError
    from relaybridge.core.logging import configure_logging

    try:
        config = load_config()
    except ConfigError as exc:
        err_console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)

    updates: dict = {}
    if host:
        updates["host"] = host
    if port:
        updates["port"] = port
    if updates:
        config.server = config.server.model_copy(update=updates)
    if sessions_dir:
        config.sessions = config.sessions.model_copy(update={"sessions_dir": sessions_dir})

    configure_logging(
        level=config.logging.level,
        json_output=config.logging.format == "json",
    )

    from relaybridge.core.store.session_log import SessionLogStore
    from relaybridge.server.app import start_server

    owner = SessionLogStore(config.sessions_dir).owner_pid()
    if owner is not None:
        err_console.print(
            f"[red]Sessions directory {config.sessions_dir} is in use by another "
            f"server (PID {owner}).[/red]"
        )
        sys.exit(ExitCode.ERROR)

    console.print(
        f"[bold]RelayBridge {__version__}[/bold] listening on "
        f"[cyan]http://{config.server.host}:{config.server.port}[/cyan]"
    )
    console.print(f"  CLI:      {' '.join(config.cli.command)}")
    console.print(f"  Sessions: {config.sessions_dir}")
    if config.server.auth_token is None:
        console.print("  Auth:     [yellow]disabled[/yellow]")
    start_server(config)


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False)
def version(as_json: bool) -> None:
    """Show version information."""
    import platform

    from relaybridge.core.config import _config_file_path

    if as_json:
        import json

        data = {
            "relaybridge": __version__,
            "python": sys.version.split()[0],
            "platform": sys.platform,
            "arch": platform.machine(),
            "config_path": str(_config_file_path()),
        }
        click.echo(json.dumps(data, indent=2))
    else:
        console.print(f"relaybridge {__version__}")
        console.print(f"Python {sys.version.split()[0]}")
        console.print(f"Platform: {sys.platform} {platform.machine()}")
        console.print(f"Config:   {_config_file_path()}")


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------

from relaybridge.cli._sessions import sessions_group  # noqa: E402

cli.add_command(sessions_group)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

from relaybridge.cli._config import config_group  # noqa: E402

cli.add_command(config_group)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
