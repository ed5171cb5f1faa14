"""relaybridge config: write and display the configuration file."""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console

from relaybridge.core.constants import ExitCode

console = Console()


@click.group("config")
def config_group() -> None:
    """Configuration file management."""


@config_group.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config file")
def config_init(force: bool = False) -> None:
    """Write a config file populated with the defaults."""
    from relaybridge.core.config import _config_file_path, default_config_data, save_config
    from relaybridge.core.exceptions import ConfigError

    path = _config_file_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {path}")
        console.print("Use [cyan]--force[/cyan] to overwrite.")
        sys.exit(ExitCode.ERROR)
    try:
        written = save_config(default_config_data(), path)
    except ConfigError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    console.print(f"[green]Wrote[/green] {written}")


@config_group.command("show")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON")
def config_show(as_json: bool = False) -> None:
    """Print the effective configuration (file + environment)."""
    from relaybridge.core.config import _config_file_path, load_config
    from relaybridge.core.exceptions import ConfigError

    try:
        config = load_config()
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)

    data = config.model_dump(mode="json")
    if as_json:
        print(json.dumps(data, indent=2))
        return

    console.print(f"[bold]Config[/bold] [dim]({_config_file_path()})[/dim]\n")
    for section, values in data.items():
        console.print(f"[cyan]\\[{section}][/cyan]")
        for key, value in values.items():
            console.print(f"  {key} = {value!r}")
    console.print(f"\n  sessions directory: {config.sessions_dir}")
