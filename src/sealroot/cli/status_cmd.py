"""The ``status`` command."""
from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

from .. import maintenance
from .common import CliState, pass_state


def _human_size(num: int) -> str:
    size = float(num)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}TB"


@click.command("status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@pass_state
def status_command(state: CliState, json_output: bool) -> None:
    """Show the environment, its accounts and mounts, and host capabilities."""
    info = maintenance.environment_status(state.provisioner())

    if json_output:
        click.echo(json.dumps(info, indent=2))
        return

    console = Console()
    console.print(f"[bold]sealroot environment[/bold] {info['root']}")
    if not info["exists"]:
        console.print("  [yellow]not installed[/yellow] (run: sudo sealroot install)")
    else:
        console.print(f"  size: {_human_size(info['size_bytes'])}")
        console.print(f"  process filter: {'installed' if info['ps_filter_installed'] else 'not installed'}")
        console.print(f"  auto-mount unit: {info['systemd_unit'] or 'not installed'}")
        if "registry_error" in info:
            console.print(f"  [red]account tables corrupt:[/red] {info['registry_error']}")

        users = Table(title="Accounts", show_header=True, header_style="bold")
        users.add_column("User")
        users.add_column("UID", justify="right")
        users.add_column("Home")
        users.add_column("Shell")
        for user in info["users"]:
            users.add_row(user["username"], str(user["uid"]), user["home"], user["shell"])
        console.print(users)

        if info["active_mounts"]:
            console.print("Active mounts:")
            for mount in info["active_mounts"]:
                console.print(f"  {mount}")
        else:
            console.print("Active mounts: none")

    host = info["host_info"]
    tools = Table(title="Host capabilities", show_header=True, header_style="bold")
    tools.add_column("Tool")
    tools.add_column("Path")
    for name, path in host["tools"].items():
        tools.add_row(name, path or "[red]missing[/red]")
    console.print(tools)

    methods = Table(title="Isolation methods", show_header=True, header_style="bold")
    methods.add_column("Method")
    methods.add_column("Available")
    methods.add_column("Missing")
    for name, method in host["methods"].items():
        methods.add_row(name, "✓" if method["available"] else "✗", ", ".join(method["missing"]))
    console.print(methods)
    console.print(f"Strongest available: [bold]{host['detected_method']}[/bold]")
