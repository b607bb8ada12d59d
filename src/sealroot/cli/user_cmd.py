"""Account management commands."""
from __future__ import annotations

import click

from .common import CliState, environment_lock, handle_errors, pass_state, root_required


@click.command("useradd")
@click.argument("username")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True,
              help="Password for the account (prompted when omitted)")
@click.option("--shell", default=None, help="Login shell inside the root")
@pass_state
@handle_errors
@root_required
def useradd_command(state: CliState, username: str, password: str, shell: str | None) -> None:
    """Add an account to the chroot environment."""
    p = state.provisioner()
    p.env.require_exists()
    with environment_lock(p.env):
        record = p.registry.create_account(username, password, shell=shell or state.config["default_shell"])
    click.echo(f"✓ Created {record.username} (uid {record.uid}, home {record.home})")


@click.command("passwd")
@click.argument("username")
@click.option("--password", prompt="New password", hide_input=True, confirmation_prompt=True,
              help="New password (prompted when omitted)")
@pass_state
@handle_errors
@root_required
def passwd_command(state: CliState, username: str, password: str) -> None:
    """Reset the password of an account."""
    p = state.provisioner()
    p.env.require_exists()
    with environment_lock(p.env):
        p.registry.set_password(username, password)
    click.echo(f"✓ Password updated for {username}")
