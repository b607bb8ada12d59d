"""Environment lifecycle commands."""
from __future__ import annotations

import sys

import click

from .. import maintenance
from .common import (
    CliState,
    confirm_destructive,
    environment_lock,
    fail,
    handle_errors,
    pass_state,
    root_required,
)


@click.command("install")
@click.option("--user", "username", prompt="Username for the chroot environment",
              help="First account to create")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True,
              help="Password for the account (prompted when omitted)")
@pass_state
@handle_errors
@root_required
def install_command(state: CliState, username: str, password: str) -> None:
    """Create the chroot environment and its first account."""
    p = state.provisioner()
    with environment_lock(p.env):
        report = maintenance.install(p, username, password)

    if report.already_initialized:
        click.echo(f"Environment at {p.env.root} already exists; baseline kept.")
        if report.user_created:
            click.echo(f"✓ Added user {username}")
        else:
            click.echo(f"⚠ User {username} already exists; nothing changed")
        return

    mat = report.materialize
    if mat is not None:
        click.echo(f"Copied {len(mat.copied)} file(s), {len(mat.libraries)} librar(ies)")
        if mat.missing:
            click.echo(f"⚠ Not on host (skipped): {', '.join(mat.missing)}")
        if mat.unresolved:
            click.echo(f"⚠ Unresolved libraries: {', '.join(mat.unresolved)}")
    for failure in report.device_failures:
        click.echo(f"⚠ Device node {failure}")
    if report.unit_path:
        click.echo(f"Auto-mount unit: {report.unit_path}")
    click.echo()
    click.echo(f"✓ Chroot environment ready at {p.env.root}")
    click.echo(f"  Enter it with: sudo sealroot enter {username}")


@click.command("cleanup")
@click.option("--yes", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@pass_state
@handle_errors
@root_required
def cleanup_command(state: CliState, assume_yes: bool) -> None:
    """Unmount everything and delete the environment."""
    p = state.provisioner()
    confirm_destructive(f"This will permanently delete {p.env.root} and every account in it.", assume_yes)
    with environment_lock(p.env):
        maintenance.cleanup(p)
    click.echo(f"✓ Removed {p.env.root}")


@click.command("repair")
@click.option("--test-only", is_flag=True, help="Only run the chroot smoke test")
@pass_state
@handle_errors
@root_required
def repair_command(state: CliState, test_only: bool) -> None:
    """Restore binaries, config, devices and homes, then smoke-test."""
    p = state.provisioner()
    p.env.require_exists()
    if test_only:
        result = maintenance.smoke_test(p)
    else:
        with environment_lock(p.env):
            report = maintenance.repair(p)
        if report.materialize and report.materialize.missing:
            click.echo(f"⚠ Not on host (skipped): {', '.join(report.materialize.missing)}")
        for failure in report.device_failures:
            click.echo(f"⚠ Device node {failure}")
        if report.homes:
            click.echo(f"Homes refreshed: {', '.join(report.homes)}")
        result = report.smoke_test

    if result is not None and result.ok:
        click.echo(f"✓ {result.stdout.strip()}")
    else:
        detail = result.stderr.strip() if result is not None else ""
        fail(f"chroot smoke test failed{': ' + detail if detail else ''}")


@click.command("rebuild")
@click.option("--yes", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@pass_state
@handle_errors
@root_required
def rebuild_command(state: CliState, assume_yes: bool) -> None:
    """Reset the account tables and re-add every account."""
    p = state.provisioner()
    p.env.require_exists()
    confirm_destructive(
        "This rebuilds the account tables; unregistered home directories are moved out.",
        assume_yes,
    )
    with environment_lock(p.env):
        report = maintenance.rebuild(p)
    click.echo(f"✓ Restored {len(report.restored)} account(s): {', '.join(report.restored) or '-'}")
    if report.homes_moved:
        click.echo(f"Moved unregistered homes to {report.backup_dir}: {', '.join(report.homes_moved)}")


@click.command("enhance-isolation")
@click.argument("action", type=click.Choice(["enhance", "remove"]), default="enhance")
@pass_state
@handle_errors
@root_required
def enhance_isolation_command(state: CliState, action: str) -> None:
    """Install or remove the ps/top filters and helper commands.

    \b
    These only change what the commands display; they are not isolation.
    """
    p = state.provisioner()
    with environment_lock(p.env):
        changed = maintenance.enhance_isolation(p, action)
    verb = "Applied" if action == "enhance" else "Removed"
    click.echo(f"✓ {verb} {len(changed)} change(s)")
    for item in changed:
        click.echo(f"  {item}")


@click.command("mount")
@pass_state
@handle_errors
@root_required
def mount_command(state: CliState) -> None:
    """Mount /proc, /sys, /dev, /dev/pts and /tmp inside the root."""
    p = state.provisioner()
    p.env.require_exists()
    report = p.mounts.mount_all()
    click.echo(f"mounted: {', '.join(report.mounted) or '-'}; already mounted: {', '.join(report.skipped) or '-'}")
    if not report.ok:
        sys.exit(1)


@click.command("unmount")
@pass_state
@handle_errors
@root_required
def unmount_command(state: CliState) -> None:
    """Unmount the pseudo-filesystems; safe when nothing is mounted."""
    p = state.provisioner()
    report = p.mounts.unmount_all()
    click.echo(f"unmounted: {', '.join(report.unmounted) or '-'}")
    if not report.ok:
        sys.exit(1)
