"""sealroot CLI - provision and enter chroot sandboxes.

Commands:
    install            - Build the environment and its first account
    enter              - Open a shell for an account
    status             - Show the environment and host capabilities
    cleanup            - Unmount and delete the environment
    useradd / passwd   - Manage accounts
    repair / rebuild   - Fix a damaged environment
    enhance-isolation  - Install or remove the process-view filters
    mount / unmount    - Pseudo-filesystems (used by the systemd unit)
"""
from __future__ import annotations

from pathlib import Path

import click

from .. import __version__
from ..config import load_config
from .common import CliState, setup_logging
from .env_cmd import (
    cleanup_command,
    enhance_isolation_command,
    install_command,
    mount_command,
    rebuild_command,
    repair_command,
    unmount_command,
)
from .session_cmd import enter_command
from .status_cmd import status_command
from .user_cmd import passwd_command, useradd_command


@click.group()
@click.version_option(version=__version__, prog_name="sealroot")
@click.option("--root", "root", type=click.Path(file_okay=False), default=None,
              help="Environment root (default: from config, /opt/secure_chroot)")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Extra JSON config file layered over the global one")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, root: str | None, config_path: str | None, verbose: bool) -> None:
    """sealroot - chroot sandboxes with private accounts

    \b
    Quick start:
      sudo sealroot install --user alice
      sudo sealroot enter alice
      sealroot status
    """
    config = load_config(Path(config_path) if config_path else None)
    if root:
        config["root"] = root
    setup_logging(verbose, config.get("log_file"))
    ctx.obj = CliState(config=config, verbose=verbose)


cli.add_command(install_command, name="install")
cli.add_command(enter_command, name="enter")
cli.add_command(status_command, name="status")
cli.add_command(cleanup_command, name="cleanup")
cli.add_command(useradd_command, name="useradd")
cli.add_command(passwd_command, name="passwd")
cli.add_command(repair_command, name="repair")
cli.add_command(rebuild_command, name="rebuild")
cli.add_command(enhance_isolation_command, name="enhance-isolation")
cli.add_command(mount_command, name="mount")
cli.add_command(unmount_command, name="unmount")


def main() -> None:
    cli(prog_name="sealroot")


__all__ = ["cli", "main"]
