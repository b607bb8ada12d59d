"""Whole-environment operations: install, repair, rebuild, cleanup, status.

Each operation works on a ``Provisioner`` bundling the components of one
environment, so tests can build one around a temp dir with fake runners.
Callers (the CLI) check for root and take the environment lock.
"""
from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .builder import DependencyResolver, FilesystemBuilder, LddResolver, MaterializeReport
from .environment import ChrootEnvironment, require_disk_space
from .errors import DeviceNodeCreateFailed, PreconditionFailed, RegistryCorrupt
from .hostcmd import CommandResult, CommandRunner, run_command
from .mounts import MountManager, default_mount_table
from .psfilter import IsolationEnhancer, ProcessVisibilityFilter
from .registry import MIN_UID, TABLE_MODES, ExportedAccount, UserRegistry
from .sandbox.detect import HostCapabilities, get_host_info, probe_capabilities

log = logging.getLogger(__name__)

SMOKE_TEST_MESSAGE = "Basic chroot test successful"

SYSTEMD_UNIT_TEMPLATE = """\
[Unit]
Description=Mount pseudo-filesystems for the sealroot environment at {root}
After=local-fs.target

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart={python} -m sealroot --root "{root}" mount
ExecStop={python} -m sealroot --root "{root}" unmount

[Install]
WantedBy=multi-user.target
"""


@dataclass
class Provisioner:
    """The components of one environment, wired from a config dict."""
    env: ChrootEnvironment
    config: dict
    registry: UserRegistry
    builder: FilesystemBuilder
    mounts: MountManager
    runner: CommandRunner = run_command
    chown: Callable[..., None] = os.chown

    @classmethod
    def from_config(
        cls,
        config: dict,
        *,
        runner: CommandRunner = run_command,
        resolver: DependencyResolver | None = None,
        chown: Callable[..., None] = os.chown,
        mknod: Callable[..., None] = os.mknod,
        mounts_file: Path | None = None,
        host_root: Path = Path("/"),
    ) -> "Provisioner":
        env = ChrootEnvironment(Path(config["root"]))
        mount_kwargs: dict[str, Any] = {"runner": runner}
        if mounts_file is not None:
            mount_kwargs["mounts_file"] = mounts_file
        return cls(
            env=env,
            config=config,
            registry=UserRegistry(env, chown=chown),
            builder=FilesystemBuilder(
                env,
                resolver or LddResolver(runner),
                host_root=host_root,
                transitive=bool(config.get("transitive_libraries", True)),
                mknod=mknod,
            ),
            mounts=MountManager(env, default_mount_table(config["tmpfs_size"]), **mount_kwargs),
            runner=runner,
            chown=chown,
        )

    @property
    def unit_path(self) -> Path:
        return Path(self.config["systemd_unit_dir"]) / self.config["systemd_unit_name"]


# -- install ----------------------------------------------------------------

@dataclass
class InstallReport:
    already_initialized: bool = False
    user_created: bool = False
    materialize: MaterializeReport | None = None
    device_failures: list[DeviceNodeCreateFailed] = field(default_factory=list)
    unit_path: Path | None = None


def install(p: Provisioner, username: str, password: str) -> InstallReport:
    """Build a new environment and its first account.

    On an initialized environment the baseline is left alone and only the
    account is added (an existing account is a warning).
    """
    report = InstallReport()
    if p.env.initialized:
        report.already_initialized = True
        log.warning("chroot environment already exists at %s; keeping it", p.env.root)
        if p.registry.exists(username):
            log.warning("user %s already exists", username)
        else:
            p.registry.create_account(username, password, shell=p.config["default_shell"])
            report.user_created = True
        return report

    require_disk_space(p.env, int(p.config["min_free_kb"]))
    log.info("creating chroot environment at %s", p.env.root)
    p.builder.layout_skeleton()
    report.materialize = p.builder.materialize(p.config["binaries"])
    p.builder.provision_baseline_config(p.config["config_files"], p.registry)
    report.device_failures = p.builder.provision_device_nodes()
    p.registry.create_account(username, password, shell=p.config["default_shell"])
    report.user_created = True
    report.unit_path = write_systemd_unit(p)
    enable_systemd_unit(p)
    return report


# -- systemd unit -----------------------------------------------------------

def systemd_unit_text(env: ChrootEnvironment, python: str | None = None) -> str:
    return SYSTEMD_UNIT_TEMPLATE.format(root=env.root, python=python or sys.executable)


def write_systemd_unit(p: Provisioner) -> Path | None:
    """Write the auto-mount unit; a missing unit directory is only a warning."""
    unit_dir = p.unit_path.parent
    if not unit_dir.is_dir():
        log.warning("systemd unit directory %s not found; skipping auto-mount unit", unit_dir)
        return None
    p.unit_path.write_text(systemd_unit_text(p.env))
    os.chmod(p.unit_path, 0o644)
    log.info("wrote systemd unit %s", p.unit_path)
    return p.unit_path


def enable_systemd_unit(p: Provisioner) -> bool:
    if not p.unit_path.exists():
        return False
    for argv in (["systemctl", "daemon-reload"], ["systemctl", "enable", p.unit_path.name]):
        result = p.runner(argv, timeout=60)
        if not result.ok:
            log.warning("%s failed: %s", " ".join(argv), result.stderr.strip())
            return False
    return True


def remove_systemd_unit(p: Provisioner) -> bool:
    if not p.unit_path.exists():
        return False
    result = p.runner(["systemctl", "disable", p.unit_path.name], timeout=60)
    if not result.ok:
        log.warning("could not disable %s: %s", p.unit_path.name, result.stderr.strip())
    p.unit_path.unlink()
    p.runner(["systemctl", "daemon-reload"], timeout=60)
    log.info("removed systemd unit %s", p.unit_path)
    return True


# -- cleanup ----------------------------------------------------------------

def cleanup(p: Provisioner) -> None:
    """Unmount, drop the systemd unit and delete the root.

    Refuses to delete anything while a mount below the root is still active.
    """
    root = p.env.root.resolve()
    if len(root.parts) < 3:
        raise PreconditionFailed(f"refusing to delete {root}: path is too shallow", reason="unsafe_root")

    p.mounts.unmount_all()
    remaining = p.mounts.active_mounts()
    if remaining:
        raise PreconditionFailed(
            f"mounts still active under {root}: {', '.join(remaining)}",
            reason="mounts_active",
        )
    remove_systemd_unit(p)
    if p.env.exists:
        shutil.rmtree(p.env.root)
        log.info("removed chroot environment %s", p.env.root)


# -- repair -----------------------------------------------------------------

@dataclass
class RepairReport:
    materialize: MaterializeReport | None = None
    device_failures: list[DeviceNodeCreateFailed] = field(default_factory=list)
    homes: list[str] = field(default_factory=list)
    smoke_test: CommandResult | None = None


def smoke_test(p: Provisioner, caps: HostCapabilities | None = None) -> CommandResult:
    """Run a trivial command through chroot to prove the root is usable."""
    caps = caps or probe_capabilities()
    result = p.runner(
        [caps.path("chroot"), str(p.env.root), "/bin/bash", "-c", f"echo '{SMOKE_TEST_MESSAGE}'"],
        timeout=30,
    )
    if result.ok:
        log.info("smoke test passed")
    else:
        log.warning("smoke test failed (exit %d): %s", result.returncode, result.stderr.strip())
    return result


def repair(p: Provisioner, caps: HostCapabilities | None = None) -> RepairReport:
    """Restore a damaged environment in place, keeping its accounts."""
    p.env.require_exists()
    report = RepairReport()
    p.builder.layout_skeleton()
    report.materialize = p.builder.materialize(p.config["repair_binaries"])
    p.builder.copy_host_config(p.config["config_files"])
    p.builder.write_pam_config()
    report.device_failures = p.builder.provision_device_nodes()

    if not p.env.initialized:
        log.warning("credential tables missing; writing a baseline")
        p.registry.reset_to_baseline()
    for name, mode in TABLE_MODES.items():
        path = p.registry.etc_dir / name
        if path.exists():
            os.chmod(path, mode)

    for user in p.registry.list_users():
        if user.uid >= MIN_UID:
            p.registry.provision_home(user, overwrite=True)
            report.homes.append(user.home)

    report.smoke_test = smoke_test(p, caps)
    return report


# -- rebuild ----------------------------------------------------------------

@dataclass
class RebuildReport:
    restored: list[str] = field(default_factory=list)
    homes_kept: list[str] = field(default_factory=list)
    homes_moved: list[str] = field(default_factory=list)
    backup_dir: Path | None = None


def rebuild(p: Provisioner, backup_root: Path | None = None) -> RebuildReport:
    """Reset the account tables, re-add every account and tidy /home.

    Homes of registered accounts are kept (ownership and mode fixed); any
    other directory under /home is moved to a host-side backup directory.
    """
    p.env.require_exists()
    report = RebuildReport()
    p.mounts.unmount_all()

    accounts: list[ExportedAccount] = []
    if p.env.initialized:
        try:
            accounts = p.registry.export_accounts()
        except RegistryCorrupt as e:
            log.warning("account tables are damaged (%s); salvaging what parses", e)
            accounts = p.registry.salvage_accounts()
    p.registry.restore_accounts(accounts)
    report.restored = [a.passwd.name for a in accounts]

    users = {u.host_home(p.env).name: u for u in p.registry.list_users()}
    home_dir = p.env.path("/home")
    home_dir.mkdir(parents=True, exist_ok=True)
    for entry in sorted(home_dir.iterdir()):
        user = users.get(entry.name)
        if user is not None and entry.is_dir() and not entry.is_symlink():
            _chown_tree(entry, user.uid, user.gid, p.chown)
            os.chmod(entry, 0o700)
            report.homes_kept.append(user.home)
            continue
        if report.backup_dir is None:
            report.backup_dir = Path(tempfile.mkdtemp(prefix="sealroot-homes-", dir=backup_root))
        shutil.move(str(entry), str(report.backup_dir / entry.name))
        report.homes_moved.append(entry.name)
        log.info("moved unregistered home %s to %s", entry.name, report.backup_dir)

    for user in users.values():
        if not user.host_home(p.env).is_dir():
            p.registry.provision_home(user)
            report.homes_kept.append(user.home)
    return report


def _chown_tree(path: Path, uid: int, gid: int, chown: Callable[..., None]) -> None:
    chown(path, uid, gid)
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                chown(child, uid, gid)


# -- enhance-isolation ------------------------------------------------------

def enhance_isolation(p: Provisioner, action: str) -> list[str]:
    p.env.require_exists()
    enhancer = IsolationEnhancer(p.env, p.registry, chown=p.chown)
    if action == "enhance":
        return enhancer.enhance()
    if action == "remove":
        return enhancer.unenhance()
    raise ValueError(f"unknown action: {action}")


# -- status -----------------------------------------------------------------

def environment_status(p: Provisioner, caps: HostCapabilities | None = None) -> dict[str, Any]:
    """Everything ``sealroot status`` shows; never raises for a broken root."""
    caps = caps or probe_capabilities()
    status: dict[str, Any] = {
        "root": str(p.env.root),
        "host": p.env.host,
        "exists": p.env.exists,
        "initialized": p.env.initialized,
        "size_bytes": p.env.size_bytes(),
        "users": [],
        "active_mounts": p.mounts.active_mounts() if p.env.exists else [],
        "ps_filter_installed": ProcessVisibilityFilter(p.env).is_installed(),
        "systemd_unit": str(p.unit_path) if p.unit_path.exists() else None,
        "host_info": get_host_info(caps),
    }
    if p.env.initialized:
        try:
            status["users"] = [
                {"username": u.username, "uid": u.uid, "gid": u.gid, "home": u.home, "shell": u.shell}
                for u in p.registry.list_users()
            ]
        except RegistryCorrupt as e:
            status["registry_error"] = str(e)
    return status


__all__ = [
    "Provisioner",
    "InstallReport",
    "RepairReport",
    "RebuildReport",
    "install",
    "cleanup",
    "repair",
    "rebuild",
    "smoke_test",
    "enhance_isolation",
    "environment_status",
    "systemd_unit_text",
    "write_systemd_unit",
    "enable_systemd_unit",
    "remove_systemd_unit",
]
