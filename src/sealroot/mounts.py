"""Pseudo-filesystem mounts a usable interactive shell needs.

Every step is idempotent and best-effort: a target that is already mounted
is skipped, a failing mount is logged and recorded, and the sequence goes
on. ``unmount_all`` tolerates targets that were never mounted, so it is
safe after a partial ``mount_all`` or with no ``mount_all`` at all.
"""
from __future__ import annotations

import contextlib
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from .environment import ChrootEnvironment
from .errors import MountFailed
from .hostcmd import CommandRunner, run_command

log = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/self/mounts")


class MountKind(Enum):
    PROC = "proc"
    SYS = "sys"
    DEV = "dev"
    DEVPTS = "devpts"
    TMP = "tmp"


@dataclass(frozen=True)
class MountPoint:
    """One mount inside the sandbox root."""
    kind: MountKind
    target: str                  # absolute path inside the root
    fstype: str
    source: str
    options: tuple[str, ...] = ()
    bind: bool = False

    def mount_argv(self, env: ChrootEnvironment) -> list[str]:
        dest = str(env.path(self.target))
        if self.bind:
            return ["mount", "--bind", self.source, dest]
        cmd = ["mount", "-t", self.fstype]
        if self.options:
            cmd.extend(["-o", ",".join(self.options)])
        cmd.extend([self.source, dest])
        return cmd

    def umount_argv(self, env: ChrootEnvironment) -> list[str]:
        return ["umount", str(env.path(self.target))]


def default_mount_table(tmpfs_size: str = "100M") -> list[MountPoint]:
    """proc, sys, /dev bind, devpts under it, then a capped tmpfs on /tmp."""
    return [
        MountPoint(MountKind.PROC, "/proc", "proc", "proc"),
        MountPoint(MountKind.SYS, "/sys", "sysfs", "sysfs"),
        MountPoint(MountKind.DEV, "/dev", "", "/dev", bind=True),
        MountPoint(MountKind.DEVPTS, "/dev/pts", "devpts", "devpts"),
        MountPoint(MountKind.TMP, "/tmp", "tmpfs", "tmpfs",
                   options=(f"size={tmpfs_size}", "nodev", "nosuid")),
    ]


_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def read_mount_points(mounts_file: Path = PROC_MOUNTS) -> list[str] | None:
    """Mount points listed in a mounts(5)-format table, or None if unreadable."""
    try:
        text = mounts_file.read_text()
    except OSError:
        return None
    points = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            points.append(_OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), fields[1]))
    return points


@dataclass
class MountReport:
    mounted: list[str] = field(default_factory=list)
    unmounted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[MountFailed] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class MountManager:
    """Mounts and unmounts the pseudo-filesystems of one environment."""

    def __init__(
        self,
        env: ChrootEnvironment,
        table: list[MountPoint] | None = None,
        *,
        runner: CommandRunner = run_command,
        mounts_file: Path = PROC_MOUNTS,
    ):
        self.env = env
        self.table = table if table is not None else default_mount_table()
        self._run = runner
        self.mounts_file = mounts_file

    def is_mounted(self, mount: MountPoint) -> bool:
        target = os.path.realpath(self.env.path(mount.target))
        points = read_mount_points(self.mounts_file)
        if points is None:
            return os.path.ismount(target)
        return target in points

    def active_mounts(self) -> list[str]:
        """Every host mount point at or below the root."""
        root = os.path.realpath(self.env.root)
        points = read_mount_points(self.mounts_file) or []
        return [p for p in points if p == root or p.startswith(root + os.sep)]

    def mount_all(self) -> MountReport:
        report = MountReport()
        for mount in self.table:
            target = mount.target
            if self.is_mounted(mount):
                report.skipped.append(target)
                continue
            try:
                self.env.path(target).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._fail(report, target, f"cannot create mount target: {e}")
                continue
            result = self._run(mount.mount_argv(self.env), timeout=30)
            if result.ok:
                report.mounted.append(target)
                log.debug("mounted %s on %s", mount.fstype or "bind", target)
            else:
                self._fail(report, target, result.stderr.strip() or f"mount exited {result.returncode}")
        return report

    def unmount_all(self) -> MountReport:
        """Reverse of ``mount_all``; never raises."""
        report = MountReport()
        for mount in reversed(self.table):
            target = mount.target
            if not self.is_mounted(mount):
                report.skipped.append(target)
                continue
            result = self._run(mount.umount_argv(self.env), timeout=30)
            if result.ok:
                report.unmounted.append(target)
            else:
                self._fail(report, target, result.stderr.strip() or f"umount exited {result.returncode}")
        return report

    @contextlib.contextmanager
    def mounted(self) -> Iterator[MountReport]:
        """Mount on entry, unmount on every exit path."""
        report = self.mount_all()
        try:
            yield report
        finally:
            self.unmount_all()

    @staticmethod
    def _fail(report: MountReport, target: str, message: str) -> None:
        failure = MountFailed(target, message)
        log.warning("failed to mount/unmount %s", failure)
        report.failures.append(failure)
