"""Dependency-closure filesystem builder.

Copies host executables into the sandbox root at their original absolute
paths together with every shared library they need, so the root is
self-sufficient under chroot.

Library closure:
    direct deps of each binary (via the host's ``ldd``), then the deps of
    every copied library, until nothing new turns up. ``transitive=False``
    stops after the first level for compatibility with older roots.
"""
from __future__ import annotations

import logging
import os
import shutil
import stat
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from .environment import ChrootEnvironment
from .errors import DeviceNodeCreateFailed
from .hostcmd import CommandRunner, run_command
from .registry import UserRegistry

log = logging.getLogger(__name__)

SKELETON_DIRS = [
    "bin", "sbin", "usr/bin", "usr/sbin", "usr/lib", "usr/lib64", "lib", "lib64",
    "etc", "etc/pam.d", "etc/security", "dev", "dev/pts", "proc", "sys", "tmp",
    "var", "var/log", "var/tmp", "home", "root", "opt", "mnt", "media",
]

SKELETON_MODES = {
    "": 0o755,
    "tmp": 0o1777,
    "var/tmp": 0o755,
    "root": 0o700,
}

# (name, major, minor, mode)
DEVICE_NODES = [
    ("null", 1, 3, 0o666),
    ("zero", 1, 5, 0o666),
    ("random", 1, 8, 0o666),
    ("urandom", 1, 9, 0o666),
    ("tty", 5, 0, 0o666),
    ("console", 5, 1, 0o600),
    ("ptmx", 5, 2, 0o666),
]

PAM_FILES = ["su", "login"]
PAM_GLOBS = ["common-*"]

PAM_SU = """\
auth       sufficient pam_rootok.so
auth       required   pam_unix.so
account    required   pam_unix.so
session    required   pam_unix.so
"""

MAX_SYMLINK_DEPTH = 40


@dataclass
class Dependencies:
    paths: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


class DependencyResolver(Protocol):
    def resolve(self, path: Path) -> Dependencies:
        """Return the shared libraries ``path`` links against."""
        ...


def parse_ldd_output(text: str) -> Dependencies:
    """Parse ``ldd`` output into absolute library paths.

    Handles ``name => /path (addr)``, bare ``/path (addr)`` (the dynamic
    loader), ``name => not found`` and the vdso / static-binary lines.
    """
    deps = Dependencies()
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if "=>" in line:
            name, _, rest = line.partition("=>")
            rest = rest.strip()
            if rest.startswith("not found"):
                deps.unresolved.append(name.strip())
                continue
            target = rest.split(" (")[0].strip()
        else:
            target = line.split(" (")[0].strip()
        if target.startswith("/") and target not in deps.paths:
            deps.paths.append(target)
    return deps


class LddResolver:
    """Resolve dependencies with the host dynamic linker's ``ldd``."""

    def __init__(self, runner: CommandRunner = run_command):
        self._run = runner

    def resolve(self, path: Path) -> Dependencies:
        result = self._run(["ldd", str(path)], timeout=30)
        # ldd exits 1 for static binaries and scripts; nothing to copy then.
        if not result.ok:
            return Dependencies()
        return parse_ldd_output(result.stdout)


@dataclass
class MaterializeReport:
    copied: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    libraries: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    written: int = 0

    def _add(self, inside: str) -> None:
        if inside not in self.copied:
            self.copied.append(inside)


class FilesystemBuilder:
    """Lays out and populates one sandbox root."""

    def __init__(
        self,
        env: ChrootEnvironment,
        resolver: DependencyResolver | None = None,
        *,
        host_root: Path = Path("/"),
        transitive: bool = True,
        mknod: Callable[..., None] = os.mknod,
    ):
        self.env = env
        self.resolver = resolver or LddResolver()
        self.host_root = Path(host_root)
        self.transitive = transitive
        self._mknod = mknod

    def _host(self, inside: str) -> Path:
        return self.host_root / inside.lstrip("/")

    # -- skeleton -----------------------------------------------------------

    def layout_skeleton(self) -> None:
        for rel in SKELETON_DIRS:
            self.env.path(rel).mkdir(parents=True, exist_ok=True)
        for rel, mode in SKELETON_MODES.items():
            os.chmod(self.env.path(rel), mode)
        log.info("directory skeleton ready under %s", self.env.root)

    # -- binaries and libraries ---------------------------------------------

    def materialize(self, binaries: list[str]) -> MaterializeReport:
        """Copy binaries plus their library closure into the root."""
        report = MaterializeReport()
        pending: deque[str] = deque()
        seen: set[str] = set()

        for binary in binaries:
            if not self._host(binary).exists():
                report.missing.append(binary)
                log.info("skipping %s: not present on host", binary)
                continue
            self._copy(binary, report)
            pending.extend(self._deps(binary, report))

        while pending:
            lib = pending.popleft()
            if lib in seen:
                continue
            seen.add(lib)
            if not self._host(lib).exists():
                if lib not in report.unresolved:
                    report.unresolved.append(lib)
                continue
            self._copy(lib, report)
            report.libraries.append(lib)
            if self.transitive:
                pending.extend(d for d in self._deps(lib, report) if d not in seen)

        if report.unresolved:
            log.warning("unresolved libraries: %s", ", ".join(report.unresolved))
        log.info(
            "materialized %d file(s) (%d written), %d missing binaries",
            len(report.copied), report.written, len(report.missing),
        )
        return report

    def _deps(self, inside: str, report: MaterializeReport) -> list[str]:
        deps = self.resolver.resolve(self._host(inside))
        for name in deps.unresolved:
            if name not in report.unresolved:
                report.unresolved.append(name)
        return deps.paths

    def _copy(self, inside: str, report: MaterializeReport, depth: int = 0) -> None:
        """Mirror one host path into the root, following symlink chains."""
        if depth > MAX_SYMLINK_DEPTH:
            log.warning("symlink chain too deep at %s", inside)
            return
        src = self._host(inside)
        dest = self.env.path(inside)
        dest.parent.mkdir(parents=True, exist_ok=True)
        if not self._inside_root(dest.parent):
            log.warning("refusing to write %s: parent escapes the root", dest)
            return

        if src.is_symlink():
            link = os.readlink(src)
            if not (dest.is_symlink() and os.readlink(dest) == link):
                if dest.is_symlink() or dest.exists():
                    dest.unlink()
                os.symlink(link, dest)
                report.written += 1
            report._add(inside)
            target = link if link.startswith("/") else os.path.join(os.path.dirname(inside), link)
            self._copy(os.path.normpath(target), report, depth + 1)
            return

        if self._needs_copy(src, dest):
            if dest.is_symlink():
                dest.unlink()
            shutil.copy2(src, dest)
            report.written += 1
        report._add(inside)

    @staticmethod
    def _needs_copy(src: Path, dest: Path) -> bool:
        if dest.is_symlink() or not dest.exists():
            return True
        s, d = src.stat(), dest.stat()
        return s.st_size != d.st_size or int(s.st_mtime) != int(d.st_mtime)

    def _inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.env.root.resolve())
        except ValueError:
            return False
        return True

    # -- configuration ------------------------------------------------------

    def copy_host_config(self, config_files: list[str]) -> list[str]:
        """Copy the whitelisted host config files; never the credential tables."""
        copied = []
        for inside in config_files:
            if Path(inside).name in ("passwd", "group", "shadow", "gshadow"):
                log.warning("not copying host credential table %s", inside)
                continue
            src = self._host(inside)
            if not src.is_file():
                continue
            dest = self.env.path(inside)
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.is_symlink():
                dest.unlink()
            shutil.copy2(src, dest)
            copied.append(inside)

        pam_dir = self._host("/etc/pam.d")
        if pam_dir.is_dir():
            self.env.path("/etc/pam.d").mkdir(parents=True, exist_ok=True)
            names = [pam_dir / n for n in PAM_FILES]
            for pattern in PAM_GLOBS:
                names.extend(sorted(pam_dir.glob(pattern)))
            for src in names:
                if src.is_file():
                    shutil.copy2(src, self.env.path("/etc/pam.d") / src.name)
                    copied.append(f"/etc/pam.d/{src.name}")

        security = self._host("/etc/security")
        if security.is_dir():
            shutil.copytree(security, self.env.path("/etc/security"),
                            symlinks=True, dirs_exist_ok=True)
            copied.append("/etc/security")
        return copied

    def write_pam_config(self) -> None:
        """Minimal PAM su stack so ``su`` works for sandbox accounts."""
        if not self._host("/etc/pam.d").is_dir():
            return
        pam = self.env.path("/etc/pam.d")
        pam.mkdir(parents=True, exist_ok=True)
        (pam / "su").write_text(PAM_SU)

    def provision_baseline_config(self, config_files: list[str], registry: UserRegistry) -> None:
        self.copy_host_config(config_files)
        self.write_pam_config()
        registry.reset_to_baseline()

    # -- device nodes -------------------------------------------------------

    def provision_device_nodes(self) -> list[DeviceNodeCreateFailed]:
        """Create the character devices a shell needs; failures are warnings."""
        failures = []
        dev = self.env.path("/dev")
        dev.mkdir(parents=True, exist_ok=True)
        for name, major, minor, mode in DEVICE_NODES:
            path = dev / name
            try:
                if not os.path.lexists(path):
                    self._mknod(str(path), mode | stat.S_IFCHR, os.makedev(major, minor))
                os.chmod(path, mode)
            except OSError as e:
                failure = DeviceNodeCreateFailed(f"/dev/{name}", e.strerror or str(e))
                log.warning("could not create device node %s", failure)
                failures.append(failure)
        return failures
