"""Pytest configuration and fixtures for sealroot tests.

Nothing here needs root: host commands go through fake runners, ownership
changes through a recording chown, and mounts through a fake mount table.
"""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from sealroot.builder import Dependencies
from sealroot.environment import ChrootEnvironment
from sealroot.hostcmd import CommandResult
from sealroot.registry import UserRegistry


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep host config and the host log file out of every test."""
    monkeypatch.setenv("SEALROOT_LOG_FILE", "")
    monkeypatch.delenv("SEALROOT_HOME", raising=False)
    monkeypatch.delenv("SEALROOT_ROOT", raising=False)
    monkeypatch.delenv("SEALROOT_SESSION_TIMEOUT", raising=False)
    monkeypatch.delenv("SEALROOT_TRANSITIVE_LIBS", raising=False)
    monkeypatch.delenv("SEALROOT_TMPFS_SIZE", raising=False)


class FakeRunner:
    """Records argv lists; answers by executable basename."""

    def __init__(self, responses: dict | None = None):
        self.calls: list[list[str]] = []
        self.envs: list[dict | None] = []
        self.responses = responses or {}

    def __call__(self, argv, *, timeout=None, env=None):
        self.calls.append(list(argv))
        self.envs.append(env)
        response = self.responses.get(os.path.basename(argv[0]), 0)
        if callable(response):
            response = response(list(argv))
        if isinstance(response, CommandResult):
            return response
        return CommandResult(list(argv), response, stderr="" if response == 0 else "boom")

    def names(self) -> list[str]:
        return [os.path.basename(c[0]) for c in self.calls]


class FakeMountHost(FakeRunner):
    """A runner whose mount/umount edit a mounts(5)-format file."""

    def __init__(self, mounts_file: Path, fail_targets: set[str] | None = None):
        super().__init__()
        self.mounts_file = mounts_file
        self.fail_targets = fail_targets or set()
        mounts_file.write_text("sysfs /sys sysfs rw 0 0\nproc /proc proc rw 0 0\n")

    def __call__(self, argv, *, timeout=None, env=None):
        self.calls.append(list(argv))
        name = os.path.basename(argv[0])
        target = os.path.realpath(argv[-1])
        if target in self.fail_targets:
            return CommandResult(list(argv), 32, stderr=f"{name}: permission denied")
        escaped = target.replace(" ", "\\040")
        lines = self.mounts_file.read_text().splitlines()
        if name == "mount":
            lines.append(f"{argv[-2]} {escaped} fs rw 0 0")
        elif name == "umount":
            lines = [l for l in lines if l.split()[1] != escaped]
        self.mounts_file.write_text("".join(l + "\n" for l in lines))
        return CommandResult(list(argv), 0)

    def mounted(self) -> list[str]:
        return [l.split()[1] for l in self.mounts_file.read_text().splitlines()]


class FakeResolver:
    """Dependency resolver backed by a dict of host path -> library paths."""

    def __init__(self, host_root: Path, deps: dict[str, list[str]] | None = None):
        self.host_root = host_root
        self.deps = deps or {}
        self.resolved: list[str] = []

    def resolve(self, path: Path) -> Dependencies:
        inside = "/" + str(Path(path).relative_to(self.host_root))
        self.resolved.append(inside)
        return Dependencies(paths=list(self.deps.get(inside, [])))


class RecordingChown:
    def __init__(self):
        self.calls: list[tuple[str, int, int]] = []

    def __call__(self, path, uid, gid):
        self.calls.append((str(path), uid, gid))


@pytest.fixture
def env(tmp_path: Path) -> ChrootEnvironment:
    root = tmp_path / "chroot"
    root.mkdir()
    return ChrootEnvironment(root, host="testhost")


@pytest.fixture
def chown() -> RecordingChown:
    return RecordingChown()


@pytest.fixture
def registry(env: ChrootEnvironment, chown: RecordingChown) -> UserRegistry:
    reg = UserRegistry(env, chown=chown)
    reg.reset_to_baseline()
    return reg


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """A fake host filesystem with a couple of binaries and libraries."""
    host = tmp_path / "host"
    for rel, content in {
        "bin/bash": b"\x7fELF bash",
        "bin/ls": b"\x7fELF ls",
        "usr/bin/setpriv": b"\x7fELF setpriv",
        "lib/x86_64-linux-gnu/libc.so.6": b"libc",
        "lib/x86_64-linux-gnu/libtinfo.so.6.4": b"libtinfo",
        "lib/x86_64-linux-gnu/libselinux.so.1": b"libselinux",
        "lib/x86_64-linux-gnu/libpcre2-8.so.0": b"libpcre2",
        "lib64/ld-linux-x86-64.so.2": b"ld",
        "etc/hosts": b"127.0.0.1 localhost\n",
        "etc/resolv.conf": b"nameserver 127.0.0.53\n",
        "etc/passwd": b"root:x:0:0:root:/root:/bin/bash\nhostuser:x:1000:1000::/home/hostuser:/bin/bash\n",
        "etc/pam.d/su": b"host su stack\n",
        "etc/pam.d/common-auth": b"auth required pam_unix.so\n",
        "etc/security/limits.conf": b"# limits\n",
    }.items():
        path = host / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    (host / "lib/x86_64-linux-gnu/libtinfo.so.6").symlink_to("libtinfo.so.6.4")
    return host


@pytest.fixture
def host_deps() -> dict[str, list[str]]:
    return {
        "/bin/bash": [
            "/lib/x86_64-linux-gnu/libtinfo.so.6",
            "/lib/x86_64-linux-gnu/libc.so.6",
            "/lib64/ld-linux-x86-64.so.2",
        ],
        "/bin/ls": [
            "/lib/x86_64-linux-gnu/libselinux.so.1",
            "/lib/x86_64-linux-gnu/libc.so.6",
            "/lib64/ld-linux-x86-64.so.2",
        ],
        # only reached through the transitive closure
        "/lib/x86_64-linux-gnu/libselinux.so.1": [
            "/lib/x86_64-linux-gnu/libpcre2-8.so.0",
            "/lib/x86_64-linux-gnu/libc.so.6",
        ],
    }
