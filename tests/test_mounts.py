from __future__ import annotations

import os
from pathlib import Path

from conftest import FakeMountHost

from sealroot.mounts import MountKind, MountManager, default_mount_table, read_mount_points


def _manager(env, tmp_path: Path, **kwargs) -> tuple[MountManager, FakeMountHost]:
    host = FakeMountHost(tmp_path / "mounts", **kwargs)
    return MountManager(env, default_mount_table("64M"), runner=host, mounts_file=host.mounts_file), host


def test_default_table_order_and_options() -> None:
    table = default_mount_table("100M")
    assert [m.kind for m in table] == [
        MountKind.PROC, MountKind.SYS, MountKind.DEV, MountKind.DEVPTS, MountKind.TMP,
    ]
    assert table[-1].options == ("size=100M", "nodev", "nosuid")
    assert table[2].bind and table[2].source == "/dev"


def test_mount_argv(env) -> None:
    proc, _, dev, _, tmp = default_mount_table("64M")
    assert proc.mount_argv(env) == ["mount", "-t", "proc", "proc", str(env.root / "proc")]
    assert dev.mount_argv(env) == ["mount", "--bind", "/dev", str(env.root / "dev")]
    assert tmp.mount_argv(env) == [
        "mount", "-t", "tmpfs", "-o", "size=64M,nodev,nosuid", "tmpfs", str(env.root / "tmp"),
    ]
    assert tmp.umount_argv(env) == ["umount", str(env.root / "tmp")]


def test_read_mount_points_decodes_octal_escapes(tmp_path: Path) -> None:
    table = tmp_path / "mounts"
    table.write_text("proc /srv/my\\040root/proc proc rw 0 0\n")
    assert read_mount_points(table) == ["/srv/my root/proc"]
    assert read_mount_points(tmp_path / "absent") is None


def test_mount_all_mounts_in_order(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)

    report = manager.mount_all()

    assert report.ok
    assert report.mounted == ["/proc", "/sys", "/dev", "/dev/pts", "/tmp"]
    assert [c[-1] for c in host.calls] == [
        str(env.root / t) for t in ("proc", "sys", "dev", "dev/pts", "tmp")
    ]
    assert env.path("/dev/pts").is_dir()


def test_mount_all_skips_already_mounted(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)
    manager.mount_all()
    host.calls.clear()

    report = manager.mount_all()

    assert host.calls == []
    assert report.mounted == []
    assert len(report.skipped) == 5


def test_mount_failure_is_recorded_and_sequence_continues(env, tmp_path: Path) -> None:
    failing = os.path.realpath(env.root / "sys")
    manager, host = _manager(env, tmp_path, fail_targets={failing})

    report = manager.mount_all()

    assert not report.ok
    assert [f.target for f in report.failures] == ["/sys"]
    assert report.mounted == ["/proc", "/dev", "/dev/pts", "/tmp"]


def test_unmount_all_reverses_order(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)
    manager.mount_all()
    host.calls.clear()

    report = manager.unmount_all()

    assert report.unmounted == ["/tmp", "/dev/pts", "/dev", "/sys", "/proc"]
    assert all(c[0] == "umount" for c in host.calls)
    assert manager.active_mounts() == []


def test_unmount_without_mount_is_a_no_op(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)

    first = manager.unmount_all()
    second = manager.unmount_all()

    assert host.calls == []
    assert first.ok and second.ok
    assert len(first.skipped) == 5


def test_mounted_context_releases_on_error(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)

    try:
        with manager.mounted() as report:
            assert len(report.mounted) == 5
            raise RuntimeError("shell crashed")
    except RuntimeError:
        pass

    assert manager.active_mounts() == []
    assert "/proc" in host.mounted()  # host mounts untouched


def test_active_mounts_only_lists_paths_below_root(env, tmp_path: Path) -> None:
    manager, host = _manager(env, tmp_path)
    sibling = str(env.root) + "-other"
    with open(host.mounts_file, "a") as f:
        f.write(f"tmpfs {sibling} tmpfs rw 0 0\n")

    manager.mount_all()

    active = manager.active_mounts()
    assert sibling not in active
    assert len(active) == 5
