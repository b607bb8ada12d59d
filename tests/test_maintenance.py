from __future__ import annotations

import copy
import os
from pathlib import Path

import pytest
from conftest import FakeMountHost, FakeResolver

from sealroot import maintenance
from sealroot.config import DEFAULT_CONFIG
from sealroot.errors import PreconditionFailed
from sealroot.maintenance import Provisioner
from sealroot.sandbox.detect import HostCapabilities

CAPS = HostCapabilities({"chroot": "/usr/sbin/chroot", "unshare": None, "setpriv": None})


def _touch_node(path, mode, device):
    Path(path).touch()


@pytest.fixture
def mount_host(tmp_path: Path) -> FakeMountHost:
    return FakeMountHost(tmp_path / "mounts")


@pytest.fixture
def prov(env, tmp_path: Path, host_root, host_deps, chown, mount_host) -> Provisioner:
    (tmp_path / "systemd").mkdir()
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg.update(
        root=str(env.root),
        binaries=["/bin/bash", "/bin/ls", "/usr/bin/nano"],
        repair_binaries=["/bin/bash", "/bin/ls"],
        config_files=["/etc/hosts", "/etc/resolv.conf"],
        min_free_kb=0,
        systemd_unit_dir=str(tmp_path / "systemd"),
    )
    return Provisioner.from_config(
        cfg,
        runner=mount_host,
        resolver=FakeResolver(host_root, host_deps),
        chown=chown,
        mknod=_touch_node,
        mounts_file=mount_host.mounts_file,
        host_root=host_root,
    )


def test_install_builds_environment(prov: Provisioner, mount_host) -> None:
    report = maintenance.install(prov, "alice", "s3cret")

    env = prov.env
    assert report.user_created and not report.already_initialized
    assert report.materialize.missing == ["/usr/bin/nano"]
    assert env.path("/bin/bash").is_file()
    assert env.path("/lib64/ld-linux-x86-64.so.2").is_file()
    assert env.path("/etc/hosts").is_file()
    assert env.path("/dev/null").exists()
    assert [a.username for a in prov.registry.list_accounts()] == ["root", "alice"]
    assert prov.registry.verify_password("alice", "s3cret")

    unit = prov.unit_path.read_text()
    assert f'--root "{env.root}" mount' in unit
    assert f'--root "{env.root}" unmount' in unit
    assert ["systemctl", "enable", "sealroot-mount.service"] in mount_host.calls


def test_install_on_existing_environment_only_adds_user(prov: Provisioner, mount_host) -> None:
    maintenance.install(prov, "alice", "pw")
    mount_host.calls.clear()

    report = maintenance.install(prov, "bob", "pw")

    assert report.already_initialized
    assert report.user_created
    assert report.materialize is None
    assert [a.username for a in prov.registry.list_users()] == ["alice", "bob"]
    assert mount_host.calls == []


def test_install_existing_user_is_a_warning(prov: Provisioner, caplog) -> None:
    maintenance.install(prov, "alice", "pw")

    report = maintenance.install(prov, "alice", "other")

    assert not report.user_created
    assert "already exists" in caplog.text
    assert prov.registry.verify_password("alice", "pw")


def test_install_checks_disk_space(prov: Provisioner) -> None:
    prov.config["min_free_kb"] = 10**15
    with pytest.raises(PreconditionFailed, match="disk space"):
        maintenance.install(prov, "alice", "pw")
    assert not prov.env.initialized


def test_install_without_systemd_dir_skips_unit(prov: Provisioner, tmp_path: Path) -> None:
    prov.config["systemd_unit_dir"] = str(tmp_path / "no-systemd")
    report = maintenance.install(prov, "alice", "pw")
    assert report.unit_path is None
    assert prov.env.initialized


def test_cleanup_unmounts_and_removes_everything(prov: Provisioner, mount_host) -> None:
    maintenance.install(prov, "alice", "pw")
    prov.mounts.mount_all()

    maintenance.cleanup(prov)

    assert not prov.env.root.exists()
    assert not prov.unit_path.exists()
    assert ["systemctl", "disable", "sealroot-mount.service"] in mount_host.calls


def test_cleanup_refuses_while_mounts_remain(prov: Provisioner, mount_host) -> None:
    maintenance.install(prov, "alice", "pw")
    prov.mounts.mount_all()
    mount_host.fail_targets = {os.path.realpath(prov.env.root / "dev")}

    with pytest.raises(PreconditionFailed, match="mounts still active"):
        maintenance.cleanup(prov)

    assert prov.env.path("/etc/passwd").is_file()
    assert prov.unit_path.exists()


def test_cleanup_refuses_shallow_paths(prov: Provisioner) -> None:
    prov.env = type(prov.env)(Path("/opt"))
    with pytest.raises(PreconditionFailed, match="too shallow"):
        maintenance.cleanup(prov)


def test_repair_restores_binaries_and_homes(prov: Provisioner, mount_host) -> None:
    maintenance.install(prov, "alice", "pw")
    prov.env.path("/bin/bash").unlink()
    prov.env.path("/home/alice/.bashrc").write_text("broken\n")
    os.chmod(prov.env.path("/etc/shadow"), 0o644)

    report = maintenance.repair(prov, CAPS)

    assert prov.env.path("/bin/bash").is_file()
    assert "PS1" in prov.env.path("/home/alice/.bashrc").read_text()
    assert report.homes == ["/home/alice"]
    assert prov.env.path("/etc/shadow").stat().st_mode & 0o777 == 0o600
    assert mount_host.calls[-1][:4] == ["/usr/sbin/chroot", str(prov.env.root), "/bin/bash", "-c"]
    assert report.smoke_test.ok


def test_repair_requires_existing_environment(prov: Provisioner) -> None:
    prov.env.root.rmdir()
    with pytest.raises(PreconditionFailed):
        maintenance.repair(prov, CAPS)


def test_rebuild_keeps_registered_homes_and_moves_others(prov: Provisioner, tmp_path: Path, chown) -> None:
    maintenance.install(prov, "alice", "pw")
    (prov.env.path("/home/alice") / "notes.txt").write_text("keep me")
    ghost = prov.env.path("/home/ghost")
    ghost.mkdir()
    (ghost / "stuff").write_text("x")
    backups = tmp_path / "backups"
    backups.mkdir()
    chown.calls.clear()

    report = maintenance.rebuild(prov, backup_root=backups)

    assert report.restored == ["alice"]
    assert report.homes_kept == ["/home/alice"]
    assert report.homes_moved == ["ghost"]
    assert (report.backup_dir / "ghost" / "stuff").read_text() == "x"
    assert not ghost.exists()
    assert (prov.env.path("/home/alice") / "notes.txt").read_text() == "keep me"
    assert (str(prov.env.path("/home/alice/notes.txt")), 1000, 1000) in chown.calls
    assert [a.uid for a in prov.registry.list_users()] == [1000]


def test_rebuild_recreates_missing_home(prov: Provisioner, tmp_path: Path) -> None:
    import shutil

    maintenance.install(prov, "alice", "pw")
    shutil.rmtree(prov.env.path("/home/alice"))

    report = maintenance.rebuild(prov, backup_root=tmp_path)

    assert prov.env.path("/home/alice/.profile").is_file()
    assert report.homes_moved == []


def test_enhance_isolation_actions(prov: Provisioner) -> None:
    maintenance.install(prov, "alice", "pw")

    assert "/bin/processes" in maintenance.enhance_isolation(prov, "enhance")
    assert "/bin/processes" in maintenance.enhance_isolation(prov, "remove")
    with pytest.raises(ValueError):
        maintenance.enhance_isolation(prov, "sideways")


def test_environment_status(prov: Provisioner) -> None:
    maintenance.install(prov, "alice", "pw")
    prov.mounts.mount_all()

    status = maintenance.environment_status(prov, CAPS)

    assert status["exists"] and status["initialized"]
    assert status["size_bytes"] > 0
    assert status["users"][0]["username"] == "alice"
    assert len(status["active_mounts"]) == 5
    assert status["host_info"]["detected_method"] == "unrestricted"
    assert status["systemd_unit"] == str(prov.unit_path)


def test_environment_status_reports_corrupt_registry(prov: Provisioner) -> None:
    maintenance.install(prov, "alice", "pw")
    with open(prov.env.path("/etc/passwd"), "a") as f:
        f.write("garbage\n")

    status = maintenance.environment_status(prov, CAPS)

    assert "registry_error" in status
    assert status["users"] == []


def test_environment_status_for_missing_root(prov: Provisioner) -> None:
    prov.env.root.rmdir()
    status = maintenance.environment_status(prov, CAPS)
    assert status["exists"] is False
    assert status["size_bytes"] == 0


def test_rebuild_recovers_half_written_registry(prov: Provisioner, tmp_path: Path) -> None:
    from sealroot.errors import RegistryCorrupt

    maintenance.install(prov, "alice", "pw")
    with open(prov.env.path("/etc/passwd"), "a") as f:
        f.write("bob:x:1001:1001::/home/bob:/bin/bash\n")
    with pytest.raises(RegistryCorrupt):
        prov.registry.list_accounts()

    report = maintenance.rebuild(prov, backup_root=tmp_path)

    assert report.restored == ["alice", "bob"]
    assert [a.username for a in prov.registry.list_users()] == ["alice", "bob"]
    assert prov.registry.verify_password("alice", "pw")
    assert prov.env.path("/home/bob/.profile").is_file()
