from __future__ import annotations

import json
from pathlib import Path

from sealroot.config import DEFAULT_CONFIG, DEFAULT_ROOT, load_config


def test_defaults_without_files() -> None:
    config = load_config()
    assert config["root"] == DEFAULT_ROOT
    assert config["tmpfs_size"] == "100M"
    assert config["transitive_libraries"] is True
    assert config["log_file"] is None  # SEALROOT_LOG_FILE="" from conftest


def test_defaults_are_not_mutated() -> None:
    config = load_config()
    config["binaries"].append("/bin/evil")
    assert "/bin/evil" not in DEFAULT_CONFIG["binaries"]


def test_global_file_from_sealroot_home(monkeypatch, tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(json.dumps({"tmpfs_size": "256M"}))
    monkeypatch.setenv("SEALROOT_HOME", str(tmp_path))

    assert load_config()["tmpfs_size"] == "256M"


def test_explicit_file_overrides_global(monkeypatch, tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.json").write_text(json.dumps({"root": "/srv/a", "tmpfs_size": "256M"}))
    extra = tmp_path / "extra.json"
    extra.write_text(json.dumps({"root": "/srv/b"}))
    monkeypatch.setenv("SEALROOT_HOME", str(home))

    config = load_config(extra)

    assert config["root"] == "/srv/b"
    assert config["tmpfs_size"] == "256M"


def test_env_overrides_win(monkeypatch, tmp_path: Path) -> None:
    extra = tmp_path / "extra.json"
    extra.write_text(json.dumps({"root": "/srv/b", "session_timeout": 10}))
    monkeypatch.setenv("SEALROOT_ROOT", "/srv/env")
    monkeypatch.setenv("SEALROOT_SESSION_TIMEOUT", "2.5")
    monkeypatch.setenv("SEALROOT_TRANSITIVE_LIBS", "no")
    monkeypatch.setenv("SEALROOT_TMPFS_SIZE", "32M")

    config = load_config(extra)

    assert config["root"] == "/srv/env"
    assert config["session_timeout"] == 2.5
    assert config["transitive_libraries"] is False
    assert config["tmpfs_size"] == "32M"


def test_bad_files_are_warnings(tmp_path: Path, caplog) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    listed = tmp_path / "list.json"
    listed.write_text("[1, 2]")

    assert load_config(broken)["root"] == DEFAULT_ROOT
    assert load_config(listed)["root"] == DEFAULT_ROOT
    assert load_config(tmp_path / "missing.json")["root"] == DEFAULT_ROOT
    assert "not found" in caplog.text


def test_invalid_timeout_is_ignored(monkeypatch) -> None:
    monkeypatch.setenv("SEALROOT_SESSION_TIMEOUT", "soon")
    assert load_config()["session_timeout"] is None
