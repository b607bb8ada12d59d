"""
sealroot — Configuration

Loads config from:
  1. Defaults
  2. Global config ($SEALROOT_HOME/config.json or /etc/sealroot/config.json)
  3. Explicit file (CLI --config)
  4. Environment variables

The global layer is skipped while pytest is running so tests never pick up
a real host configuration.
"""
from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_ROOT = "/opt/secure_chroot"

DEFAULT_BINARIES = [
    "/bin/bash", "/bin/sh", "/bin/ls", "/bin/cat", "/bin/cp", "/bin/mv",
    "/bin/rm", "/bin/mkdir", "/bin/rmdir", "/bin/chmod", "/bin/chown",
    "/bin/ps", "/bin/grep", "/bin/sed", "/bin/awk", "/usr/bin/whoami",
    "/usr/bin/id", "/usr/bin/passwd", "/usr/bin/su", "/bin/mount",
    "/bin/umount", "/usr/bin/nano", "/usr/bin/vi", "/bin/login",
    "/usr/bin/setpriv", "/usr/bin/env", "/usr/bin/unshare",
    "/usr/bin/head", "/usr/bin/tail", "/usr/bin/top", "/bin/df",
]

# repair also restores the terminal helpers
REPAIR_EXTRA_BINARIES = ["/usr/bin/clear", "/usr/bin/reset"]

DEFAULT_CONFIG_FILES = [
    "/etc/hosts",
    "/etc/resolv.conf",
    "/etc/nsswitch.conf",
    "/etc/login.defs",
    "/etc/bash.bashrc",
    "/etc/profile",
]

DEFAULT_CONFIG = {
    "root": DEFAULT_ROOT,
    "binaries": DEFAULT_BINARIES,
    "repair_binaries": DEFAULT_BINARIES + REPAIR_EXTRA_BINARIES,
    "config_files": DEFAULT_CONFIG_FILES,
    "tmpfs_size": "100M",
    "min_free_kb": 1_000_000,  # 1 GB
    "session_timeout": None,   # seconds, None = unbounded
    "log_file": "/var/log/sealroot.log",
    "systemd_unit_dir": "/etc/systemd/system",
    "systemd_unit_name": "sealroot-mount.service",
    "transitive_libraries": True,
    "default_shell": "/bin/bash",
}


def load_config(config_path: Path | None = None) -> dict:
    """Load sealroot config.

    ``config_path`` (CLI --config) is applied on top of the global file.
    A path given explicitly that does not exist is a warning, not an error.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    loaded_files: list[Path] = []

    is_pytest = bool(os.environ.get("PYTEST_CURRENT_TEST"))
    sealroot_home = os.environ.get("SEALROOT_HOME")
    global_path = (Path(sealroot_home) if sealroot_home else Path("/etc/sealroot")) / "config.json"

    layers: list[Path] = []
    if not is_pytest or sealroot_home:
        layers.append(global_path)
    if config_path is not None:
        layers.append(Path(config_path))

    for path in layers:
        if not path.exists():
            if path == config_path:
                log.warning("config file %s not found, ignoring", path)
            continue
        cfg = _read_json(path)
        if cfg:
            config = _merge(config, cfg)
            loaded_files.append(path)

    for path in loaded_files:
        log.debug("config loaded from %s", path)

    _apply_env_overrides(config)
    return config


def _read_json(path: Path) -> dict:
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        log.warning("could not read %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        log.warning("ignoring %s: top-level value is not an object", path)
        return {}
    return data


def _merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict) -> None:
    """Apply explicit env var overrides after file/default loading."""
    root = os.environ.get("SEALROOT_ROOT")
    if root:
        config["root"] = root

    tmpfs_size = os.environ.get("SEALROOT_TMPFS_SIZE")
    if tmpfs_size:
        config["tmpfs_size"] = tmpfs_size

    log_file = os.environ.get("SEALROOT_LOG_FILE")
    if log_file is not None:
        config["log_file"] = log_file or None

    timeout = os.environ.get("SEALROOT_SESSION_TIMEOUT")
    if timeout:
        try:
            config["session_timeout"] = float(timeout)
        except ValueError:
            log.warning("invalid SEALROOT_SESSION_TIMEOUT=%r", timeout)

    transitive = os.environ.get("SEALROOT_TRANSITIVE_LIBS")
    if transitive is not None:
        config["transitive_libraries"] = _to_bool(transitive)


def _to_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}
