"""The sandbox root and the preconditions every operation checks against it."""
from __future__ import annotations

import contextlib
import errno
import logging
import os
import shutil
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .errors import PreconditionFailed

log = logging.getLogger(__name__)

# Mount targets whose contents belong to the host, never counted or copied.
PSEUDO_FS_DIRS = ("proc", "sys", "dev")


@dataclass(frozen=True)
class ChrootEnvironment:
    """An isolated filesystem root on this host.

    Passed explicitly to every component; there is no process-wide default.
    """
    root: Path
    host: str = field(default_factory=socket.gethostname)

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root))

    @property
    def exists(self) -> bool:
        return self.root.is_dir()

    @property
    def initialized(self) -> bool:
        """True once the credential tables have been written."""
        return (self.root / "etc" / "passwd").is_file()

    @property
    def lock_path(self) -> Path:
        return self.root.parent / f".{self.root.name}.lock"

    def path(self, inside: str | Path) -> Path:
        """Map an absolute in-sandbox path to the host path under root."""
        rel = str(inside).lstrip("/")
        return self.root / rel if rel else self.root

    def size_bytes(self) -> int:
        """Disk usage of the root, skipping pseudo-filesystem targets."""
        if not self.exists:
            return 0
        skip = {self.root / name for name in PSEUDO_FS_DIRS}
        total = 0
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            dirnames[:] = [d for d in dirnames if current / d not in skip]
            for name in filenames:
                try:
                    total += (current / name).lstat().st_size
                except OSError:
                    continue
        return total

    def require_exists(self) -> None:
        if not self.exists:
            raise PreconditionFailed(
                f"chroot environment not found at {self.root}; run 'sealroot install' first",
                reason="environment_missing",
            )


def require_root() -> None:
    """Abort unless running with effective uid 0."""
    if os.geteuid() != 0:
        raise PreconditionFailed(
            "this command must be run as root (use sudo)",
            reason="not_root",
        )


def require_disk_space(env: ChrootEnvironment, min_free_kb: int) -> None:
    """Abort when the filesystem that will hold the root is too small."""
    probe = env.root
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    free_kb = shutil.disk_usage(probe).free // 1024
    if free_kb < min_free_kb:
        raise PreconditionFailed(
            f"insufficient disk space at {probe}: need {min_free_kb // 1024}MB, "
            f"have {free_kb // 1024}MB",
            reason="disk_space",
        )


@contextlib.contextmanager
def environment_lock(env: ChrootEnvironment) -> Iterator[None]:
    """Serialize mutating operations on one environment root.

    Takes a non-blocking exclusive flock on a file next to the root; a
    second concurrent invocation fails fast instead of interleaving writes.
    """
    import fcntl

    env.lock_path.parent.mkdir(parents=True, exist_ok=True)
    fp = open(env.lock_path, "a+")
    try:
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno in (errno.EAGAIN, errno.EACCES):
                raise PreconditionFailed(
                    f"another sealroot operation is running on {env.root}",
                    reason="locked",
                )
            raise
        fp.seek(0)
        fp.truncate()
        fp.write(f"{os.getpid()}\n")
        fp.flush()
        yield
    finally:
        fp.close()
