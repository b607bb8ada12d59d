"""Host command execution.

Every external tool (mount, ldd, chroot, systemctl, ...) goes through
``run_command`` so argv discipline and error classification live in one
place, and tests can swap in a fake runner.
"""
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable

log = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a host command."""
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[..., CommandResult]


def run_command(
    argv: list[str],
    *,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a host command and capture its output.

    Never raises for process-level failures: a missing executable maps to
    127, a non-executable one to 126 and a timeout to 124, following the
    usual shell conventions.
    """
    if isinstance(argv, (str, bytes)):
        raise TypeError("argv must be a list of args, not a shell string")

    start = time.time()
    try:
        result = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            shell=False,
            check=False,
        )
        returncode = result.returncode
        stdout = result.stdout
        stderr = result.stderr
    except subprocess.TimeoutExpired as e:
        returncode = 124
        stdout = _text(e.stdout)
        stderr = f"{_text(e.stderr)}\ncommand timed out after {timeout}s".strip()
    except OSError as e:
        returncode = 127 if e.errno == 2 else 126
        stdout = ""
        stderr = f"[{e.errno}] {e.strerror}: {e.filename or argv[0]}"

    duration = (time.time() - start) * 1000
    if returncode != 0:
        log.debug("%s exited %d: %s", argv[0], returncode, stderr.strip())
    return CommandResult(
        argv=list(argv),
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        duration_ms=round(duration, 2),
    )


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
