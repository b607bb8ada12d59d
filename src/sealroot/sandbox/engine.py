"""Session entry engine - opens an interactive shell inside the sandbox.

Walks the isolation methods strongest first. A method whose host tools are
missing is recorded as unavailable and never launched. An available method
is probed with a non-interactive launch of the same command; the first one
whose probe succeeds hosts the interactive session, and the shell's exit
code (zero or not) is the session's result. When every method failed the
unrestricted root shell is the last resort, announced with a banner and a
RuntimeWarning.

The pseudo-filesystems are mounted once before the first attempt and
released exactly once after the last, whatever happened in between.
"""
from __future__ import annotations

import contextlib
import logging
import signal
import subprocess
import threading
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from ..environment import ChrootEnvironment
from ..errors import IsolationMethodUnavailable, PreconditionFailed, SessionLaunchFailed
from ..hostcmd import CommandRunner, run_command
from ..mounts import MountManager, MountReport
from ..registry import UserRegistry
from .detect import HostCapabilities, IsolationMethodKind, probe_capabilities
from .methods import BaseIsolationMethod, LaunchSpec, default_methods

log = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 5
PROBE_TIMEOUT_SECONDS = 30

UNRESTRICTED_BANNER = """\
============================================================
 WARNING: no isolation method worked on this host.
 Falling back to an unrestricted root shell inside the chroot.
 No privilege drop happened: you are root in this shell.
============================================================"""


@dataclass
class AttemptRecord:
    method: IsolationMethodKind
    status: str                 # unavailable | failed | completed
    detail: str = ""


@dataclass
class SessionResult:
    """Outcome of one ``enter``."""
    username: str
    method: IsolationMethodKind | None = None
    exit_code: int = 0
    attempts: list[AttemptRecord] = field(default_factory=list)
    timed_out: bool = False
    mounts: MountReport | None = None
    unmounts: MountReport | None = None
    isolation: dict[str, bool] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.method == IsolationMethodKind.UNRESTRICTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "method": self.method.value if self.method else None,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "attempts": [
                {"method": a.method.value, "status": a.status, "detail": a.detail}
                for a in self.attempts
            ],
            "isolation": dict(self.isolation),
        }


@dataclass
class InteractiveOutcome:
    returncode: int
    timed_out: bool = False


InteractiveRunner = Callable[..., InteractiveOutcome]


def run_interactive(
    argv: list[str],
    *,
    env: dict[str, str],
    timeout: float | None = None,
) -> InteractiveOutcome:
    """Run a command on the caller's terminal and wait for it.

    SIGINT in this process is swallowed while the child runs, so Ctrl-C only
    reaches the shell. On timeout the child is terminated, then killed.
    """
    if isinstance(argv, (str, bytes)):
        raise TypeError("argv must be a list of args, not a shell string")

    with _ignore_sigint():
        try:
            proc = subprocess.Popen(list(argv), env=env, shell=False)
        except OSError as e:
            log.error("could not start %s: [%s] %s", argv[0], e.errno, e.strerror)
            return InteractiveOutcome(127 if e.errno == 2 else 126)
        try:
            return InteractiveOutcome(proc.wait(timeout=timeout))
        except subprocess.TimeoutExpired:
            log.warning("session exceeded %ss, terminating", timeout)
            _stop(proc)
            return InteractiveOutcome(TIMEOUT_EXIT_CODE, timed_out=True)
        except BaseException:
            _stop(proc)
            raise


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


@contextlib.contextmanager
def _ignore_sigint() -> Iterator[None]:
    if not _in_main_thread():
        yield
        return
    # a no-op handler instead of SIG_IGN, which the child would inherit
    previous = signal.signal(signal.SIGINT, lambda signum, frame: None)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@contextlib.contextmanager
def _sigterm_as_exit() -> Iterator[None]:
    """Turn SIGTERM into SystemExit so ``finally`` blocks still run."""
    if not _in_main_thread():
        yield
        return

    def handler(signum, frame):
        raise SystemExit(128 + signum)

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class SessionEntryEngine:
    """
    Open an interactive session for a sandbox account.

    Example:
        engine = SessionEntryEngine(ChrootEnvironment(Path("/opt/secure_chroot")))
        result = engine.enter("alice")
        print(result.method, result.exit_code)
    """

    def __init__(
        self,
        env: ChrootEnvironment,
        *,
        registry: UserRegistry | None = None,
        mounts: MountManager | None = None,
        methods: list[BaseIsolationMethod] | None = None,
        capabilities: HostCapabilities | Callable[[], HostCapabilities] = probe_capabilities,
        probe_runner: CommandRunner = run_command,
        interactive_runner: InteractiveRunner = run_interactive,
        session_timeout: float | None = None,
        term: str | None = None,
    ):
        self.env = env
        self.registry = registry or UserRegistry(env)
        self.mounts = mounts or MountManager(env)
        self.methods = methods if methods is not None else default_methods()
        self._capabilities = capabilities
        self._probe = probe_runner
        self._interactive = interactive_runner
        self.session_timeout = session_timeout
        self.term = term

    def capabilities(self) -> HostCapabilities:
        caps = self._capabilities
        return caps if isinstance(caps, HostCapabilities) else caps()

    def enter(self, username: str) -> SessionResult:
        """Run one interactive session; returns once the shell has exited.

        Raises PreconditionFailed or AccountNotFound before anything is
        mounted, and SessionLaunchFailed (after unmounting) when not even
        the fallback shell could start.
        """
        self.env.require_exists()
        caps = self.capabilities()
        if not caps.has("chroot"):
            raise PreconditionFailed(
                "the chroot tool is not installed on this host",
                reason="chroot_missing",
            )
        user = self.registry.get_account(username)
        launch = LaunchSpec.for_user(self.env, user, self.term)

        result = SessionResult(username=username)
        with _sigterm_as_exit():
            try:
                result.mounts = self.mounts.mount_all()
                self._attempt_methods(launch, caps, result)
            finally:
                result.unmounts = self.mounts.unmount_all()
        log.info(
            "session for %s ended via %s with exit code %d",
            username, result.method.value if result.method else "none", result.exit_code,
        )
        return result

    def _attempt_methods(
        self,
        launch: LaunchSpec,
        caps: HostCapabilities,
        result: SessionResult,
    ) -> None:
        for method in self.methods:
            try:
                method.check_available(caps)
            except IsolationMethodUnavailable as exc:
                log.info("%s unavailable: missing %s", method.name, ", ".join(exc.missing))
                result.attempts.append(AttemptRecord(method.kind, "unavailable", str(exc)))
                continue

            with method.scope(self.env):
                shell_env = method.session_env(launch)
                probe = self._probe(
                    method.build_command(launch, caps, probe=True),
                    timeout=PROBE_TIMEOUT_SECONDS,
                    env=shell_env,
                )
                if not probe.ok:
                    detail = probe.stderr.strip() or f"probe exited {probe.returncode}"
                    log.info("%s failed its probe launch: %s", method.name, detail)
                    result.attempts.append(AttemptRecord(method.kind, "failed", detail))
                    continue

                if not method.drops_privileges:
                    self._announce_unrestricted()
                log.info("starting session for %s via %s", result.username, method.name)
                outcome = self._interactive(
                    method.build_command(launch, caps),
                    env=shell_env,
                    timeout=self.session_timeout,
                )

            result.method = method.kind
            result.exit_code = outcome.returncode
            result.timed_out = outcome.timed_out
            result.isolation = dict(method.isolation)
            result.attempts.append(
                AttemptRecord(method.kind, "completed", f"exit code {outcome.returncode}")
            )
            return

        raise SessionLaunchFailed("no isolation method could start a shell, not even the fallback")

    @staticmethod
    def _announce_unrestricted() -> None:
        for line in UNRESTRICTED_BANNER.splitlines():
            log.warning(line)
        warnings.warn(
            "No isolation method available. Running an unrestricted root shell "
            "inside the chroot; no privilege drop happened.",
            RuntimeWarning,
        )
