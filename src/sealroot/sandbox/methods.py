"""Isolation methods - how a shell is launched inside the sandbox root.

Each method is a stateless strategy that knows the host tools it needs and
composes the launch argv directly; nothing is written into the root to
start a session. The engine tries them in ``DEFAULT_ORDER`` and keeps the
first whose probe launch succeeds.

Usage:
    from sealroot.sandbox.methods import get_method, LaunchSpec
    from sealroot.sandbox.detect import IsolationMethodKind, probe_capabilities

    method = get_method(IsolationMethodKind.PID_NAMESPACE)
    caps = probe_capabilities()
    method.check_available(caps)
    argv = method.build_command(LaunchSpec.for_user(env, record), caps)
"""
from __future__ import annotations

import contextlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from ..environment import ChrootEnvironment
from ..errors import IsolationMethodUnavailable
from ..psfilter import ProcessVisibilityFilter
from ..registry import UserRecord
from .detect import METHOD_REQUIREMENTS, HostCapabilities, IsolationMethodKind

SESSION_PATH = "/usr/local/bin:/usr/bin:/bin"
FALLBACK_SHELL = "/bin/bash"
ROOT_HOME = "/root"

# Runs as the account after the privilege drop: $1 is the working directory,
# the rest is the command. An unreachable home falls back to /.
LOGIN_SCRIPT = 'cd "$1" 2>/dev/null || cd /; shift; exec "$@"'
PROBE_ARGS = ["-c", "exit 0"]


@dataclass(frozen=True)
class LaunchSpec:
    """Everything a method needs to start a shell for one account."""
    root: Path
    uid: int
    gid: int
    shell: str
    workdir: str
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_user(
        cls,
        env: ChrootEnvironment,
        user: UserRecord,
        term: str | None = None,
    ) -> "LaunchSpec":
        workdir = user.home if env.path(user.home).is_dir() else "/"
        return cls(
            root=env.root,
            uid=user.uid,
            gid=user.gid,
            shell=user.shell or FALLBACK_SHELL,
            workdir=workdir,
            env=session_environment(user, term),
        )

    def login_args(self, shell_args: list[str]) -> list[str]:
        """Start the shell in ``workdir``, or in / when that cannot be entered."""
        return [
            self.shell, "-c", LOGIN_SCRIPT, "sealroot-login", self.workdir,
            self.shell, *shell_args,
        ]


def session_environment(user: UserRecord, term: str | None = None) -> dict[str, str]:
    """The complete environment handed to a sandbox shell."""
    return {
        "PATH": SESSION_PATH,
        "HOME": user.home,
        "USER": user.username,
        "LOGNAME": user.username,
        "SHELL": user.shell or FALLBACK_SHELL,
        "TERM": term or os.environ.get("TERM") or "xterm",
    }


class BaseIsolationMethod(ABC):
    """Base class for isolation methods with common functionality."""

    drops_privileges = True

    # What this method actually guarantees, reported with the session result.
    isolation: dict[str, bool] = {}

    @property
    @abstractmethod
    def kind(self) -> IsolationMethodKind:
        """Return the method identifier."""
        pass

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def required_tools(self) -> tuple[str, ...]:
        return METHOD_REQUIREMENTS[self.kind]

    def is_available(self, caps: HostCapabilities) -> bool:
        return caps.has(*self.required_tools)

    def check_available(self, caps: HostCapabilities) -> None:
        missing = caps.missing(self.required_tools)
        if missing:
            raise IsolationMethodUnavailable(self.name, missing)

    def get_info(self, caps: HostCapabilities) -> dict[str, Any]:
        return {
            "method": self.name,
            "available": self.is_available(caps),
            "missing": caps.missing(self.required_tools),
            "isolation": dict(self.isolation),
        }

    def build_command(self, launch: LaunchSpec, caps: HostCapabilities, probe: bool = False) -> list[str]:
        """Full launch argv; ``probe`` swaps the login shell for ``-c 'exit 0'``."""
        return self._build_command(launch, caps, PROBE_ARGS if probe else ["-l"])

    @abstractmethod
    def _build_command(
        self,
        launch: LaunchSpec,
        caps: HostCapabilities,
        shell_args: list[str],
    ) -> list[str]:
        """Build the full command for this method."""
        pass

    @contextlib.contextmanager
    def scope(self, env: ChrootEnvironment) -> Iterator[None]:
        """Resources held for the duration of one attempt."""
        yield

    def session_env(self, launch: LaunchSpec) -> dict[str, str]:
        """Environment the launched shell runs with."""
        return dict(launch.env)

    @staticmethod
    def _as_user(launch: LaunchSpec, shell_args: list[str]) -> list[str]:
        """In-root part of the argv: drop to the account, then log in."""
        return [
            "setpriv",
            f"--reuid={launch.uid}",
            f"--regid={launch.gid}",
            "--clear-groups",
            *launch.login_args(shell_args),
        ]


class FullNamespaceMethod(BaseIsolationMethod):
    """Fresh pid, mount, uts and ipc namespaces with a private /proc."""

    isolation = {
        "pid_namespace": True,
        "mount_namespace": True,
        "uts_namespace": True,
        "ipc_namespace": True,
        "privilege_drop": True,
        "ps_filter": False,
    }

    @property
    def kind(self) -> IsolationMethodKind:
        return IsolationMethodKind.FULL_NAMESPACE

    def _build_command(self, launch, caps, shell_args):
        return [
            caps.path("unshare"),
            "--pid", "--mount", "--uts", "--ipc", "--fork",
            f"--mount-proc={launch.root}/proc",
            caps.path("chroot"), str(launch.root),
            *self._as_user(launch, shell_args),
        ]


class PidNamespaceMethod(BaseIsolationMethod):
    """Fresh pid namespace only."""

    isolation = {
        "pid_namespace": True,
        "mount_namespace": False,
        "uts_namespace": False,
        "ipc_namespace": False,
        "privilege_drop": True,
        "ps_filter": False,
    }

    @property
    def kind(self) -> IsolationMethodKind:
        return IsolationMethodKind.PID_NAMESPACE

    def _build_command(self, launch, caps, shell_args):
        return [
            caps.path("unshare"),
            "--pid", "--fork",
            f"--mount-proc={launch.root}/proc",
            caps.path("chroot"), str(launch.root),
            *self._as_user(launch, shell_args),
        ]


class FilteredChrootMethod(BaseIsolationMethod):
    """Plain chroot with privilege drop; ``ps`` is filtered while it runs."""

    isolation = {
        "pid_namespace": False,
        "mount_namespace": False,
        "uts_namespace": False,
        "ipc_namespace": False,
        "privilege_drop": True,
        "ps_filter": True,
    }

    @property
    def kind(self) -> IsolationMethodKind:
        return IsolationMethodKind.FILTERED_CHROOT

    def _build_command(self, launch, caps, shell_args):
        return [caps.path("chroot"), str(launch.root), *self._as_user(launch, shell_args)]

    @contextlib.contextmanager
    def scope(self, env: ChrootEnvironment) -> Iterator[None]:
        ps_filter = ProcessVisibilityFilter(env)
        installed = ps_filter.install()
        try:
            yield
        finally:
            # leave a filter installed by enhance-isolation in place
            if installed:
                ps_filter.remove()


class UnrestrictedMethod(BaseIsolationMethod):
    """Root shell inside the chroot; no privilege drop, no namespaces."""

    drops_privileges = False
    isolation = {
        "pid_namespace": False,
        "mount_namespace": False,
        "uts_namespace": False,
        "ipc_namespace": False,
        "privilege_drop": False,
        "ps_filter": False,
    }

    @property
    def kind(self) -> IsolationMethodKind:
        return IsolationMethodKind.UNRESTRICTED

    def build_command(self, launch: LaunchSpec, caps: HostCapabilities, probe: bool = False) -> list[str]:
        return self._build_command(launch, caps, ["--norc", *PROBE_ARGS] if probe else ["--norc"])

    def session_env(self, launch: LaunchSpec) -> dict[str, str]:
        env = dict(launch.env)
        env.update(HOME=ROOT_HOME, USER="root", LOGNAME="root", SHELL=FALLBACK_SHELL)
        return env

    def _build_command(self, launch, caps, shell_args):
        return [caps.path("chroot"), str(launch.root), FALLBACK_SHELL, *shell_args]


_METHODS: dict[IsolationMethodKind, type[BaseIsolationMethod]] = {
    IsolationMethodKind.FULL_NAMESPACE: FullNamespaceMethod,
    IsolationMethodKind.PID_NAMESPACE: PidNamespaceMethod,
    IsolationMethodKind.FILTERED_CHROOT: FilteredChrootMethod,
    IsolationMethodKind.UNRESTRICTED: UnrestrictedMethod,
}

DEFAULT_ORDER = list(_METHODS)


def get_method(kind: IsolationMethodKind | str) -> BaseIsolationMethod:
    """Get an isolation method by kind or by its string value.

    Raises:
        ValueError: If the name is not a known method.
    """
    if isinstance(kind, str):
        try:
            kind = IsolationMethodKind(kind)
        except ValueError:
            raise ValueError(
                f"Unknown method: {kind}. Available: {[k.value for k in _METHODS]}"
            ) from None
    return _METHODS[kind]()


def default_methods() -> list[BaseIsolationMethod]:
    return [get_method(kind) for kind in DEFAULT_ORDER]


def list_methods(caps: HostCapabilities) -> dict[str, dict[str, Any]]:
    """List all methods and their availability on this host."""
    return {kind.value: get_method(kind).get_info(caps) for kind in DEFAULT_ORDER}
