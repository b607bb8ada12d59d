"""Detect which host tools, and therefore which isolation methods, are available."""
from __future__ import annotations

import platform
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable


class IsolationMethodKind(Enum):
    """Isolation methods, strongest first."""
    FULL_NAMESPACE = "full_namespace"    # pid+mount+uts+ipc namespaces, privilege drop
    PID_NAMESPACE = "pid_namespace"      # pid namespace, privilege drop
    FILTERED_CHROOT = "filtered_chroot"  # chroot, privilege drop, cosmetic ps filter
    UNRESTRICTED = "unrestricted"        # chroot as root (fallback)


# debootstrap is reported only; nothing depends on it.
HOST_TOOLS = ("debootstrap", "ldd", "chroot", "unshare", "setpriv", "mount", "umount", "systemctl")

METHOD_REQUIREMENTS: dict[IsolationMethodKind, tuple[str, ...]] = {
    IsolationMethodKind.FULL_NAMESPACE: ("unshare", "chroot", "setpriv"),
    IsolationMethodKind.PID_NAMESPACE: ("unshare", "chroot", "setpriv"),
    IsolationMethodKind.FILTERED_CHROOT: ("chroot", "setpriv"),
    IsolationMethodKind.UNRESTRICTED: ("chroot",),
}


@dataclass(frozen=True)
class HostCapabilities:
    """Resolved host tool paths; None where a tool is missing."""
    tools: dict[str, str | None] = field(default_factory=dict)

    def has(self, *names: str) -> bool:
        return all(self.tools.get(n) for n in names)

    def missing(self, names: tuple[str, ...] | list[str]) -> list[str]:
        return [n for n in names if not self.tools.get(n)]

    def path(self, name: str) -> str:
        """Absolute path of a tool, or its bare name when unresolved."""
        return self.tools.get(name) or name


def probe_capabilities(
    tools: tuple[str, ...] = HOST_TOOLS,
    which: Callable[[str], str | None] = shutil.which,
) -> HostCapabilities:
    # sbin holds chroot on most distributions but is often missing from PATH
    search = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
    resolved = {}
    for name in tools:
        found = which(name)
        if found is None and which is shutil.which:
            found = shutil.which(name, path=search)
        resolved[name] = found
    return HostCapabilities(resolved)


def detect_isolation_method(caps: HostCapabilities | None = None) -> IsolationMethodKind:
    """
    Strongest method whose host tools are all present.

    Priority order:
    1. full namespace isolation
    2. pid namespace only
    3. chroot with privilege drop and ps filter
    4. unrestricted chroot shell
    """
    caps = caps or probe_capabilities()
    for kind, needs in METHOD_REQUIREMENTS.items():
        if caps.has(*needs):
            return kind
    return IsolationMethodKind.UNRESTRICTED


def is_namespace_isolation_available(caps: HostCapabilities | None = None) -> bool:
    return detect_isolation_method(caps) in (
        IsolationMethodKind.FULL_NAMESPACE,
        IsolationMethodKind.PID_NAMESPACE,
    )


def get_host_info(caps: HostCapabilities | None = None) -> dict:
    """Get information about host tools and the isolation they allow."""
    caps = caps or probe_capabilities()
    return {
        "system": platform.system(),
        "tools": dict(caps.tools),
        "methods": {
            kind.value: {"available": caps.has(*needs), "missing": caps.missing(needs)}
            for kind, needs in METHOD_REQUIREMENTS.items()
        },
        "detected_method": detect_isolation_method(caps).value,
        "namespace_isolation": is_namespace_isolation_available(caps),
        "session_possible": caps.has("chroot"),
    }
