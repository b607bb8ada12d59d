"""
Sealroot sandbox sessions - interactive shells inside a chroot root.

When you run `sealroot enter USER`, the shell runs under the strongest
method this host supports:
- full_namespace - pid, mount, uts and ipc namespaces plus privilege drop
- pid_namespace - pid namespace plus privilege drop
- filtered_chroot - chroot plus privilege drop, `ps` output filtered
- unrestricted - chroot as root (last resort, announced loudly)
"""
from .detect import IsolationMethodKind, HostCapabilities, probe_capabilities, get_host_info
from .engine import SessionEntryEngine, SessionResult, AttemptRecord
from .methods import get_method, default_methods, list_methods

__all__ = [
    "IsolationMethodKind",
    "HostCapabilities",
    "probe_capabilities",
    "get_host_info",
    "SessionEntryEngine",
    "SessionResult",
    "AttemptRecord",
    "get_method",
    "default_methods",
    "list_methods",
]
