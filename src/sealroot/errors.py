"""Error taxonomy for sealroot.

Fatal conditions are raised. Best-effort failures (mounts, device nodes) are
returned inside reports as instances of the same classes so callers can log
or display them without unwinding.
"""
from __future__ import annotations


class SealrootError(RuntimeError):
    """Base class for every sealroot error."""

    reason = "error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class PreconditionFailed(SealrootError):
    """Not root, environment absent, disk too small, unconfirmed action."""

    reason = "precondition_failed"


class DuplicateAccount(SealrootError):
    reason = "duplicate_account"


class AccountNotFound(SealrootError):
    reason = "account_not_found"


class InvalidAccount(SealrootError):
    """Username or password cannot be stored in the account tables."""

    reason = "invalid_account"


class RegistryCorrupt(SealrootError):
    """The passwd/group/shadow tables are malformed or out of sync."""

    reason = "registry_corrupt"


class MountFailed(SealrootError):
    reason = "mount_failed"

    def __init__(self, target: str, message: str):
        super().__init__(f"{target}: {message}")
        self.target = target


class IsolationMethodUnavailable(SealrootError):
    """A method's required host capability is missing."""

    reason = "method_unavailable"

    def __init__(self, method: str, missing: list[str]):
        super().__init__(f"{method} requires {', '.join(missing)}")
        self.method = method
        self.missing = missing


class DeviceNodeCreateFailed(SealrootError):
    reason = "device_node_failed"

    def __init__(self, node: str, message: str):
        super().__init__(f"{node}: {message}")
        self.node = node


class SessionLaunchFailed(SealrootError):
    """Even the unrestricted fallback shell could not be started."""

    reason = "session_launch_failed"


__all__ = [
    "SealrootError",
    "PreconditionFailed",
    "DuplicateAccount",
    "AccountNotFound",
    "InvalidAccount",
    "RegistryCorrupt",
    "MountFailed",
    "IsolationMethodUnavailable",
    "DeviceNodeCreateFailed",
    "SessionLaunchFailed",
]
