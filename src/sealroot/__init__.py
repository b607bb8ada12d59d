"""sealroot - provision chroot sandboxes and open isolated shells inside them."""
from __future__ import annotations

__version__ = "0.1.0"

from .environment import ChrootEnvironment
from .errors import (
    AccountNotFound,
    DuplicateAccount,
    PreconditionFailed,
    RegistryCorrupt,
    SealrootError,
)
from .registry import UserRecord, UserRegistry

__all__ = [
    "__version__",
    "ChrootEnvironment",
    "UserRegistry",
    "UserRecord",
    "SealrootError",
    "PreconditionFailed",
    "DuplicateAccount",
    "AccountNotFound",
    "RegistryCorrupt",
]
