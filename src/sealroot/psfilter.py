"""Cosmetic process-visibility filtering inside a sandbox root.

Replaces the sandbox's ``ps`` with a script that only lists the invoking
account's processes. This hides output; it does not isolate anything. Real
isolation comes from the namespace methods in ``sealroot.sandbox.methods``.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

from .environment import ChrootEnvironment
from .registry import UserRegistry

log = logging.getLogger(__name__)

PS_MARKER = "# sealroot process filter"
TOP_MARKER = "# sealroot top filter"
BACKUP_SUFFIX = ".original"
PS_LOCATIONS = ("/bin/ps", "/usr/bin/ps")
TOP_LOCATION = "/usr/bin/top"
HELPER_LOCATIONS = ("/bin/processes", "/bin/sysinfo")

BANNER_BEGIN = "# >>> sealroot isolation notice >>>"
BANNER_END = "# <<< sealroot isolation notice <<<"

PS_FILTER_SCRIPT = """\
#!/bin/bash
# sealroot process filter
# Cosmetic only: hides other accounts' rows, it is not process isolation.
REAL_PS="@REAL_PS@"
CURRENT_USER=$(id -un 2>/dev/null || echo "$USER")

placeholder() {
    echo "    PID TTY          TIME CMD"
    printf "%7s ?        00:00:00 %s\\n" "$PPID" "${SHELL##*/}"
}

if [ ! -x "$REAL_PS" ]; then
    placeholder
    exit 0
fi

all=0
explicit=0
args=()
for a in "$@"; do
    case "$a" in
        -e|-A|ax|-ax) all=1 ;;
        -ef|-eF|-Af) all=1; args+=("-f") ;;
        aux|axu|-aux|uax) all=1; args+=("u") ;;
        -u|-U|--user|-u*|-U*|--user=*) explicit=1; args+=("$a") ;;
        *) args+=("$a") ;;
    esac
done

# only a bare ps or an all-processes listing is narrowed
if [ "$#" -gt 0 ] && { [ "$all" -eq 0 ] || [ "$explicit" -eq 1 ]; }; then
    exec "$REAL_PS" "$@"
fi

out=$("$REAL_PS" -u "$CURRENT_USER" "${args[@]}" 2>/dev/null)
if [ -z "$out" ] || [ "$(printf '%s\\n' "$out" | wc -l)" -lt 2 ]; then
    placeholder
else
    printf '%s\\n' "$out"
fi
"""

TOP_FILTER_SCRIPT = """\
#!/bin/bash
# sealroot top filter
# Cosmetic only: limits the view to the invoking account.
CURRENT_USER=$(id -un 2>/dev/null || echo "$USER")
if [ -x "@REAL_TOP@" ]; then
    exec "@REAL_TOP@" -u "$CURRENT_USER" "$@"
fi
echo "top is not available in this environment"
echo "Use 'ps aux' to see your processes"
"""

PROCESSES_SCRIPT = """\
#!/bin/bash
# sealroot helper: list the invoking account's processes (cosmetic view)
CURRENT_USER=$(id -un 2>/dev/null || echo "$USER")
echo "=== Processes for user: $CURRENT_USER (UID: $(id -u)) ==="
echo
ps aux
"""

SYSINFO_SCRIPT = """\
#!/bin/bash
# sealroot helper: describe the session as seen from inside the root
echo "=== Chroot Environment Information ==="
echo "User: $(id -un 2>/dev/null || echo "$USER")"
echo "UID: $(id -u)"
echo "GID: $(id -g)"
echo "Home: $HOME"
echo "Shell: $SHELL"
echo "Working Directory: $(pwd)"
echo
echo "=== Process Information ==="
echo "Current PID: $$"
echo "Parent PID: $PPID"
echo
echo "=== Available Commands ==="
echo "ps        - Show your processes only"
echo "processes - Detailed process information"
echo "sysinfo   - This information"
echo
echo "=== File System ==="
df -h "$HOME" 2>/dev/null || echo "Unable to check disk space"
"""

BANNER_BLOCK = f"""\
{BANNER_BEGIN}
echo "=== Process view filtered ==="
echo "ps and top only list your own processes (display filter, not isolation)"
echo "Use 'processes' for details and 'sysinfo' for environment information"
{BANNER_END}
"""


def _render(template: str, **values: str) -> str:
    for key, value in values.items():
        template = template.replace(f"@{key}@", value)
    return template


def _write_script(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.is_symlink():
        path.unlink()
    path.write_text(text)
    os.chmod(path, 0o755)


def _has_marker(path: Path, marker: str) -> bool:
    if path.is_symlink() or not path.is_file():
        return False
    try:
        with open(path, "rb") as f:
            head = f.read(4096)
    except OSError:
        return False
    return marker.encode() in head


class ProcessVisibilityFilter:
    """Installs and removes the ``ps`` filter of one environment."""

    def __init__(self, env: ChrootEnvironment):
        self.env = env

    def _target(self) -> str:
        for inside in PS_LOCATIONS:
            host = self.env.path(inside)
            if os.path.lexists(host) or os.path.lexists(str(host) + BACKUP_SUFFIX):
                return inside
        return PS_LOCATIONS[0]

    def is_installed(self) -> bool:
        return any(_has_marker(self.env.path(p), PS_MARKER) for p in PS_LOCATIONS)

    def install(self) -> bool:
        """Swap the filter in; returns False when it was already in place."""
        if self.is_installed():
            return False
        inside = self._target()
        target = self.env.path(inside)
        backup = Path(str(target) + BACKUP_SUFFIX)
        if os.path.lexists(target):
            os.replace(target, backup)
        _write_script(target, _render(PS_FILTER_SCRIPT, REAL_PS=inside + BACKUP_SUFFIX))
        log.info("process filter installed at %s", inside)
        return True

    def remove(self) -> bool:
        """Restore the original ``ps``; returns False if nothing was installed."""
        changed = False
        for inside in PS_LOCATIONS:
            target = self.env.path(inside)
            backup = Path(str(target) + BACKUP_SUFFIX)
            if os.path.lexists(backup):
                os.replace(backup, target)
                changed = True
            elif _has_marker(target, PS_MARKER):
                target.unlink()
                changed = True
        if changed:
            log.info("original ps restored in %s", self.env.root)
        return changed


class IsolationEnhancer:
    """The enhance-isolation bundle: ps and top filters, helpers, banner."""

    def __init__(
        self,
        env: ChrootEnvironment,
        registry: UserRegistry,
        chown: Callable[[str | Path, int, int], None] = os.chown,
    ):
        self.env = env
        self.registry = registry
        self.ps_filter = ProcessVisibilityFilter(env)
        self._chown = chown

    def enhance(self) -> list[str]:
        changed = []
        if self.ps_filter.install():
            changed.append(self.ps_filter._target())
        if self._install_top():
            changed.append(TOP_LOCATION)
        for inside, text in zip(HELPER_LOCATIONS, (PROCESSES_SCRIPT, SYSINFO_SCRIPT)):
            _write_script(self.env.path(inside), text)
            changed.append(inside)
        for user in self.registry.list_users():
            rc = user.host_home(self.env) / ".bashrc"
            if not rc.is_file():
                continue
            text = rc.read_text()
            if BANNER_BEGIN in text:
                continue
            if text and not text.endswith("\n"):
                text += "\n"
            rc.write_text(text + "\n" + BANNER_BLOCK)
            self._chown(rc, user.uid, user.gid)
            changed.append(f"{user.home}/.bashrc")
        log.info("isolation enhancements applied (%d change(s))", len(changed))
        return changed

    def unenhance(self) -> list[str]:
        changed = []
        if self.ps_filter.remove():
            changed.append("ps")
        top = self.env.path(TOP_LOCATION)
        top_backup = Path(str(top) + BACKUP_SUFFIX)
        if os.path.lexists(top_backup):
            os.replace(top_backup, top)
            changed.append(TOP_LOCATION)
        for inside in HELPER_LOCATIONS:
            path = self.env.path(inside)
            if os.path.lexists(path):
                path.unlink()
                changed.append(inside)
        for user in self.registry.list_users():
            rc = user.host_home(self.env) / ".bashrc"
            if rc.is_file() and _strip_banner(rc):
                changed.append(f"{user.home}/.bashrc")
        log.info("isolation enhancements removed (%d change(s))", len(changed))
        return changed

    def _install_top(self) -> bool:
        top = self.env.path(TOP_LOCATION)
        if not os.path.lexists(top) or _has_marker(top, TOP_MARKER):
            return False
        os.replace(top, str(top) + BACKUP_SUFFIX)
        _write_script(top, _render(TOP_FILTER_SCRIPT, REAL_TOP=TOP_LOCATION + BACKUP_SUFFIX))
        return True


def _strip_banner(rc: Path) -> bool:
    lines = rc.read_text().splitlines(keepends=True)
    if not any(line.rstrip("\n") == BANNER_BEGIN for line in lines):
        return False
    kept, skipping = [], False
    for line in lines:
        stripped = line.rstrip("\n")
        if stripped == BANNER_BEGIN:
            skipping = True
            # drop the blank separator written before the block
            if kept and kept[-1] == "\n":
                kept.pop()
            continue
        if stripped == BANNER_END:
            skipping = False
            continue
        if not skipping:
            kept.append(line)
    rc.write_text("".join(kept))
    return True
