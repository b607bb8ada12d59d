"""Private account database of a sandbox root.

The three flat tables (``etc/passwd``, ``etc/group``, ``etc/shadow``) are
loaded into records, changed in memory and written back as a unit: every
table is staged to a temp file in ``etc/`` and swapped in with
``os.replace`` only after all three were written and synced. Business logic
never touches the colon-delimited text directly.

Usage:
    from sealroot.environment import ChrootEnvironment
    from sealroot.registry import UserRegistry

    registry = UserRegistry(ChrootEnvironment(Path("/opt/secure_chroot")))
    record = registry.create_account("alice", "s3cret")
    print(record.uid)   # 1000
"""
from __future__ import annotations

import contextlib
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import bcrypt

from .environment import ChrootEnvironment
from .errors import AccountNotFound, DuplicateAccount, InvalidAccount, RegistryCorrupt

log = logging.getLogger(__name__)

MIN_UID = 1000
MAX_UID = 60000
PLACEHOLDER = "x"
LOCKED_HASH = "*"
DEFAULT_SHELL = "/bin/bash"
SHADOW_FIELDS = 9

# Portable login names; also keeps ':' and newlines out of the tables.
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

# bcrypt only looks at the first 72 bytes; refuse instead of truncating.
MAX_PASSWORD_BYTES = 72

TABLE_MODES = {"passwd": 0o644, "group": 0o644, "shadow": 0o600}

BASHRC_TEMPLATE = """\
# .bashrc for the sealroot chroot environment
export PS1='\\u@chroot:\\w\\$ '
export PATH=/usr/local/bin:/usr/bin:/bin
alias ls='ls --color=auto'
alias ll='ls -la'
alias la='ls -A'
alias l='ls -CF'
echo "Welcome to the secure chroot environment!"
echo "User: $USER (UID: $(id -u 2>/dev/null))"
echo "Home: $HOME"
echo "Type 'exit' to leave the chroot."
"""

PROFILE_TEMPLATE = """\
# .profile for the sealroot chroot environment
export PATH=/usr/local/bin:/usr/bin:/bin
if [ -n "$BASH_VERSION" ] && [ -f "$HOME/.bashrc" ]; then
    . "$HOME/.bashrc"
fi
"""


def _days_since_epoch() -> int:
    return int(time.time() // 86400)


@dataclass
class PasswdEntry:
    name: str
    password: str
    uid: int
    gid: int
    comment: str
    home: str
    shell: str

    @classmethod
    def parse(cls, line: str, lineno: int) -> "PasswdEntry":
        fields = line.split(":")
        if len(fields) != 7:
            raise RegistryCorrupt(f"passwd line {lineno}: expected 7 fields, got {len(fields)}")
        name, password, uid, gid, comment, home, shell = fields
        return cls(name, password, _parse_id(uid, "passwd", lineno), _parse_id(gid, "passwd", lineno),
                   comment, home, shell)

    def format(self) -> str:
        return ":".join([self.name, self.password, str(self.uid), str(self.gid),
                         self.comment, self.home, self.shell])


@dataclass
class GroupEntry:
    name: str
    password: str
    gid: int
    members: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, line: str, lineno: int) -> "GroupEntry":
        fields = line.split(":")
        if len(fields) != 4:
            raise RegistryCorrupt(f"group line {lineno}: expected 4 fields, got {len(fields)}")
        name, password, gid, members = fields
        return cls(name, password, _parse_id(gid, "group", lineno),
                   [m for m in members.split(",") if m])

    def format(self) -> str:
        return ":".join([self.name, self.password, str(self.gid), ",".join(self.members)])


@dataclass
class ShadowEntry:
    name: str
    hash: str
    aging: list[str] = field(default_factory=lambda: ["", "0", "99999", "7", "", "", ""])

    @classmethod
    def parse(cls, line: str, lineno: int) -> "ShadowEntry":
        fields = line.split(":")
        if len(fields) != SHADOW_FIELDS:
            raise RegistryCorrupt(
                f"shadow line {lineno}: expected {SHADOW_FIELDS} fields, got {len(fields)}"
            )
        return cls(fields[0], fields[1], fields[2:])

    @classmethod
    def new(cls, name: str, password_hash: str) -> "ShadowEntry":
        return cls(name, password_hash, [str(_days_since_epoch()), "0", "99999", "7", "", "", ""])

    def format(self) -> str:
        return ":".join([self.name, self.hash, *self.aging])


def _parse_id(value: str, table: str, lineno: int) -> int:
    # isdigit() alone also accepts digits like "¹" that int() rejects
    # str.isdigit also accepts non-ASCII digits such as "\u00b9"
    if not (value.isascii() and value.isdigit()):
        raise RegistryCorrupt(f"{table} line {lineno}: non-numeric id {value!r}")
    return int(value)


@dataclass
class AccountTables:
    """In-memory copy of the three credential tables."""
    passwd: list[PasswdEntry] = field(default_factory=list)
    group: list[GroupEntry] = field(default_factory=list)
    shadow: list[ShadowEntry] = field(default_factory=list)

    @classmethod
    def baseline(cls) -> "AccountTables":
        return cls(
            passwd=[PasswdEntry("root", PLACEHOLDER, 0, 0, "root", "/root", DEFAULT_SHELL)],
            group=[GroupEntry("root", PLACEHOLDER, 0)],
            shadow=[ShadowEntry.new("root", LOCKED_HASH)],
        )

    def lines(self) -> dict[str, list[str]]:
        return {
            "passwd": [e.format() for e in self.passwd],
            "group": [e.format() for e in self.group],
            "shadow": [e.format() for e in self.shadow],
        }


@dataclass
class UserRecord:
    """One account of the sandbox, joined across the three tables."""
    username: str
    uid: int
    gid: int
    home: str
    shell: str
    password_hash: str
    comment: str = ""

    def host_home(self, env: ChrootEnvironment) -> Path:
        return env.path(self.home)


@dataclass
class ExportedAccount:
    """Rows of one non-root account, as needed to re-add it after a reset."""
    passwd: PasswdEntry
    group: GroupEntry | None
    shadow: ShadowEntry


class UserRegistry:
    """Reads and writes the account tables of one environment."""

    def __init__(
        self,
        env: ChrootEnvironment,
        chown: Callable[[str | Path, int, int], None] = os.chown,
    ):
        self.env = env
        self._chown = chown

    @property
    def etc_dir(self) -> Path:
        return self.env.path("/etc")

    # -- load/save boundary -------------------------------------------------

    def load(self) -> AccountTables:
        """Parse all three tables, raising RegistryCorrupt on any bad row."""
        tables = AccountTables(
            passwd=self._read("passwd", PasswdEntry.parse),
            group=self._read("group", GroupEntry.parse),
            shadow=self._read("shadow", ShadowEntry.parse),
        )
        self._check_consistency(tables)
        return tables

    def _read(self, name: str, parse: Callable) -> list:
        path = self.etc_dir / name
        if not path.exists():
            raise RegistryCorrupt(f"{path} is missing", reason="table_missing")
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise RegistryCorrupt(f"{path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise RegistryCorrupt(f"cannot read {path}: {e}", reason="table_unreadable") from e
        entries = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            entries.append(parse(line, lineno))
        return entries

    def _read_lenient(self, name: str, parse: Callable) -> list:
        """Like ``_read`` but skips what cannot be parsed, for salvaging."""
        path = self.etc_dir / name
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning("cannot read %s, treating it as empty: %s", path, e)
            return []
        entries = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(parse(line, lineno))
            except RegistryCorrupt as e:
                log.warning("skipping unparseable row: %s", e)
        return entries

    @staticmethod
    def _check_consistency(tables: AccountTables) -> None:
        names = [e.name for e in tables.passwd]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise RegistryCorrupt(f"duplicate passwd entries: {', '.join(sorted(dupes))}")
        uids = [e.uid for e in tables.passwd]
        dup_uids = {u for u in uids if uids.count(u) > 1}
        if dup_uids:
            raise RegistryCorrupt(f"uid assigned twice: {', '.join(map(str, sorted(dup_uids)))}")

        shadow_names = [e.name for e in tables.shadow]
        if len(set(shadow_names)) != len(shadow_names):
            raise RegistryCorrupt("duplicate shadow entries")
        missing = set(names) - set(shadow_names)
        if missing:
            raise RegistryCorrupt(f"no shadow entry for: {', '.join(sorted(missing))}")
        orphaned = set(shadow_names) - set(names)
        if orphaned:
            raise RegistryCorrupt(f"shadow entry without account: {', '.join(sorted(orphaned))}")

    def save(self, tables: AccountTables) -> None:
        """Write all three tables, swapping them in only once all are staged."""
        self.etc_dir.mkdir(parents=True, exist_ok=True)
        staged: list[tuple[str, Path]] = []
        try:
            for name, lines in tables.lines().items():
                fd, tmp = tempfile.mkstemp(prefix=f".{name}.", dir=self.etc_dir)
                staged.append((tmp, self.etc_dir / name))
                with os.fdopen(fd, "w") as f:
                    f.write("".join(line + "\n" for line in lines))
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, TABLE_MODES[name])
            for tmp, dest in staged:
                os.replace(tmp, dest)
        except BaseException:
            for tmp, _ in staged:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp)
            raise
        _fsync_dir(self.etc_dir)

    # -- queries ------------------------------------------------------------

    def list_accounts(self) -> list[UserRecord]:
        tables = self.load()
        hashes = {e.name: e.hash for e in tables.shadow}
        return [
            UserRecord(
                username=e.name,
                uid=e.uid,
                gid=e.gid,
                home=e.home,
                shell=e.shell,
                password_hash=hashes[e.name],
                comment=e.comment,
            )
            for e in tables.passwd
        ]

    def list_users(self) -> list[UserRecord]:
        """Accounts other than the built-in root."""
        return [a for a in self.list_accounts() if a.uid != 0]

    def get_account(self, username: str) -> UserRecord:
        for record in self.list_accounts():
            if record.username == username:
                return record
        raise AccountNotFound(f"user '{username}' not found in chroot environment")

    def exists(self, username: str) -> bool:
        return any(a.username == username for a in self.list_accounts())

    # -- mutations ----------------------------------------------------------

    def create_account(
        self,
        username: str,
        password: str,
        shell: str = DEFAULT_SHELL,
        comment: str = "Chroot User",
    ) -> UserRecord:
        """Add an account to all three tables and create its home."""
        _validate_username(username)
        password_hash = hash_password(password)

        tables = self.load()
        if any(e.name == username for e in tables.passwd) or any(
            e.name == username for e in tables.group
        ):
            raise DuplicateAccount(f"user '{username}' already exists in chroot environment")

        uid = _next_free_id(tables)
        home = f"/home/{username}"
        tables.passwd.append(PasswdEntry(username, PLACEHOLDER, uid, uid, comment, home, shell))
        tables.group.append(GroupEntry(username, PLACEHOLDER, uid))
        tables.shadow.append(ShadowEntry.new(username, password_hash))
        self.save(tables)
        log.info("created user %s (uid %d)", username, uid)

        record = UserRecord(username, uid, uid, home, shell, password_hash, comment)
        self.provision_home(record)
        return record

    def set_password(self, username: str, password: str) -> None:
        password_hash = hash_password(password)
        tables = self.load()
        for entry in tables.shadow:
            if entry.name == username:
                entry.hash = password_hash
                entry.aging[0] = str(_days_since_epoch())
                break
        else:
            raise AccountNotFound(f"user '{username}' not found in chroot environment")
        self.save(tables)
        log.info("password updated for %s", username)

    def verify_password(self, username: str, password: str) -> bool:
        record = self.get_account(username)
        if not record.password_hash.startswith("$2"):
            return False
        return bcrypt.checkpw(password.encode(), record.password_hash.encode())

    def reset_to_baseline(self) -> None:
        """Overwrite the tables with only a locked root account.

        Callers that want to keep accounts must ``export_accounts`` first.
        """
        self.save(AccountTables.baseline())
        log.info("credential tables reset to baseline in %s", self.etc_dir)

    def export_accounts(self) -> list[ExportedAccount]:
        tables = self.load()
        shadow = {e.name: e for e in tables.shadow}
        exported = []
        for entry in tables.passwd:
            if entry.uid == 0:
                continue
            group = next(
                (g for g in tables.group if g.gid == entry.gid and g.gid != 0), None
            )
            exported.append(ExportedAccount(entry, group, shadow[entry.name]))
        return exported

    def salvage_accounts(self) -> list[ExportedAccount]:
        """Export what can be recovered from damaged tables.

        Unparseable rows, invalid names and repeated names or uids are
        dropped with a warning. An account whose shadow row is missing comes
        back locked; an operator can set a new password with ``passwd``.
        """
        passwd = self._read_lenient("passwd", PasswdEntry.parse)
        groups = self._read_lenient("group", GroupEntry.parse)
        shadow: dict[str, ShadowEntry] = {}
        for entry in self._read_lenient("shadow", ShadowEntry.parse):
            shadow.setdefault(entry.name, entry)

        salvaged = []
        names: set[str] = set()
        uids: set[int] = set()
        for entry in passwd:
            if entry.uid == 0:
                continue
            if not USERNAME_RE.fullmatch(entry.name) or entry.name in names or entry.uid in uids:
                log.warning("dropping account row %r", entry.format())
                continue
            names.add(entry.name)
            uids.add(entry.uid)
            secret = shadow.get(entry.name)
            if secret is None:
                log.warning("no shadow entry for %s; restoring it locked", entry.name)
                secret = ShadowEntry.new(entry.name, LOCKED_HASH)
            group = next((g for g in groups if g.gid == entry.gid and g.gid != 0), None)
            salvaged.append(ExportedAccount(entry, group, secret))
        return salvaged

    def import_accounts(self, accounts: list[ExportedAccount]) -> None:
        """Re-add exported accounts, keeping their ids, homes, shells and hashes."""
        tables = self.load()
        _merge_accounts(tables, accounts)
        self.save(tables)
        log.info("restored %d account(s)", len(accounts))

    def restore_accounts(self, accounts: list[ExportedAccount]) -> None:
        """Baseline tables plus ``accounts``, written with a single save."""
        tables = AccountTables.baseline()
        _merge_accounts(tables, accounts)
        self.save(tables)
        log.info("tables rebuilt with %d account(s)", len(accounts))

    # -- homes --------------------------------------------------------------

    def provision_home(self, record: UserRecord, overwrite: bool = False) -> Path:
        """Ensure the home directory and the shell profile files exist."""
        home = record.host_home(self.env)
        home.mkdir(parents=True, exist_ok=True)
        self._chown(home, record.uid, record.gid)
        os.chmod(home, 0o700)

        for name, content in ((".bashrc", BASHRC_TEMPLATE), (".profile", PROFILE_TEMPLATE)):
            path = home / name
            if path.exists() and not overwrite:
                continue
            path.write_text(content)
            self._chown(path, record.uid, record.gid)
        return home


def hash_password(password: str) -> str:
    """Salted one-way hash in crypt(3) format for the shadow table."""
    raw = password.encode()
    if not raw:
        raise InvalidAccount("password must not be empty")
    if len(raw) > MAX_PASSWORD_BYTES:
        raise InvalidAccount(f"password longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode()


def _merge_accounts(tables: AccountTables, accounts: list[ExportedAccount]) -> None:
    names = {e.name for e in tables.passwd}
    uids = {e.uid for e in tables.passwd}
    for account in accounts:
        if account.passwd.name in names:
            raise DuplicateAccount(f"user '{account.passwd.name}' already exists")
        if account.passwd.uid in uids:
            raise DuplicateAccount(
                f"uid {account.passwd.uid} of '{account.passwd.name}' is already taken"
            )
        names.add(account.passwd.name)
        uids.add(account.passwd.uid)

    group_gids = {g.gid for g in tables.group}
    for account in accounts:
        tables.passwd.append(account.passwd)
        tables.shadow.append(account.shadow)
        if account.group is not None and account.group.gid not in group_gids:
            tables.group.append(account.group)
            group_gids.add(account.group.gid)


def _validate_username(username: str) -> None:
    if not USERNAME_RE.fullmatch(username):
        raise InvalidAccount(
            f"invalid username {username!r}: use lowercase letters, digits, '_' or '-'"
        )


def _next_free_id(tables: AccountTables) -> int:
    used = {e.uid for e in tables.passwd} | {g.gid for g in tables.group}
    candidate = MIN_UID
    while candidate in used:
        candidate += 1
    if candidate > MAX_UID:
        raise InvalidAccount("no free uid left in the chroot environment")
    return candidate


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
