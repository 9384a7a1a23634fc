#!/usr/bin/python3
"""shell-setup — idempotent developer shell, SSH and Git setup with undo.

Edits shell startup files (.bashrc, .profile, ...) through marker-guarded
blocks so repeated runs converge, records every real change in an
append-only journal under ~/.local/state/shell-setup/, and replays that
journal backwards with --revert.
"""

import argparse
import base64
import binascii
import dataclasses
import getpass
import json
import os
import platform
import re
import shutil
import struct
import subprocess
import sys
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, Union

# ── Constants ────────────────────────────────────────────────────────────────

JOURNAL_RELPATH = Path(".local/state/shell-setup/shell-setup.log")

TIME_FMT = "%Y-%m-%d %H:%M:%S"
ARCHIVE_FMT = "%Y%m%d%H%M%S"
BACKUP_FMT = "%Y%m%d_%H%M%S"

# Dotfiles may hold bytes that are not UTF-8; they must survive a rewrite.
TEXT_IO = {"encoding": "utf-8", "errors": "surrogateescape"}

# Sentinel old-value for GIT_CONFIG entries whose key did not exist.
UNSET = "UNSET"

GITHUB_USER_API = "https://api.github.com/users/{}"

DEFAULT_LS_COLORS = (
    "rs=0:di=01;34:ln=01;36:mh=00:pi=40;33:so=01;35:do=01;35:bd=40;33;01:"
    "cd=40;33;01:or=40;31;01:mi=00:su=37;41:sg=30;43:ca=30;41:tw=30;42:"
    "ow=34;42:st=37;44:ex=01;32"
)

KEYCHAIN_LINE = (
    "[ -z $SLURM_PTY_PORT ] && "
    "eval $(keychain --nogui --quiet --eval ~/.ssh/id_ed25519)"
)

VIMRC = """\
" Enable syntax highlighting
syntax on

" Use desert color scheme
colorscheme desert
"""

GPG_KEY_PARAMS = """\
%echo Generating GPG key
Key-Type: RSA
Key-Length: 4096
Subkey-Type: RSA
Subkey-Length: 4096
Name-Real: {name}
Name-Email: {email}
Expire-Date: 0
%no-protection
%commit
%echo Done
"""


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left
    USER     = "\uf007"   # user
    FOLDER   = "\uf07b"   # folder
    TERMINAL = "\uf120"   # terminal
    WRENCH   = "\uf0ad"   # wrench
    KEY      = "\uf084"   # key
    LOCK     = "\uf023"   # lock
    EDIT     = "\uf044"   # pencil-square
    GIT      = "\uf1d3"   # git
    GLOBE    = "\uf0ac"   # globe
    ARCHIVE  = "\uf187"   # archive
    JOURNAL  = "\uf249"   # sticky-note


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


# ── Terminal prompts ─────────────────────────────────────────────────────────

def ask_confirm(prompt: str, default: bool = False,
                word: Optional[str] = None) -> bool:
    """Ask a yes/no question on the terminal.

    With *word* set, only that exact answer counts as yes; used in front of
    anything destructive.  EOF and Ctrl-C count as no.
    """
    try:
        answer = input(prompt).strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    if word is not None:
        return answer == word
    if not answer:
        return default
    return answer.lower() in ("y", "yes")


def ask_text(prompt: str) -> Optional[str]:
    """Read one line of input, or None once stdin is closed or interrupted."""
    try:
        return input(prompt).strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return None


def ask_secret(prompt: str) -> Optional[str]:
    try:
        return getpass.getpass(prompt)
    except (EOFError, KeyboardInterrupt):
        print()
        return None


# ── Environment ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Environment:
    """Snapshot of the ambient process state every operation works against."""

    home: Path
    shell: str
    os_name: str
    path: str = ""

    @property
    def known_shell(self) -> bool:
        return self.shell in ("bash", "zsh")

    @property
    def shell_rc(self) -> Path:
        """Interactive rc file; unknown shells get the bash default."""
        if self.shell == "zsh":
            return self.home / ".zshrc"
        return self.home / ".bashrc"

    @property
    def login_profile(self) -> Path:
        if self.shell == "zsh":
            return self.home / ".zprofile"
        if self.shell == "bash" and (self.home / ".bash_profile").exists():
            return self.home / ".bash_profile"
        return self.home / ".profile"

    @property
    def journal_path(self) -> Path:
        return self.home / JOURNAL_RELPATH

    @property
    def is_linux(self) -> bool:
        return self.os_name == "Linux"


def detect_environment() -> Environment:
    return Environment(
        home=Path.home(),
        shell=Path(os.environ.get("SHELL", "")).name,
        os_name=platform.system(),
        path=os.environ.get("PATH", ""),
    )


# ── Change journal ───────────────────────────────────────────────────────────

class ActionKind(str, Enum):
    ADDED_TO_FILE = "ADDED_TO_FILE"
    CREATED_FILE = "CREATED_FILE"
    CREATED_DIR = "CREATED_DIR"
    GIT_CONFIG = "GIT_CONFIG"
    SSH_KEY_CREATED = "SSH_KEY_CREATED"
    GPG_KEY_CREATED = "GPG_KEY_CREATED"


_ENTRY_RE = re.compile(
    r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\] ([A-Za-z_]+): (.*)$"
)


@dataclass(frozen=True)
class JournalEntry:
    timestamp: str
    # Raw string when the journal was written by a newer version.
    kind: Union[ActionKind, str]
    payload: str

    def file_line(self) -> Tuple[Path, str]:
        """ADDED_TO_FILE payload as (path, line content)."""
        path, _, content = self.payload.partition("|")
        return Path(path), content

    def git_setting(self) -> Tuple[str, str]:
        """GIT_CONFIG payload as (key, previous value or UNSET)."""
        key, _, old = self.payload.partition("=")
        return key, old

    def target(self) -> str:
        """The file, directory, git key or key id the entry is about."""
        if self.kind is ActionKind.ADDED_TO_FILE:
            return str(self.file_line()[0])
        if self.kind is ActionKind.GIT_CONFIG:
            return self.git_setting()[0]
        return self.payload

    def format(self) -> str:
        kind = self.kind.value if isinstance(self.kind, ActionKind) else self.kind
        return f"[{self.timestamp}] {kind}: {self.payload}"


def parse_line(line: str) -> Optional[JournalEntry]:
    m = _ENTRY_RE.match(line.rstrip("\r\n"))
    if not m:
        return None
    stamp, kind, payload = m.groups()
    try:
        kind = ActionKind(kind)
    except ValueError:
        pass
    return JournalEntry(stamp, kind, payload)


class Journal:
    """Append-only log of every change shell-setup made, consumed by --revert."""

    def __init__(self, path: Path, clock: Callable[[], datetime] = datetime.now):
        self.path = path
        self.clock = clock

    def exists(self) -> bool:
        return self.path.is_file()

    def record(self, kind: ActionKind, payload: str) -> bool:
        """Append one entry.  Failures are reported, never raised."""
        line = f"[{self.clock().strftime(TIME_FMT)}] {kind.value}: {payload}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", **TEXT_IO) as fh:
                fh.write(line)
        except OSError as exc:
            _warn(f"Could not write journal {self.path}: {exc}")
            return False
        return True

    def entries(self) -> List[JournalEntry]:
        if not self.exists():
            return []
        with open(self.path, **TEXT_IO) as fh:
            parsed = (parse_line(line) for line in fh)
            return [e for e in parsed if e is not None]

    def stream_reverse(self) -> Iterator[JournalEntry]:
        """Yield entries last-to-first, re-reading the file on every call."""
        yield from reversed(self.entries())

    def archive(self) -> Path:
        stamp = self.clock().strftime(ARCHIVE_FMT)
        target = self.path.with_name(f"{self.path.name}.{stamp}.reverted")
        self.path.rename(target)
        return target


# ── Text files as lists of lines ─────────────────────────────────────────────

def read_lines(path: Path) -> List[str]:
    if not path.exists():
        return []
    with open(path, **TEXT_IO) as fh:
        return fh.read().splitlines()


def write_lines(path: Path, lines: List[str]) -> None:
    """Replace *path* with *lines* via a temp file and rename.

    Symlinked dotfiles are written through to their target.
    """
    if path.is_symlink():
        path = path.resolve()
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", **TEXT_IO) as fh:
        fh.write("\n".join(lines) + "\n" if lines else "")
    if path.exists():
        shutil.copymode(path, tmp)
    tmp.replace(path)


def append_lines(path: Path, lines: List[str]) -> None:
    """Append *lines*, one newline-terminated write per line."""
    needs_newline = False
    if path.exists() and path.stat().st_size:
        with open(path, "rb") as fh:
            fh.seek(-1, os.SEEK_END)
            needs_newline = fh.read(1) != b"\n"
    with open(path, "a", **TEXT_IO) as fh:
        if needs_newline:
            fh.write("\n")
        for line in lines:
            fh.write(line + "\n")


def _blank(line: str) -> bool:
    return not line.strip()


def remove_line(lines: List[str], content: str) -> Optional[List[str]]:
    """Drop the last line equal to *content*; None when it is not there.

    A blank line left dangling in front of the removed one (at end of file
    or before another blank) is dropped too, so separators written with a
    block disappear with it.
    """
    for i in range(len(lines) - 1, -1, -1):
        if lines[i] != content:
            continue
        out = lines[:i] + lines[i + 1:]
        if i > 0 and _blank(out[i - 1]) and (i == len(out) or _blank(out[i])):
            del out[i - 1]
        return out
    return None


# ── Managed blocks ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ForeignBlock:
    """A vendor-installed `if … fi` PATH block that conflicts with ours."""

    name: str
    start: str                          # regex for the opening `if` line
    lead_comment: Optional[str] = None  # regex for a comment right above it
    trailer: Optional[str] = None       # regex for a line right after `fi`


@dataclass(frozen=True)
class ManagedBlock:
    """A marker line plus the content lines shell-setup owns beneath it."""

    name: str
    marker: str
    lines: Tuple[str, ...] = ()
    # Regexes for content lines whose text varies between runs.
    owns: Tuple[str, ...] = ()
    foreign: Tuple[ForeignBlock, ...] = ()

    def owns_line(self, line: str) -> bool:
        if line == self.marker or line in self.lines:
            return True
        return any(re.match(pattern, line) for pattern in self.owns)


RHEL_DEFAULT_PATH = ForeignBlock(
    name="RHEL default PATH",
    start=r'^if ! \[\[ "\$PATH" =~ "\$HOME/\.local/bin:\$HOME/bin:" \]\]',
    lead_comment=r"^# User specific environment",
    trailer=r"^export PATH$",
)

PROFILE_PATH_BLOCKS = (
    ForeignBlock(
        name="~/bin PATH",
        start=r'^if \[ -d "\$HOME/bin" \]',
        lead_comment=r"^# set PATH so it includes user.*private bin",
    ),
    ForeignBlock(
        name="~/.local/bin PATH",
        start=r'^if \[ -d "\$HOME/\.local/bin" \]',
        lead_comment=r"^# set PATH so it includes user.*private bin",
    ),
)

PATH_BLOCK = ManagedBlock(
    name="PATH",
    marker="# Add local bin directories to PATH (shell-setup.sh)",
    lines=("export PATH=$HOME/bin:$HOME/.local/bin:$PATH",),
    foreign=(RHEL_DEFAULT_PATH,),
)

XDG_BLOCK = ManagedBlock(
    name="XDG_RUNTIME_DIR",
    marker="# Container support (shell-setup.sh)",
    lines=('export XDG_RUNTIME_DIR="/run/user/$(id -u)"',),
    owns=(r"^export XDG_RUNTIME_DIR=",),
)

# Content is computed per run, see ShellSetup._prepare_convenience().
CONVENIENCE_BLOCK = ManagedBlock(
    name="convenience settings",
    marker="# Convenience environment settings (shell-setup.sh)",
    owns=(
        r"^# Change directory color from dark blue to cyan",
        r"^export LS_COLORS=",
        r"^# Increase history size$",
        r"^export HIST(SIZE|FILESIZE|CONTROL)=",
    ),
)

PROFILE_SOURCE_BLOCK = ManagedBlock(
    name=".bashrc sourcing",
    marker="# Source .bashrc for interactive login shells (shell-setup.sh)",
    lines=('[ -n "$BASH_VERSION" ] && [ -f "$HOME/.bashrc" ] && . "$HOME/.bashrc"',),
)

KEYCHAIN_BLOCK = ManagedBlock(
    name="keychain",
    marker="# SSH Keychain - loads SSH key passphrase into memory",
    lines=(
        "# Only run on interactive login shells (not in Slurm jobs)",
        KEYCHAIN_LINE,
    ),
)

NVM_BLOCK = ManagedBlock(
    name="NVM",
    marker="# NVM (Node Version Manager) initialization (shell-setup.sh)",
    lines=(
        'export NVM_DIR="$HOME/.nvm"',
        '[ -s "$NVM_DIR/nvm.sh" ] && \\. "$NVM_DIR/nvm.sh"  # This loads nvm',
        '[ -s "$NVM_DIR/bash_completion" ] && \\. "$NVM_DIR/bash_completion"'
        '  # This loads nvm bash_completion',
    ),
)

MANAGED_BLOCKS = (
    PATH_BLOCK, XDG_BLOCK, CONVENIENCE_BLOCK,
    PROFILE_SOURCE_BLOCK, KEYCHAIN_BLOCK, NVM_BLOCK,
)

_SOURCES_BASHRC = (
    re.compile(r"""(^|[;&\s])(\.|source)\s+["']?(~|\$HOME|\$\{HOME\})/\.bashrc"""),
    re.compile(r"if.*-f.*\.bashrc"),
)
_KEYCHAIN_OK_RE = re.compile(r"keychain.*--nogui.*--quiet.*--eval.*id_ed25519")
_KEYCHAIN_LEGACY_RE = re.compile(r"keychain|Keychain|Only run on interactive")
_NVM_INIT_RE = re.compile(r"NVM_DIR.*nvm\.sh")
_LS_COLORS_RE = re.compile(r'^export LS_COLORS="(.*)"$')
_IF_OPEN = re.compile(r"^\s*if\b")
_IF_CLOSE = re.compile(r"(^|;)\s*fi\s*(;|#|$)")


def has_marker(lines: List[str], marker: str) -> bool:
    return any(line.strip() == marker for line in lines)


def render_block(lines: List[str], block: ManagedBlock) -> List[str]:
    """Lines to append so *block* follows the current content of a file."""
    out = []
    if lines and not _blank(lines[-1]):
        out.append("")
    out.append(block.marker)
    out.extend(block.lines)
    return out


def remove_block(lines: List[str], block: ManagedBlock) -> List[str]:
    """Strip every copy of *block*: marker, owned lines, leading separator.

    Content after the marker is consumed while it is blank or owned by the
    block; trailing blanks that separate the block from foreign content
    stay.
    """
    out = list(lines)
    while True:
        idx = next((i for i, line in enumerate(out)
                    if line.strip() == block.marker), None)
        if idx is None:
            return out
        end = idx
        j = idx + 1
        while j < len(out) and (_blank(out[j]) or block.owns_line(out[j])):
            if not _blank(out[j]):
                end = j
            j += 1
        start = idx - 1 if idx > 0 and _blank(out[idx - 1]) else idx
        del out[start:end + 1]


def insert_after_first_line(lines: List[str],
                            block: ManagedBlock) -> Tuple[List[str], List[str]]:
    """Place *block* right below the first line (shebang or title comment).

    Returns the new file lines and the non-blank lines that were inserted.
    """
    body = [block.marker, *block.lines]
    if not lines:
        return body, body
    head, rest = lines[:1], lines[1:]
    inserted = ["", *body]
    if rest and not _blank(rest[0]):
        inserted.append("")
    return head + inserted + rest, body


def _matching_fi(lines: List[str], start: int) -> Optional[int]:
    depth = 0
    for j in range(start, len(lines)):
        if _IF_OPEN.match(lines[j]):
            depth += 1
        if _IF_CLOSE.search(lines[j]):
            depth -= 1
            if depth == 0:
                return j
    return None


def squeeze_blank_lines(lines: List[str], idx: int) -> None:
    while 0 < idx < len(lines) and _blank(lines[idx - 1]) and _blank(lines[idx]):
        del lines[idx]


def excise_conditional(lines: List[str],
                       block: ForeignBlock) -> Tuple[List[str], int]:
    """Remove every *block* conditional, from its `if` to the matching `fi`.

    An opening line without a balanced `fi` is left alone so the file never
    ends up with a dangling conditional.  Returns (lines, blocks removed).
    """
    out = list(lines)
    start_re = re.compile(block.start)
    removed = 0
    i = 0
    while i < len(out):
        if not start_re.match(out[i]):
            i += 1
            continue
        end = _matching_fi(out, i)
        if end is None:
            i += 1
            continue
        first, last = i, end
        if (block.trailer and last + 1 < len(out)
                and re.match(block.trailer, out[last + 1])):
            last += 1
        if (block.lead_comment and first > 0
                and re.match(block.lead_comment, out[first - 1])):
            first -= 1
        del out[first:last + 1]
        squeeze_blank_lines(out, first)
        removed += 1
        i = first
    return out, removed


# ── PATH ordering ────────────────────────────────────────────────────────────

class PathOrder(Enum):
    CORRECT = "correct"
    WRONG = "wrong"
    MISSING = "missing"


def check_path_order(env: Environment) -> PathOrder:
    """Read-only: does ~/bin precede ~/.local/bin in the live PATH?"""
    bin_home = str(env.home / "bin")
    bin_local = str(env.home / ".local" / "bin")
    positions = {}
    for pos, entry in enumerate(env.path.split(":")):
        if entry.startswith("~"):
            entry = str(env.home) + entry[1:]
        if len(entry) > 1:
            entry = entry.rstrip("/")
        if entry in (bin_home, bin_local):
            positions.setdefault(entry, pos)
    if bin_home not in positions or bin_local not in positions:
        return PathOrder.MISSING
    if positions[bin_home] < positions[bin_local]:
        return PathOrder.CORRECT
    return PathOrder.WRONG


# ── External tools ───────────────────────────────────────────────────────────

def run_cmd(cmd, input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run *cmd* capturing output; a non-zero exit is returned, not raised."""
    return subprocess.run(
        cmd, capture_output=True, text=True, input=input_text,
    )


def fetch_github_user(username: str,
                      timeout: float = 5.0) -> Optional[Tuple[str, str]]:
    """Return (name, email) from the public GitHub profile, or None."""
    url = GITHUB_USER_API.format(urllib.parse.quote(username))
    req = urllib.request.Request(url, headers={
        "Accept": "application/vnd.github+json",
        "User-Agent": "shell-setup",
    })
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.load(resp)
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict) or "login" not in data:
        return None
    name = data.get("name") or username
    email = data.get("email") or f"{username}@users.noreply.github.com"
    return name, email


def ssh_key_has_passphrase(path: Path) -> bool:
    """True when the private key at *path* is encrypted."""
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError):
        return False
    if "ENCRYPTED" in text:
        return True
    body = "".join(line for line in text.splitlines()
                   if not line.startswith("-----"))
    try:
        blob = base64.b64decode(body)
    except (binascii.Error, ValueError):
        return False
    magic = b"openssh-key-v1\x00"
    if not blob.startswith(magic) or len(blob) < len(magic) + 4:
        return False
    (size,) = struct.unpack(">I", blob[len(magic):len(magic) + 4])
    cipher = blob[len(magic) + 4:len(magic) + 4 + size]
    return cipher != b"none"


def gpg_secret_keys(query: str) -> List[Tuple[str, str]]:
    """(long key id, fingerprint) of every secret key matching *query*."""
    r = run_cmd(["gpg", "--list-secret-keys", "--with-colons", query])
    if r.returncode != 0:
        return []
    keys = []
    for line in r.stdout.splitlines():
        fields = line.split(":")
        if fields[0] == "sec":
            keys.append([fields[4], ""])
        elif fields[0] == "fpr" and keys and not keys[-1][1]:
            keys[-1][1] = fields[9]
    return [(key_id, fpr) for key_id, fpr in keys]


def render_ssh_config(username: str, jumphost: str, hpc_host: str) -> str:
    text = """\
# SSH Connection Multiplexing and Global Defaults
Host *
    ControlPath ~/.ssh/controlmasters/%r@%h:%p
    ControlMaster auto
    ControlPersist 10m
    ServerAliveInterval 10
    ServerAliveCountMax 3

# GitHub
Host github.com
    HostName github.com
    User git
    IdentityFile ~/.ssh/id_ed25519
    AddKeysToAgent yes
"""
    if jumphost and username:
        text += f"""
# Jump Host
Host jumphost
    HostName {jumphost}
    User {username}
    ControlMaster auto
    DynamicForward 1080
"""
    if hpc_host and username:
        text += f"""
# HPC Login Node
Host hpc
    HostName {hpc_host}
    User {username}
"""
        if jumphost:
            text += "    ProxyJump jumphost\n"
    return text


# ── ShellSetup ───────────────────────────────────────────────────────────────

class ShellSetup:
    """Idempotent apply: every step checks live state before it writes."""

    def __init__(self, env: Environment, force: bool = False,
                 light: bool = False, journal: Optional[Journal] = None,
                 confirm: Callable[..., bool] = ask_confirm,
                 ask: Callable[[str], Optional[str]] = ask_text,
                 ask_secret: Callable[[str], Optional[str]] = ask_secret,
                 clock: Callable[[], datetime] = datetime.now):
        self.env = env
        self.force = force
        self.light = light
        self.clock = clock
        self.journal = journal or Journal(env.journal_path, clock)
        self.confirm = confirm
        self.ask = ask
        self.ask_secret = ask_secret
        self.user_name = ""
        self.user_email = ""
        self.gpg_key_id = ""
        self.previous_signing_key = ""
        self.failed: list = []
        self._t0 = None

    # ── helpers ───────────────────────────────────────────────────────────

    def _stamp(self) -> str:
        return self.clock().strftime(BACKUP_FMT)

    def _backup(self, path: Path) -> Path:
        """Copy *path* aside once per run; the first copy holds the original."""
        backup = path.with_name(f"{path.name}.bak.{self._stamp()}")
        if not backup.exists():
            shutil.copy2(path, backup)
        return backup

    def _ensure_dir(self, path: Path) -> bool:
        """Create directory (and journal it) when needed."""
        if path.exists():
            return False
        path.mkdir(parents=True, exist_ok=True)
        self.journal.record(ActionKind.CREATED_DIR, str(path))
        return True

    def _append(self, path: Path, new_lines: List[str]) -> None:
        """Append lines and journal each non-blank one individually."""
        append_lines(path, new_lines)
        for line in new_lines:
            if not _blank(line):
                self.journal.record(ActionKind.ADDED_TO_FILE, f"{path}|{line}")

    def _excise_foreign(self, path: Path, blocks) -> int:
        """Cut conflicting vendor PATH conditionals out of *path*.

        Not journaled: the removed text is backed up next to the file but
        --revert does not put it back.
        """
        lines = read_lines(path)
        total = 0
        for block in blocks:
            lines, count = excise_conditional(lines, block)
            if count:
                _warn(f"Found {block.name} block in {path} — removing")
                total += count
        if total:
            backup = self._backup(path)
            write_lines(path, lines)
            _info(f"Removed {total} PATH block(s) from {path} "
                  f"(backup: {backup.name})")
        return total

    def apply_block(self, path: Path, block: ManagedBlock,
                    prepare=None) -> bool:
        """Append *block* to *path* unless its marker is already there.

        In force mode an existing copy is stripped first and written again.
        *prepare* may rewrite the remaining lines and return the concrete
        block to install.  A file created here is journaled so --revert
        removes it again.  Returns True when lines were appended.
        """
        if block.foreign and path.exists():
            self._excise_foreign(path, block.foreign)

        original = read_lines(path)
        lines = original
        if has_marker(lines, block.marker):
            if not self.force:
                _info(f"{block.name} already configured in {path}")
                return False
            _warn(f"Force mode: removing existing {block.name} configuration")
            lines = remove_block(lines, block)

        if prepare is not None:
            lines, block = prepare(lines)
        if not path.exists():
            self.journal.record(ActionKind.CREATED_FILE, str(path))
        if lines != original:
            write_lines(path, lines)

        self._append(path, render_block(lines, block))
        _info(f"Added {block.name} configuration to {path}")
        return True

    def _git_get(self, key: str) -> str:
        r = run_cmd(["git", "config", "--global", key])
        return r.stdout.strip() if r.returncode == 0 else ""

    def _git_set(self, key: str, value: str) -> bool:
        """Set a global git key, journaling its previous value.  True if changed."""
        old = self._git_get(key)
        if old == value:
            return False
        r = run_cmd(["git", "config", "--global", key, value])
        if r.returncode != 0:
            _error(f"git config --global {key} failed: {r.stderr.strip()}")
            self.failed.append(f"git config {key}")
            return False
        self.journal.record(ActionKind.GIT_CONFIG, f"{key}={old or UNSET}")
        _info(f"git config --global {key} {value}")
        return True

    # ── entry point ───────────────────────────────────────────────────────

    def _plan(self) -> list:
        shell_steps = [
            (_I.FOLDER, "PATH directories", self.setup_path),
            (_I.TERMINAL, "Container support", self.setup_xdg_runtime_dir),
            (_I.WRENCH, "Convenience settings", self.setup_convenience_settings),
        ]
        if self.light:
            return shell_steps + [
                (_I.EDIT, "Vim", self.setup_vim),
                (_I.GIT, "Git default branch", self.setup_default_branch),
            ]
        return [(_I.USER, "User information", self.gather_user_info)] + shell_steps + [
            (_I.KEY, "SSH key", self.setup_ssh_key),
            (_I.LOCK, "GPG signing key", self.setup_gpg_key),
            (_I.KEY, "Keychain in login profile", self.setup_keychain_profile),
            (_I.TERMINAL, "NVM initialization", self.setup_nvm_init),
            (_I.EDIT, "Vim", self.setup_vim),
            (_I.GIT, "Git", self.setup_git_config),
            (_I.GIT, "Git commit signing", self.setup_git_signing),
            (_I.GLOBE, "SSH client config", self.setup_ssh_config),
        ]

    def run(self) -> int:
        """Apply every step in order.  Returns the process exit code."""
        self._t0 = time.monotonic()
        mode = "force" if self.force else "light" if self.light else "interactive"
        _banner(f"{_I.ROCKET}  shell-setup — {mode} mode")

        if self.force:
            _warn("Force mode: existing configuration will be overwritten")
            _warn("Existing SSH/GPG keys will be backed up first")
        if not self.env.known_shell:
            _warn(f"Unrecognized login shell '{self.env.shell or 'unknown'}' "
                  f"— using bash defaults ({self.env.shell_rc})")
        _info(f"{_I.JOURNAL}  Changes will be logged to {self.journal.path}")

        steps = self._plan()
        for step, (icon, title, func) in enumerate(steps, 1):
            _section(icon, title, step, len(steps))
            try:
                result = func()
            except (OSError, UnicodeError) as exc:
                _error(f"{title}: {exc}")
                self.failed.append(title)
                continue
            if result is False:
                _error(f"{title} failed. Resolve the issue above and run "
                       f"shell-setup again.")
                return 1

        self._print_summary()
        return 0

    # ── user information ──────────────────────────────────────────────────

    def gather_user_info(self) -> Optional[bool]:
        name = email = ""
        if shutil.which("git"):
            name, email = self._git_get("user.name"), self._git_get("user.email")

        if name and email:
            _info(f"Found existing git configuration: {name} <{email}>")
            if self.force or self.confirm("Use this configuration? (Y/n): ",
                                          default=True):
                self.user_name, self.user_email = name, email
                _info("Using existing configuration")
                return None

        while True:
            username = self.ask("Your GitHub username: ")
            if username is None:
                break
            if not username:
                _error("GitHub username cannot be empty")
                continue
            _info(f"Fetching GitHub profile for {username}...")
            found = fetch_github_user(username)
            if found is None:
                _error(f"GitHub user '{username}' not found")
                continue
            self.user_name, self.user_email = found
            _info(f"GitHub profile found: {self.user_name} <{self.user_email}>")
            break

        if not (self.user_name and self.user_email):
            _error("Name and email are required")
            return False
        return None

    # ── shell files ───────────────────────────────────────────────────────

    def setup_path(self) -> None:
        env = self.env
        rc, profile = env.shell_rc, env.login_profile

        created = [d for d in (env.home / "bin", env.home / ".local" / "bin")
                   if self._ensure_dir(d)]
        if created:
            _info(f"Created directories: {', '.join(str(d) for d in created)}")
        else:
            _info("Directories already exist: ~/bin and ~/.local/bin")

        order = check_path_order(env)
        if order is PathOrder.CORRECT:
            _info("PATH order is correct: $HOME/bin comes before $HOME/.local/bin")
        elif order is PathOrder.WRONG:
            _warn("PATH order issue: $HOME/.local/bin comes before $HOME/bin "
                  f"(fixed by the PATH block in {rc.name})")
        else:
            _warn("One or both directories not in PATH yet")

        # PATH lives in the rc file; login profiles only source it.
        for pfile in dict.fromkeys((profile, env.home / ".profile")):
            if pfile.exists():
                self._excise_foreign(pfile, PROFILE_PATH_BLOCKS)

        self.apply_block(rc, PATH_BLOCK)
        self.ensure_profile_sources_rc(profile, rc)

    def ensure_profile_sources_rc(self, profile: Path, rc: Path,
                                  create: bool = False) -> None:
        """Make interactive bash login shells read ~/.bashrc.

        The sourcing line goes right below the profile's first line, since
        later profile content may rely on what .bashrc sets.  A profile we
        started ourselves (*create*) opens with the block instead.
        """
        if rc.name != ".bashrc" or not (create or profile.exists()):
            return

        created = not profile.exists()
        lines = read_lines(profile)
        leading = bool(lines) and lines[0].strip() == PROFILE_SOURCE_BLOCK.marker
        if has_marker(lines, PROFILE_SOURCE_BLOCK.marker):
            if not self.force:
                _info("Login profile already sources .bashrc")
                return
            lines = remove_block(lines, PROFILE_SOURCE_BLOCK)
        elif any(p.search(line) for line in lines for p in _SOURCES_BASHRC):
            _info("Login profile already sources .bashrc")
            return

        if created:
            _info(f"Creating {profile}")
        else:
            _warn(f"Adding .bashrc sourcing to {profile}")
            self._backup(profile)
        if leading:
            added = [PROFILE_SOURCE_BLOCK.marker, *PROFILE_SOURCE_BLOCK.lines]
            new = added + lines
        else:
            new, added = insert_after_first_line(lines, PROFILE_SOURCE_BLOCK)
        write_lines(profile, new)
        if created:
            self.journal.record(ActionKind.CREATED_FILE, str(profile))
        for line in added:
            self.journal.record(ActionKind.ADDED_TO_FILE, f"{profile}|{line}")
        _info(f"Added .bashrc sourcing to {profile}")

    def setup_xdg_runtime_dir(self) -> None:
        if not self.env.is_linux:
            _skip("Skipping XDG_RUNTIME_DIR (not Linux)")
            return
        self.apply_block(self.env.shell_rc, XDG_BLOCK)

    def _prepare_convenience(self, lines: List[str]):
        colors = DEFAULT_LS_COLORS
        for line in lines:
            m = _LS_COLORS_RE.match(line)
            if m:
                colors = m.group(1)
                break
        colors = colors.replace("di=01;34", "di=01;36").replace("di=34", "di=01;36")

        # Existing history sizes are edited in place rather than shadowed.
        out = list(lines)
        targets = {"HISTSIZE": "10000", "HISTFILESIZE": "20000"}
        edited = set()
        for i, line in enumerate(out):
            m = re.match(r"^(export )?(HISTSIZE|HISTFILESIZE)=", line)
            if m:
                key = m.group(2)
                out[i] = f"{m.group(1) or ''}{key}={targets[key]}"
                edited.add(key)
        for key in sorted(edited):
            _info(f"Updated existing {key} to {targets[key]}")
        add_control = not any(re.match(r"^(export )?HISTCONTROL=", line)
                              for line in out)

        content = [
            "",
            "# Change directory color from dark blue to cyan for better visibility",
            f'export LS_COLORS="{colors}"',
        ]
        missing = [k for k in ("HISTSIZE", "HISTFILESIZE") if k not in edited]
        if missing:
            content += ["", "# Increase history size"]
            content += [f"export {k}={targets[k]}" for k in missing]
        if add_control:
            content.append("export HISTCONTROL=ignoreboth")
        return out, dataclasses.replace(CONVENIENCE_BLOCK, lines=tuple(content))

    def setup_convenience_settings(self) -> None:
        self.apply_block(self.env.shell_rc, CONVENIENCE_BLOCK,
                         prepare=self._prepare_convenience)

    def setup_keychain_profile(self) -> None:
        profile = self.env.login_profile
        # The PATH step only edits an existing profile; one started here
        # still has to source .bashrc.
        if not profile.exists():
            self.ensure_profile_sources_rc(profile, self.env.shell_rc,
                                           create=True)
        lines = read_lines(profile)

        if not has_marker(lines, KEYCHAIN_BLOCK.marker):
            if any(_KEYCHAIN_OK_RE.search(line) for line in lines):
                _info(f"Keychain already configured in {profile}")
                return
            if any(_KEYCHAIN_LEGACY_RE.search(line) for line in lines):
                if not self.force and not self.confirm(
                        f"Keychain already configured in {profile}. "
                        f"Update keychain configuration? (y/N): "):
                    _info("Keeping existing keychain configuration")
                    return
                self._backup(profile)
                write_lines(profile, [line for line in lines
                                      if not _KEYCHAIN_LEGACY_RE.search(line)])
                _warn(f"Removed existing keychain configuration from {profile}")

        self.apply_block(profile, KEYCHAIN_BLOCK)

    def setup_nvm_init(self) -> None:
        if not (self.env.home / ".nvm" / "nvm.sh").exists():
            _skip("NVM not installed (~/.nvm/nvm.sh missing) — skipping")
            return
        rc = self.env.shell_rc
        lines = read_lines(rc)
        if (not has_marker(lines, NVM_BLOCK.marker)
                and any(_NVM_INIT_RE.search(line) for line in lines)):
            _info(f"NVM already initialized in {rc}")
            return
        self.apply_block(rc, NVM_BLOCK)

    def setup_vim(self) -> None:
        if shutil.which("vim") is None:
            _warn("Vim not installed. Skipping Vim configuration.")
            return

        vimrc = self.env.home / ".vimrc"
        if not vimrc.exists():
            with open(vimrc, "w") as fh:
                fh.write(VIMRC)
            self.journal.record(ActionKind.CREATED_FILE, str(vimrc))
            _info(f"Created {vimrc} with desert color scheme")
            return

        lines = read_lines(vimrc)
        missing = []
        if not any(line.startswith("syntax on") for line in lines):
            missing += ['" Enable syntax highlighting', "syntax on"]
        if not any(line.startswith("colorscheme desert") for line in lines):
            missing += ['" Use desert color scheme', "colorscheme desert"]
        if not missing:
            _info("Vim already configured with desert color scheme")
            return
        separator = [""] if lines and not _blank(lines[-1]) else []
        self._append(vimrc, separator + missing)
        _info(f"Added desert color scheme to {vimrc}")

    # ── credentials ───────────────────────────────────────────────────────

    def _read_passphrase(self) -> Optional[str]:
        while True:
            passphrase = self.ask_secret("Enter passphrase: ")
            if passphrase is None:
                return None
            if not passphrase:
                _error("Passphrase cannot be empty for security reasons. "
                       "Please try again.")
                continue
            again = self.ask_secret("Enter passphrase again: ")
            if again is None:
                return None
            if passphrase == again:
                return passphrase
            _error("Passphrases do not match. Try again.")

    def setup_ssh_key(self) -> Optional[bool]:
        ssh_dir = self.env.home / ".ssh"
        key = ssh_dir / "id_ed25519"
        pub = ssh_dir / "id_ed25519.pub"

        self._ensure_dir(ssh_dir)
        ssh_dir.chmod(0o700)

        if key.exists():
            _warn(f"SSH key already exists at {key}")
            if self.force:
                backup = ssh_dir / f"backup-{self._stamp()}"
                backup.mkdir(parents=True, exist_ok=True)
                for p in (key, pub):
                    if p.exists():
                        shutil.copy2(p, backup / p.name)
                        p.unlink()
                _info(f"Backed up existing SSH key to {backup}")
            elif ssh_key_has_passphrase(key):
                _info("SSH key has a passphrase (encrypted)")
                return None
            else:
                _error("SSH key exists but has NO passphrase!")
                print(f"    1. Back up the existing key: mv {key} {key}.bak")
                print(f"    2. Or add a passphrase: ssh-keygen -p -f {key}")
                print("    3. Run shell-setup again, or use --force to back "
                      "up and replace it")
                return False

        if shutil.which("ssh-keygen") is None:
            _warn("ssh-keygen not installed. Skipping SSH key generation.")
            return None

        _info("Generating new SSH key (a passphrase is REQUIRED)")
        passphrase = self._read_passphrase()
        if passphrase is None:
            _error("No passphrase entered")
            return False
        run_cmd(["ssh-keygen", "-t", "ed25519", "-C", self.user_email,
                 "-f", str(key), "-N", passphrase, "-q"])
        if not key.exists():
            _error("Failed to create SSH key file!")
            return False
        if not ssh_key_has_passphrase(key):
            _error("SSH key was generated without a passphrase! Removing it.")
            key.unlink()
            if pub.exists():
                pub.unlink()
            return False
        self.journal.record(ActionKind.SSH_KEY_CREATED, str(key))
        _info("SSH key generated successfully with passphrase")
        return None

    def setup_gpg_key(self) -> None:
        if shutil.which("gpg") is None:
            _warn("GPG not installed. Skipping GPG key setup.")
            _warn("To install: sudo apt install gnupg (or brew install gnupg on macOS)")
            return

        existing = gpg_secret_keys(self.user_email)
        if existing and not self.force:
            self.gpg_key_id = existing[-1][0]
            _info(f"GPG key already exists for {self.user_email} "
                  f"(key ID {self.gpg_key_id})")
            return

        gnupg = self.env.home / ".gnupg"
        self._ensure_dir(gnupg)
        gnupg.chmod(0o700)

        if existing:
            old_id = existing[-1][0]
            backup = gnupg / f"backup-{self._stamp()}"
            backup.mkdir(parents=True, exist_ok=True)
            exports = (
                ("--export-secret-keys", f"private-key-{old_id}.asc"),
                ("--export", f"public-key-{old_id}.asc"),
            )
            for flag, name in exports:
                r = run_cmd(["gpg", flag, "--armor", self.user_email])
                (backup / name).write_text(r.stdout)
            _info(f"Backed up existing GPG key to {backup}")

        _info("Generating GPG key for Git commit signing (no passphrase)")
        params = GPG_KEY_PARAMS.format(name=self.user_name, email=self.user_email)
        run_cmd(["gpg", "--batch", "--generate-key"], input_text=params)

        before = {key_id for key_id, _ in existing}
        new = [key_id for key_id, _ in gpg_secret_keys(self.user_email)
               if key_id not in before]
        if not new:
            _error("Failed to generate GPG key")
            self.failed.append("GPG signing key")
            return
        self.gpg_key_id = new[-1]
        self.journal.record(ActionKind.GPG_KEY_CREATED, self.gpg_key_id)
        _info(f"GPG key generated successfully (key ID {self.gpg_key_id})")

    def setup_ssh_config(self) -> None:
        ssh_dir = self.env.home / ".ssh"
        config = ssh_dir / "config"
        if config.exists():
            _info(f"SSH config already exists at {config}")
            return

        if not self.confirm("Do you connect through a ssh jump/bastion host "
                            "(for HPC/AI)? [y/N]: "):
            _info("Skipping SSH config setup (no remote hosts to configure)")
            return

        username = self.ask("Your username: ")
        jumphost = self.ask("Jump/bastion host hostname (e.g., jump.example.edu): ")
        hpc_host = self.ask("HPC/AI login node hostname "
                            "(e.g., login.hpc.university.edu): ")
        if None in (username, jumphost, hpc_host):
            _warn("Input closed. Skipping SSH config setup.")
            return

        self._ensure_dir(ssh_dir)
        ssh_dir.chmod(0o700)
        controlmasters = ssh_dir / "controlmasters"
        self._ensure_dir(controlmasters)
        controlmasters.chmod(0o700)

        with open(config, "w") as fh:
            fh.write(render_ssh_config(username, jumphost, hpc_host))
        config.chmod(0o600)
        self.journal.record(ActionKind.CREATED_FILE, str(config))
        _info(f"SSH config created at {config}")

    # ── git ───────────────────────────────────────────────────────────────

    def setup_default_branch(self) -> None:
        if shutil.which("git") is None:
            _warn("Git not installed. Skipping Git configuration.")
            return
        if self._git_get("init.defaultBranch") == "main":
            _info("Default branch already set to 'main'")
            return
        if self._git_set("init.defaultBranch", "main"):
            _info("Set default branch to 'main'")

    def setup_git_config(self) -> None:
        if shutil.which("git") is None:
            _warn("Git not installed. Skipping Git configuration.")
            _warn("To install: sudo apt install git (or brew install git on macOS)")
            return

        name, email = self._git_get("user.name"), self._git_get("user.email")
        wanted = (self.user_name, self.user_email)
        if name and email:
            _info(f"Git already configured: {name} <{email}>")
            if (name, email) == wanted:
                _info("Configuration matches input (no changes needed)")
            elif not self.force and not self.confirm(
                    "Update git config with new values? (y/N): "):
                _warn("Keeping existing git configuration")
                wanted = (name, email)

        self._git_set("user.name", wanted[0])
        self._git_set("user.email", wanted[1])
        self.setup_default_branch()

    def setup_git_signing(self) -> None:
        if not self.gpg_key_id or shutil.which("git") is None:
            _skip("No GPG key available — skipping commit signing")
            return
        current = self._git_get("user.signingkey")
        if current and current != self.gpg_key_id:
            self.previous_signing_key = current
        changed = self._git_set("user.signingkey", self.gpg_key_id)
        changed = self._git_set("commit.gpgsign", "true") or changed
        if changed:
            _info(f"Configured Git to sign commits with GPG key {self.gpg_key_id}")
        else:
            _info(f"Git commit signing already configured with key {self.gpg_key_id}")

    # ── summary ───────────────────────────────────────────────────────────

    def _print_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        m, s = divmod(int(elapsed), 60)
        _banner(f"{_I.CHECK}  Setup complete ({m}m {s:02d}s)")

        if self.failed:
            _warn(f"Finished with errors in: {', '.join(self.failed)}")
            _warn("Fix the problems above and run shell-setup again")

        reload_file = self.env.shell_rc if self.light else self.env.login_profile
        _info(f"Reload your shell configuration:  . ~/{reload_file.name}")
        if not self.light:
            _info("Add your SSH public key to GitHub:  cat ~/.ssh/id_ed25519.pub"
                  "  (https://github.com/settings/ssh/new)")
            if self.gpg_key_id:
                if self.previous_signing_key:
                    _warn(f"Your previous signing key was "
                          f"{self.previous_signing_key}; Git now uses "
                          f"{self.gpg_key_id}")
                _info(f"Add your GPG key to GitHub:  gpg --armor --export "
                      f"{self.gpg_key_id}  (https://github.com/settings/gpg/new)")
            if "Host hpc" in "\n".join(read_lines(self.env.home / ".ssh" / "config")):
                _info("Connect to your HPC system:  ssh hpc")

        print()
        _info(f"{_I.JOURNAL}  Journal:   {self.journal.path}")
        _info(f"{_I.UNDO}  To revert: shell-setup --revert")


# ── Reverter ─────────────────────────────────────────────────────────────────

class Bucket(Enum):
    REVERTED = "reverted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    bucket: Bucket
    item: str


class RevertReport:
    """Every processed journal entry lands in exactly one bucket."""

    def __init__(self):
        self.items = {bucket: [] for bucket in Bucket}

    def add(self, outcome: Outcome) -> None:
        self.items[outcome.bucket].append(outcome.item)

    def count(self, bucket: Bucket) -> int:
        return len(self.items[bucket])

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.items.values())


def _reverted(item: str) -> Outcome:
    _info(item)
    return Outcome(Bucket.REVERTED, item)


def _skipped(item: str) -> Outcome:
    _skip(item)
    return Outcome(Bucket.SKIPPED, item)


def _failed(item: str) -> Outcome:
    _error(item)
    return Outcome(Bucket.FAILED, item)


def undo_added_to_file(entry: JournalEntry, confirm) -> Outcome:
    path, content = entry.file_line()
    if not path.is_file():
        return _skipped(f"File {path} not found")
    remaining = remove_line(read_lines(path), content)
    if remaining is None:
        _skip(f"   Looking for: {content[:70]}")
        return _skipped(f"Line already removed from {path}")
    write_lines(path, remaining)
    return _reverted(f"Removed line from {path}: {content[:70]}")


def undo_created_file(entry: JournalEntry, confirm) -> Outcome:
    path = Path(entry.payload)
    if not (path.is_file() or path.is_symlink()):
        return _skipped(f"File {path} not found")
    path.unlink()
    return _reverted(f"Removed file {path}")


def undo_created_dir(entry: JournalEntry, confirm) -> Outcome:
    # Directories may have collected user files since; never removed.
    return _skipped(f"Skipped directory {entry.payload} (may contain user files)")


def undo_git_config(entry: JournalEntry, confirm) -> Outcome:
    if shutil.which("git") is None:
        return _skipped("Git config (Git not installed)")
    key, old = entry.git_setting()
    if old == UNSET:
        r = run_cmd(["git", "config", "--global", "--unset", key])
        if r.returncode == 0:
            return _reverted(f"Unset git config {key}")
        return _skipped(f"Config {key} already unset")
    r = run_cmd(["git", "config", "--global", key, old])
    if r.returncode == 0:
        return _reverted(f"Restored git config {key}={old}")
    return _failed(f"Failed to restore git config {key}")


def undo_ssh_key(entry: JournalEntry, confirm) -> Outcome:
    key = Path(entry.payload)
    if not key.exists():
        return _skipped(f"SSH key {key} not found")
    _warn(f"Found SSH key: {key}")
    if not confirm("Delete this SSH key? (yes/N): ", word="yes"):
        return _skipped(f"Skipped SSH key {key} (user choice)")
    for p in (key, key.with_name(key.name + ".pub")):
        if p.exists():
            p.unlink()
    return _reverted(f"Removed SSH key {key}")


def undo_gpg_key(entry: JournalEntry, confirm) -> Outcome:
    key_id = entry.payload
    if shutil.which("gpg") is None:
        return _skipped(f"GPG key {key_id} (GPG not installed)")
    keys = gpg_secret_keys(key_id)
    if not keys:
        return _skipped(f"GPG key {key_id} not found")
    _warn(f"Found GPG key: {key_id}")
    if not confirm("Delete this GPG key? (yes/N): ", word="yes"):
        return _skipped(f"Skipped GPG key {key_id} (user choice)")
    # Batch-mode deletion needs the fingerprint, not the key id.
    fpr = keys[-1][1] or key_id
    secret = run_cmd(["gpg", "--batch", "--yes", "--delete-secret-keys", fpr])
    if secret.returncode == 0:
        public = run_cmd(["gpg", "--batch", "--yes", "--delete-keys", fpr])
        if public.returncode == 0:
            return _reverted(f"Removed GPG key {key_id}")
    return _failed(f"Failed to remove GPG key {key_id}")


UNDO_HANDLERS = {
    ActionKind.ADDED_TO_FILE: undo_added_to_file,
    ActionKind.CREATED_FILE: undo_created_file,
    ActionKind.CREATED_DIR: undo_created_dir,
    ActionKind.GIT_CONFIG: undo_git_config,
    ActionKind.SSH_KEY_CREATED: undo_ssh_key,
    ActionKind.GPG_KEY_CREATED: undo_gpg_key,
}


class Reverter:
    """Replay the journal newest-first, undoing what each entry recorded."""

    def __init__(self, env: Environment, journal: Optional[Journal] = None,
                 confirm: Callable[..., bool] = ask_confirm,
                 clock: Callable[[], datetime] = datetime.now):
        self.env = env
        self.journal = journal or Journal(env.journal_path, clock)
        self.confirm = confirm

    def undo(self, entry: JournalEntry) -> Outcome:
        handler = UNDO_HANDLERS.get(entry.kind)
        if handler is None:
            return _skipped(f"Unrecognized journal action {entry.kind}: "
                            f"{entry.payload}")
        try:
            return handler(entry, self.confirm)
        except (OSError, UnicodeError) as exc:
            return _failed(f"Failed to revert {entry.target()}: {exc}")

    def revert_all(self) -> RevertReport:
        """Attempt every entry; one failure never stops the rest."""
        report = RevertReport()
        for entry in self.journal.stream_reverse():
            report.add(self.undo(entry))
        return report

    def run(self) -> int:
        _banner(f"{_I.UNDO}  shell-setup --revert")

        if not self.journal.exists():
            _error(f"No journal found at {self.journal.path}")
            print("Nothing to revert.")
            return 1

        entries = self.journal.entries()
        rc_names = (".bashrc", ".zshrc")
        profile_names = (".profile", ".bash_profile", ".zprofile")
        file_entries = [e.file_line()[0].name for e in entries
                        if e.kind is ActionKind.ADDED_TO_FILE]

        _warn("This will attempt to undo all changes made by shell-setup")
        _info(f"{_I.JOURNAL}  Journal: {self.journal.path}")
        print(f"    Total logged changes:  {len(entries)}")
        print(f"    rc file lines:         "
              f"{sum(1 for n in file_entries if n in rc_names)}")
        print(f"    Profile lines:         "
              f"{sum(1 for n in file_entries if n in profile_names)}")
        print()

        if not self.confirm("Are you sure you want to revert? (yes/N): ",
                            word="yes"):
            _info("Revert cancelled.")
            return 0

        report = self.revert_all()
        self._print_summary(report)

        # Archived even after failures.
        try:
            archived = self.journal.archive()
        except OSError as exc:
            _error(f"Could not archive journal {self.journal.path}: {exc}")
            return 1
        _info(f"{_I.ARCHIVE}  Journal archived to: {archived}")
        return 0

    def _print_summary(self, report: RevertReport) -> None:
        _banner(f"{_I.CHECK}  Revert summary")

        print(f"\n  {_C.GREEN}Successfully reverted "
              f"({report.count(Bucket.REVERTED)}):{_C.RESET}")
        for item in report.items[Bucket.REVERTED] or ["(none)"]:
            print(f"    {item}")

        if report.count(Bucket.SKIPPED):
            print(f"\n  {_C.YELLOW}Skipped "
                  f"({report.count(Bucket.SKIPPED)}):{_C.RESET}")
            for item in report.items[Bucket.SKIPPED]:
                print(f"    {item}")

        if report.count(Bucket.FAILED):
            print(f"\n  {_C.RED}Failed "
                  f"({report.count(Bucket.FAILED)}):{_C.RESET}")
            for item in report.items[Bucket.FAILED]:
                print(f"    {item}")
        print()


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="shell-setup",
        description="Set up shell PATH, convenience settings, SSH/GPG keys "
                    "and Git for development, idempotently and revertibly.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""\
examples:
  shell-setup                 # interactive setup, safe to re-run
  shell-setup --light         # PATH, shell settings, Vim; no credentials
  shell-setup --force         # back up keys and rewrite every managed block
  shell-setup --revert        # undo everything in the journal

journal:
  ~/{JOURNAL_RELPATH}
""",
    )
    mode = p.add_mutually_exclusive_group()
    mode.add_argument(
        "--force", action="store_true",
        help="skip prompts, back up existing SSH/GPG keys and regenerate "
             "all managed configuration",
    )
    mode.add_argument(
        "--light", action="store_true",
        help="minimal automated setup: PATH, container support, convenience "
             "settings, Vim and Git default branch only",
    )
    mode.add_argument(
        "--revert", action="store_true",
        help="undo every change recorded in the journal, newest first",
    )
    return p


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    env = detect_environment()

    if args.revert:
        sys.exit(Reverter(env).run())
    sys.exit(ShellSetup(env, force=args.force, light=args.light).run())


if __name__ == "__main__":
    main()
