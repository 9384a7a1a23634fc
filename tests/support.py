import io
import os
import subprocess
import tempfile
import unittest
import unittest.mock
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime
from pathlib import Path

import shellsetup

_DEVNULL = open(os.devnull, "w")

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5)


def fixed_clock():
    return FIXED_NOW


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


def git_only(name):
    return "/usr/bin/git" if name == "git" else None


class FakeRun:
    """Stand-in for subprocess.run backed by in-memory git and gpg state."""

    def __init__(self, git=None, gpg_keys=None, fail_git_set=False,
                 fail_gpg_delete=False, generates=None):
        self.git = dict(git or {})
        # key id -> fingerprint
        self.gpg_keys = dict(gpg_keys or {})
        self.fail_git_set = fail_git_set
        self.fail_gpg_delete = fail_gpg_delete
        # (key id, fingerprint) added by `gpg --batch --generate-key`
        self.generates = generates
        self.gpg_input = None
        self.calls = []

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.last_input = kwargs.get("input")
        if cmd[:3] == ["git", "config", "--global"]:
            return self._git(cmd[3:])
        if cmd[:1] == ["gpg"]:
            return self._gpg(cmd[1:])
        return completed()

    def _git(self, args):
        if args[0] == "--unset":
            if args[1] in self.git:
                del self.git[args[1]]
                return completed()
            return completed(5)
        if len(args) == 1:
            if args[0] in self.git:
                return completed(0, self.git[args[0]] + "\n")
            return completed(1)
        if self.fail_git_set:
            return completed(255, stderr="error: could not lock config file")
        self.git[args[0]] = args[1]
        return completed()

    def _gpg(self, args):
        if "--generate-key" in args:
            self.gpg_input = self.last_input
            if self.generates:
                self.gpg_keys[self.generates[0]] = self.generates[1]
            return completed()
        if args[0] == "--list-secret-keys":
            query = args[-1]
            out = ""
            for key_id, fpr in self.gpg_keys.items():
                if query in (key_id, fpr) or "@" in query:
                    out += f"sec:u:4096:1:{key_id}:1700000000:::u:::scESC:::+:::23::0:\n"
                    out += f"fpr:::::::::{fpr}:\n"
            return completed(0 if out else 2, out)
        if args[:2] == ["--batch", "--yes"]:
            if self.fail_gpg_delete:
                return completed(2, stderr="gpg: deleting secret key failed")
            if args[2] == "--delete-keys":
                self.gpg_keys = {k: f for k, f in self.gpg_keys.items()
                                 if args[3] not in (k, f)}
            return completed()
        return completed()


class ShellSetupTestCase(unittest.TestCase):
    """Temp home directory, silenced output, no external tools installed."""

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.home = Path(self._td.name)
        self.env = shellsetup.Environment(
            home=self.home, shell="bash", os_name="Linux", path="/usr/bin",
        )
        self.journal = shellsetup.Journal(self.env.journal_path, fixed_clock)
        self._which = unittest.mock.patch("shellsetup.shutil.which",
                                          return_value=None)
        self._which.start()
        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()
        self._suppress_err = redirect_stderr(_DEVNULL)
        self._suppress_err.__enter__()

    def tearDown(self):
        self._suppress_err.__exit__(None, None, None)
        self._suppress.__exit__(None, None, None)
        self._which.stop()
        self._td.cleanup()

    def make_setup(self, force=False, light=True, answer=True, ask=None,
                   ask_secret=None):
        return shellsetup.ShellSetup(
            self.env, force=force, light=light, journal=self.journal,
            confirm=lambda prompt, **kw: answer,
            ask=ask or (lambda prompt: None),
            ask_secret=ask_secret or (lambda prompt: None),
            clock=fixed_clock,
        )

    def run_full(self, fake, force=False):
        """Default-mode run with *fake* git as the only installed tool."""
        with unittest.mock.patch("shellsetup.shutil.which", side_effect=git_only), \
             unittest.mock.patch("subprocess.run", fake):
            return self.make_setup(force=force, light=False).run()

    def make_reverter(self, answer=True):
        confirm = answer if callable(answer) else (lambda prompt, **kw: answer)
        return shellsetup.Reverter(self.env, journal=self.journal,
                                   confirm=confirm)

    def capture(self, func, *args, **kwargs):
        """Run *func* with stdout captured; returns (output, result)."""
        self._suppress.__exit__(None, None, None)
        buf = io.StringIO()
        try:
            with redirect_stdout(buf):
                result = func(*args, **kwargs)
        finally:
            self._suppress.__enter__()
        return buf.getvalue(), result

    def write(self, name, text):
        path = self.home / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path

    def read(self, name):
        return (self.home / name).read_text()

    def journal_payloads(self, kind):
        return [e.payload for e in self.journal.entries() if e.kind is kind]
