"""Shell, command and environment resolution for spawned sessions.

GUI-launched supervisors usually start with a minimal ``PATH``, so the
user's real ``PATH`` is taken from their login shell once and reused for
every spawn.
"""

from __future__ import annotations

import logging
import os
import pwd
import re
import shlex
import shutil
import subprocess
import threading
from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Command that means "the user's interactive login shell"
SHELL_SENTINEL = "shell"

DEFAULT_SHELL = "/bin/sh"

# Inherited as-is from the supervisor's environment
INHERITED_VARS = ("HOME", "USER", "SHELL", "LANG", "LC_ALL")
INHERITED_PREFIXES = ("XDG_",)

# Anything that needs a shell to mean what the user typed
_SHELL_SYNTAX = re.compile(r"[|&;<>()$`*?\[\]{}~!\n]")


class ShellEnvironment:
    """The user's shell and login PATH, each discovered once and memoized.

    Args:
        login_timeout: Seconds to wait for the login shell to print PATH.
        environ: Environment to read from. Defaults to ``os.environ``.
    """

    def __init__(
        self,
        login_timeout: float = 5.0,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._login_timeout = login_timeout
        self._environ = environ if environ is not None else os.environ
        self._shell: str | None = None
        self._user_path: str | None = None
        self._shell_lock = threading.Lock()
        self._path_lock = threading.Lock()

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ

    @property
    def shell(self) -> str:
        """The user's shell: ``$SHELL``, the passwd entry, or ``/bin/sh``."""
        with self._shell_lock:
            if self._shell is None:
                self._shell = self._discover_shell()
                logger.debug("Using shell %s", self._shell)
            return self._shell

    @property
    def user_path(self) -> str:
        """PATH as the user's login shell sees it."""
        shell = self.shell
        with self._path_lock:
            if self._user_path is None:
                self._user_path = self._discover_path(shell)
            return self._user_path

    def _discover_shell(self) -> str:
        shell = self._environ.get("SHELL")
        if shell:
            return shell
        try:
            shell = pwd.getpwuid(os.getuid()).pw_shell
        except KeyError:
            shell = ""
        return shell or DEFAULT_SHELL

    def _discover_path(self, shell: str) -> str:
        fallback = self._environ.get("PATH", os.defpath)
        try:
            result = subprocess.run(
                [shell, "-l", "-c", "printenv PATH"],
                capture_output=True,
                text=True,
                timeout=self._login_timeout,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not query login PATH from %s: %s", shell, e)
            return fallback

        if result.returncode != 0:
            logger.warning(
                "Login shell %s exited %d: %s", shell, result.returncode, result.stderr.strip()
            )
            return fallback

        # rc files may print banners before our line; PATH is the last one
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            return fallback
        logger.debug("Login PATH has %d entries", len(lines[-1].split(os.pathsep)))
        return lines[-1]


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_command(
    command: str,
    shell: str,
    user_path: str,
    shell_override: str | None = None,
) -> list[str]:
    """Turn a command string into an argv list.

    Args:
        command: ``"shell"`` for a login shell, else a command line.
        shell: The resolved user shell.
        user_path: PATH used to look up the head token.
        shell_override: Explicit shell for this call. Every non-sentinel
            command then runs as ``[override, "-c", command]``.

    Returns:
        The argv to execute.
    """
    if command == SHELL_SENTINEL:
        return [shell_override or shell, "-l"]
    if shell_override:
        return [shell_override, "-c", command]

    via_shell = [shell, "-c", command]
    stripped = command.strip()
    if not stripped:
        return via_shell

    # A whole command that names a file (possibly quoted, possibly with spaces)
    unquoted = stripped
    if len(unquoted) >= 2 and unquoted[0] == unquoted[-1] and unquoted[0] in "\"'":
        unquoted = unquoted[1:-1]
    if _is_executable(unquoted):
        return [unquoted]

    if _SHELL_SYNTAX.search(stripped):
        return via_shell

    try:
        tokens = shlex.split(stripped)
    except ValueError:
        # Unbalanced quotes; let the shell report it
        return via_shell
    if not tokens:
        return via_shell

    head = tokens[0]
    if os.sep in head:
        if _is_executable(head):
            return tokens
        return via_shell

    found = shutil.which(head, path=user_path)
    if found:
        return [found, *tokens[1:]]
    # Alias, function or builtin
    return via_shell


def build_environment(
    working_dir: str,
    user_path: str,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the child environment from an allow-list of inherited variables.

    ``LC_ALL`` falls back to ``LANG`` when only ``LANG`` is set. Caller
    overrides are applied last.
    """
    environ = environ if environ is not None else os.environ
    env: dict[str, str] = {}

    for name in INHERITED_VARS:
        value = environ.get(name)
        if value is not None:
            env[name] = value
    for name, value in environ.items():
        if name.startswith(INHERITED_PREFIXES):
            env[name] = value
    if "LC_ALL" not in env and "LANG" in env:
        env["LC_ALL"] = env["LANG"]

    env["PATH"] = user_path
    env["TERM"] = "xterm-256color"
    env["COLORTERM"] = "truecolor"
    env["PWD"] = working_dir

    if overrides:
        env.update(overrides)
    return env


def describe_argv(argv: list[str]) -> str:
    """Render an argv list for log lines."""
    return shlex.join(argv)
