"""PTY session management: spawning, output pumping and signal cascades.

Every interactive program (shells, agent CLIs, build tasks) runs on its own
pseudo-terminal in its own session, with a dedicated output pump thread
and crash-recovery tracking of its pid.
"""

from arbor.pty.buffer import Utf8ChunkBuffer
from arbor.pty.errors import ChildSpawnFailed, PtyAllocationFailed, PtyError, SessionNotFound
from arbor.pty.manager import PTYManager
from arbor.pty.process import PgrepProcessTree, ProcessTree
from arbor.pty.registry import CrashRecoveryTable, SessionRegistry
from arbor.pty.session import Session
from arbor.pty.shell import SHELL_SENTINEL, ShellEnvironment
from arbor.pty.signals import KillMode, SignalCascade

__all__ = [
    "ChildSpawnFailed",
    "CrashRecoveryTable",
    "KillMode",
    "PTYManager",
    "PgrepProcessTree",
    "ProcessTree",
    "PtyAllocationFailed",
    "PtyError",
    "SHELL_SENTINEL",
    "Session",
    "SessionNotFound",
    "SessionRegistry",
    "ShellEnvironment",
    "SignalCascade",
    "Utf8ChunkBuffer",
]
