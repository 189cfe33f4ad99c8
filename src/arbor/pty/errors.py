"""Errors raised by the PTY session manager."""

from __future__ import annotations


class PtyError(Exception):
    """Base class for PTY session errors."""


class PtyAllocationFailed(PtyError):
    """The OS could not allocate a pseudo-terminal pair."""


class ChildSpawnFailed(PtyError):
    """The child process could not be started on the PTY."""

    def __init__(self, os_error: OSError, command: str = "") -> None:
        self.os_error = os_error
        self.command = command
        super().__init__(f"Failed to spawn {command!r}: {os_error}")


class SessionNotFound(PtyError):
    """No live session (or handle) exists for the given id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
