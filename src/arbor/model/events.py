"""Event payloads emitted through the wire.

Payloads serialize with camelCase keys (``ptyId``, ``exitCode``) because
that is what the UI listeners consume.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from arbor.model.changes import FileChange


class Payload(BaseModel):
    """Base for all wire payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PtyOutput(Payload):
    pty_id: str
    data: str


class PtyReady(Payload):
    pty_id: str
    worktree_id: str


class PtyExit(Payload):
    pty_id: str
    worktree_id: str
    command: str
    exit_code: int | None = None

    def to_wire(self) -> dict:
        # exitCode is always present, even when unknown
        data = super().to_wire()
        data.setdefault("exitCode", None)
        return data


class FilesChanged(Payload):
    worktree_id: str
    worktree_path: str
    files: list[FileChange]


class WorktreeRemoved(Payload):
    worktree_id: str
    worktree_path: str


class MergeComplete(Payload):
    worktree_id: str
    worktree_path: str


class RebaseComplete(Payload):
    worktree_id: str
    worktree_path: str


class ConfigChanged(Payload):
    project_path: str | None = None

    def to_wire(self) -> dict:
        data = super().to_wire()
        data.setdefault("projectPath", None)
        return data


class ShutdownProgress(Payload):
    """Progress of the shutdown cascade; transient, never persisted."""

    phase: str  # "starting", "signaling", "complete"
    message: str
    process_name: str | None = None
    pid: int | None = None
    signal: str | None = None
