"""Domain types and wire payloads."""

from arbor.model.changes import FileChange, FileStatus
from arbor.model.events import (
    ConfigChanged,
    FilesChanged,
    MergeComplete,
    Payload,
    PtyExit,
    PtyOutput,
    PtyReady,
    RebaseComplete,
    ShutdownProgress,
    WorktreeRemoved,
)

__all__ = [
    "FileChange",
    "FileStatus",
    "Payload",
    "PtyOutput",
    "PtyReady",
    "PtyExit",
    "FilesChanged",
    "WorktreeRemoved",
    "MergeComplete",
    "RebaseComplete",
    "ConfigChanged",
    "ShutdownProgress",
]
