"""Changed-file entries reported by the git status collaborator."""

from __future__ import annotations

import enum

from pydantic import BaseModel


class FileStatus(enum.StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNTRACKED = "untracked"


class FileChange(BaseModel):
    """One changed path in a worktree.

    Insertion/deletion counts come from ``git diff --numstat`` and are
    ``None`` when git has no line stats for the path (untracked or binary).
    """

    path: str
    status: FileStatus
    insertions: int | None = None
    deletions: int | None = None
