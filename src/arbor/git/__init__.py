"""Git collaborators: git-dir resolution and changed-file snapshots.

Everything here shells out to the ``git`` binary. Results are treated as
opaque facts about the worktree; nothing is cached.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Protocol

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from arbor.model import FileChange, FileStatus

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git invocation failed."""

    def __init__(self, message: str, stderr: str = "") -> None:
        self.stderr = stderr
        super().__init__(f"{message}: {stderr}" if stderr else message)


class IndexLockedError(GitError):
    """Another git process holds ``index.lock``; worth retrying."""


def resolve_git_dir(path: str) -> str | None:
    """Locate the git metadata directory for a worktree.

    A regular checkout has a ``.git`` directory. A linked worktree has a
    ``.git`` file containing ``gitdir: <path>``; relative targets are
    resolved against the worktree.

    Returns:
        The git dir, or None if ``path`` is not a git checkout.
    """
    git_path = os.path.join(path, ".git")
    if os.path.isdir(git_path):
        return git_path
    if not os.path.isfile(git_path):
        return None

    try:
        with open(git_path) as f:
            content = f.read()
    except OSError as e:
        logger.debug("Could not read %s: %s", git_path, e)
        return None

    for line in content.splitlines():
        if line.startswith("gitdir:"):
            target = line[len("gitdir:"):].strip()
            if not target:
                return None
            if not os.path.isabs(target):
                target = os.path.normpath(os.path.join(path, target))
            return target
    return None


class GitStatusProvider(Protocol):
    """Computes the changed files of a worktree."""

    def changed_files(self, path: str) -> list[FileChange]: ...


@retry(
    retry=retry_if_exception_type(IndexLockedError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _run_git(args: list[str], cwd: str, timeout: float) -> str:
    """Run git and return stdout, retrying while the index is locked."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise GitError(f"git {args[0]} could not run", str(e)) from e

    stderr = result.stderr.decode("utf-8", errors="replace").strip()
    if result.returncode != 0:
        if "index.lock" in stderr:
            raise IndexLockedError(f"git {args[0]} blocked by index.lock", stderr)
        raise GitError(f"git {args[0]} exited {result.returncode}", stderr)
    return result.stdout.decode("utf-8", errors="replace")


def parse_numstat(output: str, stats: dict[str, tuple[int, int]]) -> None:
    """Add ``git diff --numstat`` counts into ``stats`` (binary files count 0)."""
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        insertions = int(parts[0]) if parts[0].isdigit() else 0
        deletions = int(parts[1]) if parts[1].isdigit() else 0
        old_ins, old_del = stats.get(parts[2], (0, 0))
        stats[parts[2]] = (old_ins + insertions, old_del + deletions)


def classify(code: str) -> FileStatus | None:
    """Map a porcelain ``XY`` code to a status; None for entries we skip."""
    if code == "??":
        return FileStatus.UNTRACKED
    if code[0] == "A":
        return FileStatus.ADDED
    if "M" in code or "T" in code:
        return FileStatus.MODIFIED
    if "D" in code:
        return FileStatus.DELETED
    if "R" in code:
        return FileStatus.RENAMED
    return None


def parse_porcelain(output: str) -> list[tuple[str, FileStatus]]:
    """Parse ``git status --porcelain -z`` output into (path, status) pairs."""
    entries: list[tuple[str, FileStatus]] = []
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        entry = fields[i]
        i += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        # Renames and copies carry the source path as the next field
        if code[0] in "RC" or code[1] in "RC":
            i += 1
        status = classify(code)
        if status is not None:
            entries.append((path, status))
    return entries


class GitCli:
    """``GitStatusProvider`` backed by the git command line."""

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    def changed_files(self, path: str) -> list[FileChange]:
        """List changed files with line stats (staged and unstaged summed).

        Raises:
            GitError: ``git status`` failed (not a repo, git missing, ...).
        """
        status_out = _run_git(
            ["status", "--porcelain", "-z", "--untracked-files=all"], path, self._timeout
        )

        stats: dict[str, tuple[int, int]] = {}
        for args in (["diff", "--numstat"], ["diff", "--cached", "--numstat"]):
            try:
                parse_numstat(_run_git(args, path, self._timeout), stats)
            except GitError as e:
                # Line counts are optional; an unborn HEAD has no --cached diff
                logger.debug("git %s failed in %s: %s", " ".join(args), path, e)

        changes = []
        for file_path, status in parse_porcelain(status_out):
            insertions, deletions = stats.get(file_path, (0, 0))
            has_stats = insertions > 0 or deletions > 0
            changes.append(
                FileChange(
                    path=file_path,
                    status=status,
                    insertions=insertions if has_stats else None,
                    deletions=deletions if has_stats else None,
                )
            )
        return changes
