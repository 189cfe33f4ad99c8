"""Merge and rebase state watchers.

Each one starts only while its git marker exists and ends, for good, the
first time the marker is gone. A new merge or rebase needs a new watcher.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from arbor.config import WatcherConfig
from arbor.git import resolve_git_dir
from arbor.watcher.base import Watcher, WatcherStartError

if TYPE_CHECKING:
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)


class GitStateWatcher(Watcher):
    """Polls for the disappearance of a marker inside the git dir."""

    markers: tuple[str, ...] = ()

    def __init__(
        self,
        worktree_id: str,
        worktree_path: str,
        wire: Wire,
        config: WatcherConfig | None = None,
    ) -> None:
        config = config or WatcherConfig()
        super().__init__(worktree_id, wire, tick=config.tick)
        self.worktree_path = worktree_path

        git_dir = resolve_git_dir(worktree_path)
        if git_dir is None:
            raise WatcherStartError(f"No git dir for {worktree_path}")
        self.marker_paths = [os.path.join(git_dir, m) for m in self.markers]
        if not self.in_progress():
            raise WatcherStartError(f"No {' or '.join(self.markers)} in {git_dir}")

        self._poll_interval = config.state_poll
        self._last_poll = self._clock()

    def in_progress(self) -> bool:
        return any(os.path.exists(p) for p in self.marker_paths)

    def _check(self) -> bool:
        now = self._clock()
        if now - self._last_poll < self._poll_interval:
            return False
        self._last_poll = now
        if self.in_progress():
            return False

        logger.info("%s complete for %s", self.kind, self.key)
        self._complete()
        return True

    def _complete(self) -> None:
        raise NotImplementedError


class MergeStateWatcher(GitStateWatcher):
    """Emits ``merge-complete`` once ``MERGE_HEAD`` is gone."""

    kind = "merge"
    markers = ("MERGE_HEAD",)

    def _complete(self) -> None:
        self._wire.send_merge_complete(self.key, self.worktree_path)


class RebaseStateWatcher(GitStateWatcher):
    """Emits ``rebase-complete`` once neither rebase directory exists."""

    kind = "rebase"
    markers = ("rebase-merge", "rebase-apply")

    def _complete(self) -> None:
        self._wire.send_rebase_complete(self.key, self.worktree_path)
