"""File-change watcher for a worktree root."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import watchfiles
from watchfiles import DefaultFilter

from arbor.config import WatcherConfig
from arbor.watcher.base import FilesystemWatcher, WatcherStartError

if TYPE_CHECKING:
    from arbor.git import GitStatusProvider
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)


class FileChangeWatcher(FilesystemWatcher):
    """Recursively watches a worktree and reports its changed files.

    Bursts of filesystem events (a checkout touching hundreds of files)
    collapse into a single ``files-changed`` after ``file_debounce`` of
    quiet. Independently, every ``existence_interval`` the root is checked;
    if it is gone, one ``worktree-removed`` is emitted and the watcher ends.
    """

    kind = "files"

    def __init__(
        self,
        worktree_id: str,
        worktree_path: str,
        wire: Wire,
        git: GitStatusProvider,
        config: WatcherConfig | None = None,
        watch_filter: watchfiles.BaseFilter | None = None,
    ) -> None:
        if not os.path.isdir(worktree_path):
            raise WatcherStartError(f"{worktree_path} is not a directory")
        config = config or WatcherConfig()
        super().__init__(worktree_id, wire, tick=config.tick, debounce=config.file_debounce)
        self.worktree_path = worktree_path
        self._git = git
        self._existence_interval = config.existence_interval
        self._filter = watch_filter if watch_filter is not None else DefaultFilter()
        self._last_existence_check = self._clock()

    def _setup(self) -> None:
        self._open_watch(self.worktree_path, watch_filter=self._filter, recursive=True)

    def _check(self) -> bool:
        now = self._clock()
        if now - self._last_existence_check < self._existence_interval:
            return False
        self._last_existence_check = now
        if os.path.exists(self.worktree_path):
            return False

        logger.info("Worktree %s removed externally: %s", self.key, self.worktree_path)
        self._wire.send_worktree_removed(self.key, self.worktree_path)
        return True

    def _fire(self) -> None:
        if not os.path.isdir(self.worktree_path):
            return
        try:
            files = self._git.changed_files(self.worktree_path)
        except Exception as e:
            logger.debug("Changed files unavailable for %s: %s", self.worktree_path, e)
            return
        self._wire.send_files_changed(self.key, self.worktree_path, files)
