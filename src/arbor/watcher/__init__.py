"""Background watchers: worktree files, merge/rebase state, config files.

``WatchService`` keeps one ``WatcherRegistry`` per watcher kind, so a
worktree can have a file watcher and a merge watcher under the same key.
"""

from __future__ import annotations

import logging

from arbor.config import WatcherConfig
from arbor.git import GitCli, GitStatusProvider
from arbor.session.wire import Wire
from arbor.watcher.base import (
    FilesystemWatcher,
    WatchHandle,
    Watcher,
    WatcherRegistry,
    WatcherStartError,
)
from arbor.watcher.config import GLOBAL_KEY, ConfigChangeWatcher, config_paths
from arbor.watcher.files import FileChangeWatcher
from arbor.watcher.state import MergeStateWatcher, RebaseStateWatcher

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigChangeWatcher",
    "FileChangeWatcher",
    "FilesystemWatcher",
    "MergeStateWatcher",
    "RebaseStateWatcher",
    "WatchHandle",
    "WatchService",
    "Watcher",
    "WatcherRegistry",
    "WatcherStartError",
    "config_paths",
]


class WatchService:
    """Starts and stops every kind of watcher.

    Args:
        wire: Sink for watcher events.
        git: Changed-files collaborator for file watchers.
        config: Tick and debounce intervals.
        home: Home directory used to locate the global config.
    """

    def __init__(
        self,
        wire: Wire,
        git: GitStatusProvider | None = None,
        config: WatcherConfig | None = None,
        home: str | None = None,
    ) -> None:
        self._wire = wire
        self._git = git or GitCli()
        self._config = config or WatcherConfig()
        self._home = home
        self.files = WatcherRegistry("files")
        self.merges = WatcherRegistry("merge")
        self.rebases = WatcherRegistry("rebase")
        self.configs = WatcherRegistry("config")

    # -- file changes ---------------------------------------------------

    def watch_worktree(self, worktree_id: str, worktree_path: str) -> bool:
        return self.files.register(
            worktree_id,
            lambda: FileChangeWatcher(
                worktree_id, worktree_path, self._wire, self._git, self._config
            ),
        )

    def stop_watching(self, worktree_id: str) -> bool:
        return self.files.cancel(worktree_id)

    # -- merge / rebase -------------------------------------------------

    def watch_merge_state(self, worktree_id: str, worktree_path: str) -> bool:
        """Watch for the end of an in-progress merge. False if none is in progress."""
        return self.merges.register(
            worktree_id,
            lambda: MergeStateWatcher(worktree_id, worktree_path, self._wire, self._config),
        )

    def stop_merge_watcher(self, worktree_id: str) -> bool:
        return self.merges.cancel(worktree_id)

    def watch_rebase_state(self, worktree_id: str, worktree_path: str) -> bool:
        """Watch for the end of an in-progress rebase. False if none is in progress."""
        return self.rebases.register(
            worktree_id,
            lambda: RebaseStateWatcher(worktree_id, worktree_path, self._wire, self._config),
        )

    def stop_rebase_watcher(self, worktree_id: str) -> bool:
        return self.rebases.cancel(worktree_id)

    # -- config ---------------------------------------------------------

    def watch_config(self, project_path: str | None = None) -> bool:
        return self.configs.register(
            project_path or GLOBAL_KEY,
            lambda: ConfigChangeWatcher(project_path, self._wire, self._config, self._home),
        )

    def stop_config_watcher(self, project_path: str | None = None) -> bool:
        """Stop the config watcher for ``project_path``, or all of them if None."""
        if project_path is None:
            return bool(self.configs.cancel_all())
        return self.configs.cancel(project_path)

    # -- everything -----------------------------------------------------

    def stop_all(self, timeout: float | None = None) -> None:
        """Cancel every watcher; with ``timeout``, wait for their threads."""
        watchers: list[Watcher] = []
        for registry in (self.files, self.merges, self.rebases, self.configs):
            watchers.extend(registry.cancel_all())
        logger.info("Stopped %d watchers", len(watchers))
        if timeout is not None:
            for watcher in watchers:
                watcher.join(timeout)
