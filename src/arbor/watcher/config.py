"""Config-change watcher for the global, repo and local config files."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import watchfiles

from arbor.config import WatcherConfig
from arbor.watcher.base import FilesystemWatcher, WatcherStartError

if TYPE_CHECKING:
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)

APP_DIR = "arbor"
PROJECT_DIR = ".arbor"
CONFIG_FILE = "config.jsonc"
LOCAL_CONFIG_FILE = "config.local.jsonc"

# Registry key for the watcher with no project
GLOBAL_KEY = "global"


def config_paths(project_path: str | None = None, home: str | None = None) -> list[str]:
    """Candidate config files, lowest precedence first.

    - Global: ``~/.config/arbor/config.jsonc``
    - Repo:   ``{project}/.arbor/config.jsonc`` (tracked)
    - Local:  ``{project}/.arbor/config.local.jsonc`` (gitignored)
    """
    home = home or os.path.expanduser("~")
    paths = [os.path.join(home, ".config", APP_DIR, CONFIG_FILE)]
    if project_path:
        paths.append(os.path.join(project_path, PROJECT_DIR, CONFIG_FILE))
        paths.append(os.path.join(project_path, PROJECT_DIR, LOCAL_CONFIG_FILE))
    return paths


def watch_targets(paths: list[str]) -> list[str]:
    """What to hand the OS watch: each file, or its parent dir until it exists."""
    targets: list[str] = []
    for path in paths:
        if os.path.exists(path):
            target = path
        else:
            target = os.path.dirname(path)
            if not os.path.isdir(target):
                continue
        if target not in targets:
            targets.append(target)
    return targets


class ConfigFileFilter:
    """Passes only events whose filename is one of the config file names."""

    def __init__(self, paths: list[str]) -> None:
        self.names = {os.path.basename(p) for p in paths}

    def __call__(self, change: watchfiles.Change, path: str) -> bool:
        return os.path.basename(path) in self.names


class ConfigChangeWatcher(FilesystemWatcher):
    """Emits ``config-changed`` after config edits settle."""

    kind = "config"

    def __init__(
        self,
        project_path: str | None,
        wire: Wire,
        config: WatcherConfig | None = None,
        home: str | None = None,
    ) -> None:
        config = config or WatcherConfig()
        super().__init__(
            project_path or GLOBAL_KEY, wire, tick=config.tick, debounce=config.config_debounce
        )
        self.project_path = project_path
        self.paths = config_paths(project_path, home)
        self.targets = watch_targets(self.paths)
        if not self.targets:
            raise WatcherStartError("None of the config locations exist")
        self._filter = ConfigFileFilter(self.paths)

    def _setup(self) -> None:
        self._open_watch(*self.targets, watch_filter=self._filter, recursive=False)
        logger.debug("Watching %d config locations for %s", len(self.targets), self.key)

    def _fire(self) -> None:
        logger.info("Config changed for %s", self.key)
        self._wire.send_config_changed(self.project_path)

