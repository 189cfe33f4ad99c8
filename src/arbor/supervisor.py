"""Supervisor: one object owning the PTY manager, the watchers and the wire."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from arbor.config import SupervisorConfig
from arbor.git import GitCli, GitStatusProvider
from arbor.model import FileChange
from arbor.pty import KillMode, PTYManager, ProcessTree, ShellEnvironment
from arbor.session.wire import Wire
from arbor.watcher import WatchService

logger = logging.getLogger(__name__)


class Supervisor:
    """Application facade over sessions and watchers.

    Everything the supervisor does is reported on ``wire``; the methods here
    only start, stop and query.
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        wire: Wire | None = None,
        git: GitStatusProvider | None = None,
        tree: ProcessTree | None = None,
        shell_env: ShellEnvironment | None = None,
        home: str | None = None,
    ) -> None:
        self.config = config or SupervisorConfig()
        self.wire = wire or Wire()
        self.git = git or GitCli()
        self.ptys = PTYManager(self.wire, self.config, shell_env=shell_env, tree=tree)
        self.watchers = WatchService(self.wire, self.git, self.config.watcher, home=home)
        self._shutdown_thread: threading.Thread | None = None

    # -- sessions -------------------------------------------------------

    def spawn(
        self,
        owner_id: str,
        working_dir: str,
        command: str = "shell",
        cols: int = 80,
        rows: int = 24,
        shell: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        return self.ptys.spawn(owner_id, working_dir, command, cols, rows, shell, env)

    def write(self, session_id: str, data: bytes | str) -> None:
        self.ptys.write(session_id, data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        self.ptys.resize(session_id, cols, rows)

    def interrupt(self, session_id: str) -> bool:
        return self.ptys.kill(session_id, KillMode.INTERRUPT)

    def kill(self, session_id: str) -> bool:
        return self.ptys.kill(session_id, KillMode.TERMINATE)

    def force_kill(self, session_id: str) -> bool:
        return self.ptys.kill(session_id, KillMode.FORCE_KILL)

    # -- git ------------------------------------------------------------

    def changed_files(self, worktree_path: str) -> list[FileChange]:
        """On-demand changed-files snapshot. Raises ``GitError`` on failure."""
        return self.git.changed_files(worktree_path)

    # -- shutdown -------------------------------------------------------

    def shutdown(self, on_complete: Callable[[], None] | None = None) -> bool:
        """Start the graceful shutdown in the background.

        Progress streams over the wire as ``shutdown-progress`` events while
        the cascade runs. Watchers are stopped once sessions are down.

        Returns:
            Whether there were live sessions (callers use this to decide
            whether to show shutdown progress at all).
        """
        has_sessions = len(self.ptys) > 0
        logger.info("Starting graceful shutdown (sessions=%s)", has_sessions)

        def _run() -> None:
            try:
                self.ptys.shutdown_all()
                self.watchers.stop_all()
                logger.info("Shutdown complete")
            finally:
                if on_complete is not None:
                    on_complete()

        self._shutdown_thread = threading.Thread(target=_run, name="arbor-shutdown", daemon=True)
        self._shutdown_thread.start()
        return has_sessions

    def wait_shutdown(self, timeout: float | None = None) -> bool:
        """Wait for a background shutdown; True once it has finished."""
        if self._shutdown_thread is None:
            return True
        self._shutdown_thread.join(timeout)
        return not self._shutdown_thread.is_alive()

    def shutdown_blocking(self) -> bool:
        """Shut down on the calling thread. Returns whether there were sessions."""
        had_sessions = self.ptys.shutdown_all()
        self.watchers.stop_all()
        return had_sessions
