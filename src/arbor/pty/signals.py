"""Signal cascade: per-session kill modes and the shutdown-all sequence."""

from __future__ import annotations

import enum
import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from arbor.config import ShutdownConfig
from arbor.pty import process
from arbor.pty.process import PgrepProcessTree, ProcessTree

if TYPE_CHECKING:
    from arbor.pty.registry import CrashRecoveryTable, SessionRegistry
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)


class KillMode(enum.Enum):
    """How hard to stop a session."""

    INTERRUPT = "interrupt"  # SIGINT to the foreground process group
    TERMINATE = "terminate"  # SIGTERM to the tree; cleanup waits for pty-exit
    FORCE_KILL = "force_kill"  # SIGKILL to the tree; cleanup is immediate


@dataclass
class Target:
    """A process picked up for shutdown."""

    pid: int
    name: str | None = None


class SignalCascade:
    """Delivers signals to session process trees.

    Signals are never sent to a process already confirmed dead, and trees
    are always signaled deepest-first so parents cannot respawn children
    that were just stopped.

    Args:
        registry: Live sessions.
        crash_table: Pid list cleared on a clean shutdown.
        wire: Sink for ``shutdown-progress`` events.
        tree: Process tree discovery. Defaults to ``pgrep``.
        config: Grace windows between shutdown tiers.
        send: Signal delivery ``(pid, sig) -> delivered``.
        alive: Liveness probe ``(pid) -> bool``.
        sleep: Waits out a grace window.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        crash_table: CrashRecoveryTable,
        wire: Wire,
        tree: ProcessTree | None = None,
        config: ShutdownConfig | None = None,
        send: Callable[[int, int], bool] = process.send_signal,
        alive: Callable[[int], bool] = process.is_alive,
        sleep: Callable[[float], None] = time.sleep,
        name_of: Callable[[int], str | None] = process.process_name,
        send_group: Callable[[int, int], bool] = process.signal_group,
    ) -> None:
        self._registry = registry
        self._crash_table = crash_table
        self._wire = wire
        self._tree = tree or PgrepProcessTree()
        self._config = config or ShutdownConfig()
        self._send = send
        self._send_group = send_group
        self._alive = alive
        self._sleep = sleep
        self._name_of = name_of
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False

    @property
    def shutdown_started(self) -> bool:
        return self._shutdown_started

    # ------------------------------------------------------------------
    # Per-session
    # ------------------------------------------------------------------

    def kill(self, session_id: str, mode: KillMode) -> bool:
        """Signal one session. Returns False if the session is unknown."""
        session = self._registry.get(session_id)
        if session is None:
            logger.debug("Kill %s on unknown session %s", mode.value, session_id)
            return False

        pid = session.child_pid
        if mode is KillMode.INTERRUPT:
            # The child leads its own process group, so this reaches
            # whatever is in the foreground too.
            if not self._send_group(pid, signal.SIGINT):
                self._signal(pid, signal.SIGINT)
        elif mode is KillMode.TERMINATE:
            self._signal_tree(pid, signal.SIGTERM)
        else:
            self._signal_tree(pid, signal.SIGKILL)
            # The pump still reaps the child and emits pty-exit
            self._registry.remove(session_id)

        logger.info("Sent %s to session %s (pid=%d)", mode.value, session_id, pid)
        return True

    def _signal_tree(self, pid: int, sig: int) -> None:
        for child in process.descendants(self._tree, pid):
            self._signal(child, sig)
        self._signal(pid, sig)

    def _signal(self, pid: int, sig: int) -> bool:
        if not self._alive(pid):
            return False
        return self._send(pid, sig)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown_all(self) -> bool:
        """Stop every session: SIGHUP, then SIGTERM, then SIGKILL.

        Blocks for up to both grace windows. Only the first call does
        anything; concurrent or later calls return immediately.

        Returns:
            True if there were sessions to shut down.
        """
        with self._shutdown_lock:
            if self._shutdown_started:
                logger.debug("Shutdown already in progress")
                return False
            self._shutdown_started = True

        sessions = self._registry.sessions()
        if not sessions:
            self._progress("complete", "Done")
            self._crash_table.delete_file()
            return False

        self._progress("starting", "Cleaning up...")

        targets = self._collect_targets([s.child_pid for s in sessions])
        logger.info("Shutting down %d sessions (%d processes)", len(sessions), len(targets))
        self._progress("signaling", f"Terminating {len(targets)} processes...")

        for target in targets:
            self._signal(target.pid, signal.SIGHUP)
        self._sleep(self._config.hup_grace)

        remaining = self._survivors(targets)
        if remaining:
            for target in remaining:
                self._signal(target.pid, signal.SIGTERM)
            self._sleep(self._config.term_grace)

        remaining = self._survivors(targets)
        if remaining:
            self._progress("signaling", f"Force killing {len(remaining)} processes...")
            for target in remaining:
                if self._signal(target.pid, signal.SIGKILL):
                    self._progress(
                        "signaling",
                        f"Force killed {target.name or target.pid}",
                        process_name=target.name,
                        pid=target.pid,
                        signal="SIGKILL",
                    )

        self._registry.clear()
        self._crash_table.clear()
        self._crash_table.delete_file()
        self._progress("complete", "All processes terminated")
        return True

    def _collect_targets(self, roots: list[int]) -> list[Target]:
        """Live roots and descendants, children before parents, no duplicates."""
        targets: list[Target] = []
        seen: set[int] = set()

        def add(pid: int) -> None:
            if pid in seen or not self._alive(pid):
                return
            seen.add(pid)
            targets.append(Target(pid=pid, name=self._name_of(pid)))

        for root in roots:
            if root <= 0 or not self._alive(root):
                continue
            for child in process.descendants(self._tree, root):
                add(child)
            add(root)
        return targets

    def _survivors(self, targets: list[Target]) -> list[Target]:
        return [t for t in targets if self._alive(t.pid)]

    def _progress(self, phase: str, message: str, **extra) -> None:
        self._wire.send_shutdown_progress(phase, message, **extra)
