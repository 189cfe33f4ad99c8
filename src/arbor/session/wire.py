"""Wire protocol: decouples the supervisor from whoever renders its events.

Every payload the supervisor produces (PTY output, readiness, exits,
watcher notifications, shutdown progress) goes through one ``Wire``. The
producers are background threads, so the wire is thread-safe: subscribers
are plain ``queue.Queue`` objects, asyncio queues bridged with
``call_soon_threadsafe``, or callbacks. Having no subscribers is fine.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from arbor.model import (
    ConfigChanged,
    FileChange,
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

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    PTY_OUTPUT = "pty-output"
    PTY_READY = "pty-ready"
    PTY_EXIT = "pty-exit"
    FILES_CHANGED = "files-changed"
    WORKTREE_REMOVED = "worktree-removed"
    MERGE_COMPLETE = "merge-complete"
    REBASE_COMPLETE = "rebase-complete"
    CONFIG_CHANGED = "config-changed"
    SHUTDOWN_PROGRESS = "shutdown-progress"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.type.value


Listener = Callable[[WireEvent], None]


class Wire:
    """Thread-safe broadcast bus: supervisor threads -> UI subscribers.

    Multi-producer, multi-consumer. Events from a single producer thread
    reach each subscriber in the order they were sent.
    """

    def __init__(self) -> None:
        self._queues: list[queue.Queue[WireEvent | None]] = []
        self._async_queues: list[
            tuple[asyncio.AbstractEventLoop, asyncio.Queue[WireEvent | None]]
        ] = []
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            queues = list(self._queues)
            async_queues = list(self._async_queues)
            listeners = list(self._listeners)

        for q in queues:
            q.put_nowait(event)
        for loop, aq in async_queues:
            try:
                loop.call_soon_threadsafe(aq.put_nowait, event)
            except RuntimeError:
                # Loop already closed; the subscriber is gone
                logger.debug("Dropping %s for closed event loop", event.name)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Wire listener failed on %s", event.name)

    def emit(self, event_type: EventType, payload: Payload) -> None:
        """Serialize ``payload`` and send it as ``event_type``."""
        self.send(WireEvent(type=event_type, data=payload.to_wire()))

    # ------------------------------------------------------------------
    # Convenience senders
    # ------------------------------------------------------------------

    def send_pty_output(self, pty_id: str, data: str) -> None:
        self.emit(EventType.PTY_OUTPUT, PtyOutput(pty_id=pty_id, data=data))

    def send_pty_ready(self, pty_id: str, worktree_id: str) -> None:
        self.emit(EventType.PTY_READY, PtyReady(pty_id=pty_id, worktree_id=worktree_id))

    def send_pty_exit(
        self,
        pty_id: str,
        worktree_id: str,
        command: str,
        exit_code: int | None,
    ) -> None:
        """Notify subscribers that a PTY session's process has exited."""
        self.emit(
            EventType.PTY_EXIT,
            PtyExit(
                pty_id=pty_id,
                worktree_id=worktree_id,
                command=command,
                exit_code=exit_code,
            ),
        )

    def send_files_changed(
        self, worktree_id: str, worktree_path: str, files: list[FileChange]
    ) -> None:
        self.emit(
            EventType.FILES_CHANGED,
            FilesChanged(worktree_id=worktree_id, worktree_path=worktree_path, files=files),
        )

    def send_worktree_removed(self, worktree_id: str, worktree_path: str) -> None:
        self.emit(
            EventType.WORKTREE_REMOVED,
            WorktreeRemoved(worktree_id=worktree_id, worktree_path=worktree_path),
        )

    def send_merge_complete(self, worktree_id: str, worktree_path: str) -> None:
        self.emit(
            EventType.MERGE_COMPLETE,
            MergeComplete(worktree_id=worktree_id, worktree_path=worktree_path),
        )

    def send_rebase_complete(self, worktree_id: str, worktree_path: str) -> None:
        self.emit(
            EventType.REBASE_COMPLETE,
            RebaseComplete(worktree_id=worktree_id, worktree_path=worktree_path),
        )

    def send_config_changed(self, project_path: str | None) -> None:
        self.emit(EventType.CONFIG_CHANGED, ConfigChanged(project_path=project_path))

    def send_shutdown_progress(
        self,
        phase: str,
        message: str,
        process_name: str | None = None,
        pid: int | None = None,
        signal: str | None = None,
    ) -> None:
        self.emit(
            EventType.SHUTDOWN_PROGRESS,
            ShutdownProgress(
                phase=phase,
                message=message,
                process_name=process_name,
                pid=pid,
                signal=signal,
            ),
        )

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self) -> queue.Queue[WireEvent | None]:
        """Subscribe to events. Returns a thread-safe queue to read from."""
        q: queue.Queue[WireEvent | None] = queue.Queue()
        with self._lock:
            self._queues.append(q)
        return q

    def subscribe_async(
        self, loop: asyncio.AbstractEventLoop | None = None
    ) -> asyncio.Queue[WireEvent | None]:
        """Subscribe from asyncio code.

        Must be called from the asyncio thread (or pass an explicit loop).
        Events sent from supervisor threads are handed to the loop with
        ``call_soon_threadsafe``.
        """
        loop = loop or asyncio.get_running_loop()
        aq: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        with self._lock:
            self._async_queues.append((loop, aq))
        return aq

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked synchronously on the producer thread."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def unsubscribe(self, q: queue.Queue | asyncio.Queue) -> None:
        """Unsubscribe from events."""
        with self._lock:
            if q in self._queues:
                self._queues.remove(q)  # type: ignore[arg-type]
            self._async_queues = [(l, aq) for l, aq in self._async_queues if aq is not q]

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            queues = list(self._queues)
            async_queues = list(self._async_queues)
        for q in queues:
            q.put_nowait(None)
        for loop, aq in async_queues:
            try:
                loop.call_soon_threadsafe(aq.put_nowait, None)
            except RuntimeError:
                pass
