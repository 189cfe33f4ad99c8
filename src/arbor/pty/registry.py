"""Session tables and the crash-recovery pid list."""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from arbor.pty.session import MasterHandle, PtyWriter, Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Live sessions plus their writer and master handles.

    The three tables are separate dicts, each behind its own lock, so a
    write to one session never waits on a resize of another. Removal is
    idempotent and closes whatever handles it took out.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._writers: dict[str, PtyWriter] = {}
        self._masters: dict[str, MasterHandle] = {}
        self._sessions_lock = threading.Lock()
        self._writers_lock = threading.Lock()
        self._masters_lock = threading.Lock()

    def add(self, session: Session, writer: PtyWriter, master: MasterHandle) -> None:
        with self._masters_lock:
            self._masters[session.session_id] = master
        with self._writers_lock:
            self._writers[session.session_id] = writer
        with self._sessions_lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def writer(self, session_id: str) -> PtyWriter | None:
        with self._writers_lock:
            return self._writers.get(session_id)

    def master(self, session_id: str) -> MasterHandle | None:
        with self._masters_lock:
            return self._masters.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        """Drop a session from every table. Safe to call more than once."""
        with self._sessions_lock:
            session = self._sessions.pop(session_id, None)
        with self._writers_lock:
            writer = self._writers.pop(session_id, None)
        with self._masters_lock:
            master = self._masters.pop(session_id, None)

        if writer is not None:
            writer.close()
        if master is not None:
            master.close()
        return session

    def sessions(self) -> list[Session]:
        """Snapshot of live sessions."""
        with self._sessions_lock:
            return list(self._sessions.values())

    def session_ids(self) -> list[str]:
        with self._sessions_lock:
            return list(self._sessions)

    def clear(self) -> list[Session]:
        """Remove everything; returns the sessions that were registered."""
        removed = []
        for session_id in self.session_ids():
            session = self.remove(session_id)
            if session is not None:
                removed.append(session)
        # Handles whose session entry was already gone
        with self._writers_lock:
            writers = list(self._writers.values())
            self._writers.clear()
        with self._masters_lock:
            masters = list(self._masters.values())
            self._masters.clear()
        for writer in writers:
            writer.close()
        for master in masters:
            master.close()
        return removed

    def __contains__(self, session_id: object) -> bool:
        with self._sessions_lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)


class CrashRecoveryTable:
    """Pids of live children, consulted after an unclean exit.

    When ``pid_file`` is set, the list is rewritten as JSON on every change
    so an external startup routine can reap leftovers with
    ``load_previous()``.
    """

    def __init__(self, pid_file: str | None = None) -> None:
        self._pid_file = pid_file
        self._pids: list[int] = []
        self._lock = threading.Lock()

    @property
    def pid_file(self) -> str | None:
        return self._pid_file

    def add(self, pid: int) -> None:
        if pid <= 0:
            return
        with self._lock:
            if pid in self._pids:
                return
            self._pids.append(pid)
            self._persist()

    def remove(self, pid: int) -> None:
        with self._lock:
            if pid not in self._pids:
                return
            self._pids.remove(pid)
            self._persist()

    def pids(self) -> list[int]:
        with self._lock:
            return list(self._pids)

    def clear(self) -> None:
        with self._lock:
            self._pids.clear()

    def delete_file(self) -> None:
        """Delete the persisted list (clean shutdown)."""
        if not self._pid_file:
            return
        try:
            os.remove(self._pid_file)
            logger.debug("Removed pid file %s", self._pid_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove pid file %s: %s", self._pid_file, e)

    def _persist(self) -> None:
        # Called with the lock held
        if not self._pid_file:
            return
        tmp = f"{self._pid_file}.tmp"
        try:
            parent = os.path.dirname(self._pid_file)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump({"pids": self._pids}, f)
            os.replace(tmp, self._pid_file)
        except OSError as e:
            logger.warning("Could not write pid file %s: %s", self._pid_file, e)

    @staticmethod
    def load_previous(path: str) -> list[int]:
        """Read the pids left behind by a previous run, if any."""
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable pid file %s: %s", path, e)
            return []

        pids = data.get("pids", []) if isinstance(data, dict) else []
        return [pid for pid in pids if isinstance(pid, int) and pid > 0]
