"""PTY session: handles on the master side and the output pump thread."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import struct
import subprocess
import termios
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from arbor.config import PumpConfig
from arbor.pty.buffer import Utf8ChunkBuffer
from arbor.pty.errors import SessionNotFound

if TYPE_CHECKING:
    from arbor.pty.registry import CrashRecoveryTable, SessionRegistry
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)


def set_window_size(fd: int, cols: int, rows: int) -> None:
    """Set the terminal window size on a PTY fd (``TIOCSWINSZ``)."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def get_window_size(fd: int) -> tuple[int, int]:
    """Return ``(cols, rows)`` for a PTY fd."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return cols, rows


def exit_code_of(returncode: int) -> int:
    """Shell-style exit code: death by signal N is reported as 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class MasterHandle:
    """The master end of a PTY, used for resizing. Owns its fd."""

    def __init__(self, session_id: str, fd: int) -> None:
        self.session_id = session_id
        self._fd = fd
        self._lock = threading.Lock()
        self._closed = False

    def fileno(self) -> int:
        return self._fd

    def resize(self, cols: int, rows: int) -> None:
        with self._lock:
            if self._closed:
                raise SessionNotFound(self.session_id)
            set_window_size(self._fd, cols, rows)

    def size(self) -> tuple[int, int]:
        with self._lock:
            if self._closed:
                raise SessionNotFound(self.session_id)
            return get_window_size(self._fd)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self._fd)
            except OSError:
                pass


class PtyWriter:
    """Serialized writes to a PTY. Owns a duplicate of the master fd."""

    def __init__(self, session_id: str, fd: int) -> None:
        self.session_id = session_id
        self._fd = fd
        self._lock = threading.Lock()
        self._closed = False

    def write(self, data: bytes) -> None:
        """Write all of ``data``; a partial write never interleaves with another."""
        with self._lock:
            if self._closed:
                raise SessionNotFound(self.session_id)
            view = memoryview(data)
            while view:
                written = os.write(self._fd, view)
                view = view[written:]

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self._fd)
            except OSError:
                pass


@dataclass
class Session:
    """A live child process attached to a PTY.

    Entries are created by ``PTYManager.spawn`` and only ever inserted into
    or removed from the registry, never updated.
    """

    session_id: str
    owner_id: str
    command: str
    argv: list[str]
    working_dir: str
    process: subprocess.Popen = field(repr=False)
    created_at: float = field(default_factory=time.time)

    @property
    def child_pid(self) -> int:
        return self.process.pid


class OutputPump(threading.Thread):
    """Reads a session's PTY output and forwards it as UTF-8 text.

    One pump per session. It owns ``reader_fd`` (a duplicate of the master)
    and runs the session's exit path once output ends:

    1. close the reader fd
    2. reap the child and compute its exit code
    3. drop the pid from the crash-recovery table
    4. drop the session from the registry (a no-op after a force kill)
    5. report to ``on_exit`` (the manager drops its reference)
    6. emit ``pty-exit``
    """

    def __init__(
        self,
        session: Session,
        reader_fd: int,
        wire: Wire,
        registry: SessionRegistry,
        crash_table: CrashRecoveryTable,
        config: PumpConfig | None = None,
        on_exit: Callable[[OutputPump], None] | None = None,
    ) -> None:
        super().__init__(name=f"pty-pump-{session.session_id[:8]}", daemon=True)
        self.session = session
        self._fd = reader_fd
        self._wire = wire
        self._registry = registry
        self._crash_table = crash_table
        self._config = config or PumpConfig()
        self._on_exit = on_exit
        self._decoder = Utf8ChunkBuffer()
        self.total_bytes = 0
        self.ready_emitted = False
        self.exit_code: int | None = None

    def run(self) -> None:
        sid = self.session.session_id
        logger.debug("Output pump %s started", sid)
        try:
            self._pump()
        except Exception:
            logger.exception("Output pump %s crashed", sid)
        finally:
            self._finish()

    def _pump(self) -> None:
        cfg = self._config
        sid = self.session.session_id
        empty_reads = 0

        while True:
            try:
                data = os.read(self._fd, cfg.read_size)
            except BlockingIOError:
                time.sleep(cfg.empty_read_sleep)
                continue
            except OSError as e:
                # EIO once every slave fd is closed: the normal Linux EOF
                if e.errno != errno.EIO:
                    logger.debug("Read error on %s: %s", sid, e)
                break

            if not data:
                empty_reads += 1
                if empty_reads > cfg.max_empty_reads:
                    break
                time.sleep(cfg.empty_read_sleep)
                continue

            empty_reads = 0
            self.total_bytes += len(data)

            if not self.ready_emitted and self.total_bytes > cfg.ready_threshold:
                self.ready_emitted = True
                logger.debug("Session %s ready after %d bytes", sid, self.total_bytes)
                self._wire.send_pty_ready(sid, self.session.owner_id)

            text = self._decoder.feed(data)
            if text:
                self._wire.send_pty_output(sid, text)

        logger.debug("Session %s output ended after %d bytes", sid, self.total_bytes)

    def _finish(self) -> None:
        session = self.session
        sid = session.session_id

        tail = self._decoder.flush()
        if tail:
            self._wire.send_pty_output(sid, tail)

        try:
            os.close(self._fd)
        except OSError:
            pass

        try:
            self.exit_code = exit_code_of(session.process.wait())
        except Exception as e:
            logger.warning("Could not reap session %s (pid %d): %s", sid, session.child_pid, e)
            self.exit_code = None

        self._crash_table.remove(session.child_pid)
        self._registry.remove(sid)
        if self._on_exit is not None:
            self._on_exit(self)

        logger.info(
            "Session %s exited (pid=%d code=%s)", sid, session.child_pid, self.exit_code
        )
        self._wire.send_pty_exit(sid, session.owner_id, session.command, self.exit_code)


def child_setup() -> None:
    """Runs in the child after ``setsid()``: adopt the PTY slave as controlling tty."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)
