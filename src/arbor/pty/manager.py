"""PTY Manager: spawns sessions and routes input, resizes and signals to them."""

from __future__ import annotations

import logging
import os
import pty
import subprocess
import threading
import uuid
from collections import OrderedDict
from typing import Any

from arbor.config import SupervisorConfig
from arbor.pty.errors import ChildSpawnFailed, PtyAllocationFailed, SessionNotFound
from arbor.pty.process import ProcessTree
from arbor.pty.registry import CrashRecoveryTable, SessionRegistry
from arbor.pty.session import (
    MasterHandle,
    OutputPump,
    PtyWriter,
    Session,
    child_setup,
    set_window_size,
)
from arbor.pty.shell import (
    SHELL_SENTINEL,
    ShellEnvironment,
    build_environment,
    describe_argv,
    resolve_command,
)
from arbor.pty.signals import KillMode, SignalCascade
from arbor.session.wire import Wire

logger = logging.getLogger(__name__)

# Exit codes kept for wait() after a pump is released
EXIT_CODE_HISTORY = 256


class PTYManager:
    """Manages the lifecycle of every PTY session.

    The manager ensures:
    - Each spawn gets a fresh session id and its own output pump thread
    - Failed spawns leave nothing behind (no registry entry, no open fds)
    - Writes and resizes go to the live session or raise SessionNotFound
    - Every child pid is tracked for crash recovery until it is reaped
    """

    def __init__(
        self,
        wire: Wire,
        config: SupervisorConfig | None = None,
        shell_env: ShellEnvironment | None = None,
        registry: SessionRegistry | None = None,
        crash_table: CrashRecoveryTable | None = None,
        tree: ProcessTree | None = None,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._wire = wire
        self._shell_env = shell_env or ShellEnvironment(
            login_timeout=self._config.shell.login_timeout
        )
        self._registry = registry or SessionRegistry()
        self._crash_table = crash_table or CrashRecoveryTable(self._config.pid_file)
        self._cascade = SignalCascade(
            self._registry,
            self._crash_table,
            wire,
            tree=tree,
            config=self._config.shutdown,
        )
        self._pumps: dict[str, OutputPump] = {}
        self._exit_codes: OrderedDict[str, int | None] = OrderedDict()
        self._pumps_lock = threading.Lock()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def crash_table(self) -> CrashRecoveryTable:
        return self._crash_table

    @property
    def shell_env(self) -> ShellEnvironment:
        return self._shell_env

    def spawn(
        self,
        owner_id: str,
        working_dir: str,
        command: str = SHELL_SENTINEL,
        cols: int = 80,
        rows: int = 24,
        shell: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """Spawn a child process on a new PTY.

        Args:
            owner_id: Worktree (or task) the session belongs to.
            working_dir: Directory the child starts in.
            command: ``"shell"`` for a login shell, else a command line.
            cols: Initial terminal width.
            rows: Initial terminal height.
            shell: Shell override for this spawn.
            env: Extra environment, applied last.

        Returns:
            The new session id.

        Raises:
            PtyAllocationFailed: No PTY could be allocated.
            ChildSpawnFailed: The child could not be started.
        """
        user_path = self._shell_env.user_path
        argv = resolve_command(command, self._shell_env.shell, user_path, shell)
        child_env = build_environment(
            working_dir, user_path, self._shell_env.environ, overrides=env
        )

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise PtyAllocationFailed(f"Could not allocate a PTY: {e}") from e

        fds = [master_fd]
        try:
            try:
                set_window_size(master_fd, cols, rows)
                proc = subprocess.Popen(
                    argv,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    cwd=working_dir,
                    env=child_env,
                    start_new_session=True,
                    preexec_fn=child_setup,
                )
            except (OSError, subprocess.SubprocessError) as e:
                os_error = e if isinstance(e, OSError) else OSError(str(e))
                raise ChildSpawnFailed(os_error, command) from e
            finally:
                os.close(slave_fd)

            reader_fd = os.dup(master_fd)
            fds.append(reader_fd)
            writer_fd = os.dup(master_fd)
            fds.append(writer_fd)
        except ChildSpawnFailed:
            for fd in fds:
                os.close(fd)
            raise
        except OSError as e:
            # dup failed after the child started; don't leave it running
            for fd in fds:
                os.close(fd)
            proc.kill()
            proc.wait()
            raise ChildSpawnFailed(e, command) from e

        session_id = str(uuid.uuid4())
        session = Session(
            session_id=session_id,
            owner_id=owner_id,
            command=command,
            argv=argv,
            working_dir=working_dir,
            process=proc,
        )

        self._crash_table.add(proc.pid)
        self._registry.add(
            session,
            PtyWriter(session_id, writer_fd),
            MasterHandle(session_id, master_fd),
        )

        pump = OutputPump(
            session,
            reader_fd,
            self._wire,
            self._registry,
            self._crash_table,
            self._config.pump,
            on_exit=self._release_pump,
        )
        with self._pumps_lock:
            self._pumps[session_id] = pump
        pump.start()

        logger.info(
            "Spawned session %s for %s: pid=%d cmd=%s",
            session_id,
            owner_id,
            proc.pid,
            describe_argv(argv),
        )
        return session_id

    def get(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        return self._registry.get(session_id)

    def write(self, session_id: str, data: bytes | str) -> None:
        """Send input to a session's terminal.

        Raises:
            SessionNotFound: The session (or its writer) is gone.
        """
        writer = self._registry.writer(session_id)
        if writer is None:
            raise SessionNotFound(session_id)
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            writer.write(data)
        except OSError as e:
            logger.debug("Write to %s failed: %s", session_id, e)
            raise SessionNotFound(session_id) from e

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Change a session's terminal size.

        Raises:
            SessionNotFound: The session (or its master) is gone.
        """
        master = self._registry.master(session_id)
        if master is None:
            raise SessionNotFound(session_id)
        try:
            master.resize(cols, rows)
        except OSError as e:
            logger.debug("Resize of %s failed: %s", session_id, e)
            raise SessionNotFound(session_id) from e

    def kill(self, session_id: str, mode: KillMode = KillMode.TERMINATE) -> bool:
        """Signal a session. Returns False if no such session exists."""
        return self._cascade.kill(session_id, mode)

    def interrupt(self, session_id: str) -> bool:
        return self.kill(session_id, KillMode.INTERRUPT)

    def force_kill(self, session_id: str) -> bool:
        return self.kill(session_id, KillMode.FORCE_KILL)

    def shutdown_all(self) -> bool:
        """Gracefully stop every session. See ``SignalCascade.shutdown_all``."""
        return self._cascade.shutdown_all()

    def wait(self, session_id: str, timeout: float | None = None) -> int | None:
        """Block until a session has exited; returns its exit code.

        Returns None while the session is still running after ``timeout``,
        or for an id that is unknown (or too old to be remembered).
        """
        with self._pumps_lock:
            pump = self._pumps.get(session_id)
            if pump is None:
                return self._exit_codes.get(session_id)
        pump.join(timeout)
        if pump.is_alive():
            return None
        return pump.exit_code

    def _release_pump(self, pump: OutputPump) -> None:
        """Runs on the pump thread just before ``pty-exit`` is emitted."""
        session_id = pump.session.session_id
        with self._pumps_lock:
            self._pumps.pop(session_id, None)
            self._exit_codes[session_id] = pump.exit_code
            while len(self._exit_codes) > EXIT_CODE_HISTORY:
                self._exit_codes.popitem(last=False)

    def running_pumps(self) -> int:
        """Number of output pumps that have not finished yet."""
        with self._pumps_lock:
            return len(self._pumps)

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all live sessions."""
        return [
            {
                "id": s.session_id,
                "owner": s.owner_id,
                "command": s.command,
                "pid": s.child_pid,
                "cwd": s.working_dir,
                "created_at": s.created_at,
            }
            for s in self._registry.sessions()
        ]

    def __len__(self) -> int:
        return len(self._registry)
