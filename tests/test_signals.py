"""Tests for arbor.pty.signals (kill modes and the shutdown-all cascade)."""

from __future__ import annotations

import signal
import threading
from dataclasses import dataclass

import pytest

from arbor.config import ShutdownConfig
from arbor.pty.registry import CrashRecoveryTable, SessionRegistry
from arbor.pty.signals import KillMode, SignalCascade
from arbor.session.wire import EventType, Wire


@dataclass
class FakeSession:
    session_id: str
    child_pid: int


class FakeHandle:
    def close(self) -> None:
        pass


class FakeWorld:
    """A process table where each pid dies on the first signal it does not ignore."""

    def __init__(self, edges: dict[int, list[int]], ignores: dict[int, set[int]] | None = None) -> None:
        self.edges = edges
        self.ignores = ignores or {}
        self.alive_pids: set[int] = set(edges) | {c for cs in edges.values() for c in cs}
        self.sent: list[tuple[int, int]] = []
        self.group_sent: list[tuple[int, int]] = []
        self.sleeps: list[float] = []
        self.groups_work = True
        self._lock = threading.Lock()

    def children_of(self, pid: int) -> list[int]:
        if pid not in self.alive_pids:
            return []
        return [c for c in self.edges.get(pid, []) if c in self.alive_pids]

    def alive(self, pid: int) -> bool:
        return pid in self.alive_pids

    def send(self, pid: int, sig: int) -> bool:
        with self._lock:
            if pid not in self.alive_pids:
                return False
            self.sent.append((pid, sig))
            if sig == signal.SIGKILL or sig not in self.ignores.get(pid, set()):
                self.alive_pids.discard(pid)
            return True

    def send_group(self, pid: int, sig: int) -> bool:
        if not self.groups_work or pid not in self.alive_pids:
            return False
        self.group_sent.append((pid, sig))
        return True

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def name_of(self, pid: int) -> str | None:
        return f"proc{pid}"


def _make(
    world: FakeWorld,
    roots: dict[str, int],
    pid_file: str | None = None,
) -> tuple[SignalCascade, SessionRegistry, CrashRecoveryTable, Wire]:
    registry = SessionRegistry()
    crash_table = CrashRecoveryTable(pid_file)
    for session_id, pid in roots.items():
        registry.add(FakeSession(session_id, pid), FakeHandle(), FakeHandle())  # type: ignore[arg-type]
        crash_table.add(pid)
    wire = Wire()
    cascade = SignalCascade(
        registry,
        crash_table,
        wire,
        tree=world,
        config=ShutdownConfig(hup_grace=0.5, term_grace=0.25),
        send=world.send,
        alive=world.alive,
        sleep=world.sleep,
        name_of=world.name_of,
        send_group=world.send_group,
    )
    return cascade, registry, crash_table, wire


def _progress(wire_queue) -> list[dict]:
    events = []
    while not wire_queue.empty():
        event = wire_queue.get_nowait()
        if event is not None and event.type == EventType.SHUTDOWN_PROGRESS:
            events.append(event.data)
    return events


# ---------------------------------------------------------------------------
# Per-session kill modes
# ---------------------------------------------------------------------------


class TestKill:
    def test_unknown_session_returns_false(self) -> None:
        world = FakeWorld({})
        cascade, *_ = _make(world, {})
        assert cascade.kill("nope", KillMode.TERMINATE) is False
        assert world.sent == []

    def test_interrupt_targets_process_group(self) -> None:
        world = FakeWorld({100: [101]})
        cascade, registry, *_ = _make(world, {"s": 100})
        assert cascade.kill("s", KillMode.INTERRUPT) is True
        assert world.group_sent == [(100, signal.SIGINT)]
        assert world.sent == []
        assert "s" in registry

    def test_interrupt_falls_back_to_direct_signal(self) -> None:
        world = FakeWorld({100: []})
        cascade, *_ = _make(world, {"s": 100})
        world.groups_work = False
        cascade.kill("s", KillMode.INTERRUPT)
        assert world.sent == [(100, signal.SIGINT)]

    def test_terminate_signals_deepest_first(self) -> None:
        world = FakeWorld({100: [101, 102], 101: [103]})
        cascade, registry, *_ = _make(world, {"s": 100})
        cascade.kill("s", KillMode.TERMINATE)
        assert world.sent == [
            (103, signal.SIGTERM),
            (101, signal.SIGTERM),
            (102, signal.SIGTERM),
            (100, signal.SIGTERM),
        ]
        # Cleanup waits for the exit event
        assert "s" in registry

    def test_force_kill_removes_session(self) -> None:
        world = FakeWorld({100: [101]})
        cascade, registry, *_ = _make(world, {"s": 100})
        cascade.kill("s", KillMode.FORCE_KILL)
        assert world.sent == [(101, signal.SIGKILL), (100, signal.SIGKILL)]
        assert "s" not in registry
        # A second call finds nothing to do
        assert cascade.kill("s", KillMode.FORCE_KILL) is False

    def test_dead_processes_are_not_signaled(self) -> None:
        world = FakeWorld({100: []})
        cascade, *_ = _make(world, {"s": 100})
        world.alive_pids.clear()
        assert cascade.kill("s", KillMode.TERMINATE) is True
        assert world.sent == []


# ---------------------------------------------------------------------------
# shutdown_all
# ---------------------------------------------------------------------------


class TestShutdownAll:
    def test_no_sessions(self, tmp_path) -> None:
        pid_file = tmp_path / "pids.json"
        pid_file.write_text('{"pids": []}')
        world = FakeWorld({})
        cascade, _, _, wire = _make(world, {}, pid_file=str(pid_file))
        q = wire.subscribe()

        assert cascade.shutdown_all() is False
        assert _progress(q) == [{"phase": "complete", "message": "Done"}]
        assert world.sleeps == []
        assert not pid_file.exists()

    def test_cooperative_processes_stop_on_hup(self) -> None:
        world = FakeWorld({100: [101], 200: []})
        cascade, registry, crash_table, wire = _make(world, {"a": 100, "b": 200})
        q = wire.subscribe()

        assert cascade.shutdown_all() is True
        assert world.sent == [
            (101, signal.SIGHUP),
            (100, signal.SIGHUP),
            (200, signal.SIGHUP),
        ]
        # Nobody survived the HUP, so no TERM window
        assert world.sleeps == [0.5]
        assert len(registry) == 0
        assert crash_table.pids() == []

        phases = [(e["phase"], e["message"]) for e in _progress(q)]
        assert phases == [
            ("starting", "Cleaning up..."),
            ("signaling", "Terminating 3 processes..."),
            ("complete", "All processes terminated"),
        ]

    def test_escalates_to_term_then_kill(self) -> None:
        world = FakeWorld(
            {100: [101, 102]},
            ignores={
                101: {signal.SIGHUP},
                102: {signal.SIGHUP, signal.SIGTERM},
            },
        )
        cascade, registry, _, wire = _make(world, {"s": 100})
        q = wire.subscribe()

        assert cascade.shutdown_all() is True
        assert world.sent == [
            (101, signal.SIGHUP),
            (102, signal.SIGHUP),
            (100, signal.SIGHUP),
            (101, signal.SIGTERM),
            (102, signal.SIGTERM),
            (102, signal.SIGKILL),
        ]
        assert world.sleeps == [0.5, 0.25]
        assert world.alive_pids == set()
        assert len(registry) == 0

        events = _progress(q)
        assert events[2] == {"phase": "signaling", "message": "Force killing 1 processes..."}
        assert events[3] == {
            "phase": "signaling",
            "message": "Force killed proc102",
            "processName": "proc102",
            "pid": 102,
            "signal": "SIGKILL",
        }
        assert events[-1]["phase"] == "complete"

    def test_second_call_is_a_noop(self) -> None:
        world = FakeWorld({100: []})
        cascade, _, _, wire = _make(world, {"s": 100})
        q = wire.subscribe()

        assert cascade.shutdown_all() is True
        assert cascade.shutdown_started
        sent_before = list(world.sent)
        assert cascade.shutdown_all() is False
        assert world.sent == sent_before
        assert [e["phase"] for e in _progress(q)].count("complete") == 1

    def test_concurrent_calls_run_once(self) -> None:
        world = FakeWorld({100: [101], 200: []})
        cascade, _, _, wire = _make(world, {"a": 100, "b": 200})
        q = wire.subscribe()

        barrier = threading.Barrier(4)
        results: list[bool] = []

        def call() -> None:
            barrier.wait()
            results.append(cascade.shutdown_all())

        threads = [threading.Thread(target=call) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(results) == [False, False, False, True]
        assert [e["phase"] for e in _progress(q)].count("complete") == 1
        assert world.sent.count((100, signal.SIGHUP)) == 1

    def test_already_dead_roots_are_skipped(self) -> None:
        world = FakeWorld({100: [], 200: []})
        cascade, registry, *_ = _make(world, {"a": 100, "b": 200})
        world.alive_pids.discard(100)

        cascade.shutdown_all()
        assert world.sent == [(200, signal.SIGHUP)]
        assert len(registry) == 0

    @pytest.mark.parametrize("mode", [KillMode.TERMINATE, KillMode.FORCE_KILL])
    def test_kill_after_shutdown_finds_nothing(self, mode: KillMode) -> None:
        world = FakeWorld({100: []})
        cascade, *_ = _make(world, {"s": 100})
        cascade.shutdown_all()
        assert cascade.kill("s", mode) is False
