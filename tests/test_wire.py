"""Tests for arbor.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio
import threading

from arbor.model import FileChange, FileStatus
from arbor.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_event_names(self) -> None:
        expected = {
            "pty-output",
            "pty-ready",
            "pty-exit",
            "files-changed",
            "worktree-removed",
            "merge-complete",
            "rebase-complete",
            "config-changed",
            "shutdown-progress",
        }
        assert {e.value for e in EventType} == expected

    def test_values_are_hyphenated_names(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower().replace("_", "-")


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.PTY_OUTPUT)
        assert event.data == {}
        assert event.name == "pty-output"


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send(WireEvent(type=EventType.PTY_OUTPUT, data={"data": "hi"}))
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.PTY_OUTPUT
        assert event.data["data"] == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_config_changed(None)
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.CONFIG_CHANGED

    def test_no_subscribers_is_fine(self) -> None:
        wire = Wire()
        wire.send_pty_output("p", "nobody listening")

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_pty_output("p", "x")
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise

    def test_listener_called_on_producer_thread(self) -> None:
        wire = Wire()
        seen: list[tuple[str, str]] = []
        wire.add_listener(lambda e: seen.append((e.name, threading.current_thread().name)))

        t = threading.Thread(target=wire.send_pty_ready, args=("p", "w"), name="producer")
        t.start()
        t.join()
        assert seen == [("pty-ready", "producer")]

    def test_failing_listener_does_not_break_others(self) -> None:
        wire = Wire()
        q = wire.subscribe()

        def boom(event: WireEvent) -> None:
            raise RuntimeError("listener bug")

        wire.add_listener(boom)
        wire.send_pty_output("p", "still delivered")
        event = q.get_nowait()
        assert event is not None
        assert event.data["data"] == "still delivered"

    def test_remove_listener(self) -> None:
        wire = Wire()
        seen: list[WireEvent] = []
        wire.add_listener(seen.append)
        wire.remove_listener(seen.append)
        wire.send_pty_output("p", "x")
        assert seen == []

    def test_per_producer_order_preserved(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        for i in range(100):
            wire.send_pty_output("p", str(i))
        received = [q.get_nowait().data["data"] for _ in range(100)]
        assert received == [str(i) for i in range(100)]


# ---------------------------------------------------------------------------
# Wire: asyncio bridge
# ---------------------------------------------------------------------------


class TestWireAsync:
    async def test_events_from_thread_reach_async_queue(self) -> None:
        wire = Wire()
        aq = wire.subscribe_async()

        t = threading.Thread(target=wire.send_pty_output, args=("p", "from thread"))
        t.start()
        t.join()

        event = await asyncio.wait_for(aq.get(), timeout=2)
        assert event is not None
        assert event.data == {"ptyId": "p", "data": "from thread"}

    async def test_close_reaches_async_queue(self) -> None:
        wire = Wire()
        aq = wire.subscribe_async()
        wire.close()
        assert await asyncio.wait_for(aq.get(), timeout=2) is None

    async def test_unsubscribe_async(self) -> None:
        wire = Wire()
        aq = wire.subscribe_async()
        wire.unsubscribe(aq)
        wire.send_pty_output("p", "x")
        await asyncio.sleep(0.01)
        assert aq.empty()


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        assert q.get_nowait() is None
        wire.send_pty_output("p", "too late")
        assert q.empty()

    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_close_idempotent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        wire.close()
        assert q.get_nowait() is None
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: convenience senders and payload shape
# ---------------------------------------------------------------------------


class TestWireConvenience:
    def test_send_pty_exit(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_exit("pty-1", "wt-1", "npm test", exit_code=0)
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.PTY_EXIT
        assert event.data == {
            "ptyId": "pty-1",
            "worktreeId": "wt-1",
            "command": "npm test",
            "exitCode": 0,
        }

    def test_pty_exit_keeps_unknown_exit_code(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_exit("pty-1", "wt-1", "shell", exit_code=None)
        event = q.get_nowait()
        assert event is not None
        assert "exitCode" in event.data
        assert event.data["exitCode"] is None

    def test_send_pty_ready(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_ready("pty-1", "wt-1")
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"ptyId": "pty-1", "worktreeId": "wt-1"}

    def test_send_files_changed(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        files = [
            FileChange(path="a.py", status=FileStatus.MODIFIED, insertions=3, deletions=1),
            FileChange(path="new.txt", status=FileStatus.UNTRACKED),
        ]
        wire.send_files_changed("wt-1", "/repo/wt-1", files)
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.FILES_CHANGED
        assert event.data["worktreePath"] == "/repo/wt-1"
        assert event.data["files"] == [
            {"path": "a.py", "status": "modified", "insertions": 3, "deletions": 1},
            {"path": "new.txt", "status": "untracked"},
        ]

    def test_send_merge_and_rebase_complete(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_merge_complete("wt-1", "/repo/wt-1")
        wire.send_rebase_complete("wt-1", "/repo/wt-1")
        merge = q.get_nowait()
        rebase = q.get_nowait()
        assert merge is not None and rebase is not None
        assert merge.type == EventType.MERGE_COMPLETE
        assert rebase.type == EventType.REBASE_COMPLETE
        assert merge.data == {"worktreeId": "wt-1", "worktreePath": "/repo/wt-1"}

    def test_send_config_changed_without_project(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_config_changed(None)
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"projectPath": None}

    def test_shutdown_progress_omits_absent_fields(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_shutdown_progress("starting", "Cleaning up...")
        wire.send_shutdown_progress(
            "signaling", "Force killed vim", process_name="vim", pid=42, signal="SIGKILL"
        )
        first = q.get_nowait()
        second = q.get_nowait()
        assert first is not None and second is not None
        assert first.data == {"phase": "starting", "message": "Cleaning up..."}
        assert second.data == {
            "phase": "signaling",
            "message": "Force killed vim",
            "processName": "vim",
            "pid": 42,
            "signal": "SIGKILL",
        }

    def test_convenience_methods_respect_closed(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_pty_output("p", "nope")
        wire.send_pty_exit("p", "w", "c", 0)
        wire.send_worktree_removed("w", "/x")
        wire.send_shutdown_progress("complete", "Done")
        assert q.empty()
