"""Tests for arbor.watcher.base (Watcher loop, debounce, WatcherRegistry)."""

from __future__ import annotations

import queue
import threading
import time

import pytest

from arbor.session.wire import Wire
from arbor.watcher.base import Watcher, WatcherRegistry, WatcherStartError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class QueueWatcher(Watcher):
    """Activity comes from a queue; fires are recorded."""

    kind = "queue"

    def __init__(self, key: str = "k", tick: float = 0.01, debounce: float | None = 0.1, **kwargs) -> None:
        super().__init__(key, Wire(), tick=tick, debounce=debounce, **kwargs)
        self.activity: queue.Queue[str] = queue.Queue()
        self.fired = threading.Event()
        self.stop_after: int | None = None
        self.checks = 0
        self.torn_down = False

    def _poll(self, timeout: float) -> bool:
        try:
            self.activity.get(timeout=timeout)
        except queue.Empty:
            return False
        return True

    def _check(self) -> bool:
        self.checks += 1
        return self.stop_after is not None and self.checks >= self.stop_after

    def _fire(self) -> None:
        self.fired.set()

    def _teardown(self) -> None:
        self.torn_down = True


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------


class TestDebounce:
    def test_trailing_edge(self) -> None:
        clock = FakeClock()
        w = QueueWatcher(debounce=0.1, clock=clock)

        w.notify()
        clock.now = 0.05
        assert not w._due()
        # New activity restarts the quiet period
        w.notify()
        clock.now = 0.14
        assert not w._due()
        clock.now = 0.16
        assert w._due()
        assert not w.pending
        assert not w._due()

    def test_nothing_pending_never_fires(self) -> None:
        clock = FakeClock()
        w = QueueWatcher(debounce=0.1, clock=clock)
        clock.now = 10.0
        assert not w._due()

    def test_no_debounce_never_fires(self) -> None:
        clock = FakeClock()
        w = QueueWatcher(debounce=None, clock=clock)
        w.notify()
        clock.now = 10.0
        assert not w._due()

    def test_burst_coalesces_into_one_fire(self) -> None:
        w = QueueWatcher(tick=0.01, debounce=0.2)
        w.start()
        try:
            for i in range(10):
                w.activity.put(f"event-{i}")
                time.sleep(0.01)
            assert w.fired.wait(2)
            time.sleep(0.3)
            assert w.fire_count == 1

            w.fired.clear()
            w.activity.put("later")
            assert w.fired.wait(2)
            assert w.fire_count == 2
        finally:
            w.cancel()
            w.join(2)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_cancel_is_observed_within_a_tick(self) -> None:
        w = QueueWatcher(tick=0.05)
        w.start()
        assert w.is_alive()
        w.cancel()
        w.join(1)
        assert not w.is_alive()
        assert w.torn_down

    def test_check_stops_the_watcher(self) -> None:
        exited: list[Watcher] = []
        w = QueueWatcher(tick=0.01)
        w.stop_after = 3
        w.start(on_exit=exited.append)
        w.join(2)
        assert not w.is_alive()
        assert exited == [w]
        assert w.torn_down

    def test_fire_errors_do_not_stop_the_watcher(self) -> None:
        class Flaky(QueueWatcher):
            def _fire(self) -> None:
                super()._fire()
                raise RuntimeError("collaborator down")

        w = Flaky(tick=0.01, debounce=0.02)
        w.start()
        try:
            w.activity.put("x")
            assert w.fired.wait(2)
            w.fired.clear()
            w.activity.put("y")
            assert w.fired.wait(2)
            assert w.is_alive()
        finally:
            w.cancel()
            w.join(2)

    def test_setup_failure_ends_quietly(self) -> None:
        class NoSetup(QueueWatcher):
            def _setup(self) -> None:
                raise WatcherStartError("nothing to watch")

        exited: list[Watcher] = []
        w = NoSetup()
        w.start(on_exit=exited.append)
        w.join(2)
        assert exited == [w]
        assert w.torn_down


# ---------------------------------------------------------------------------
# WatcherRegistry
# ---------------------------------------------------------------------------


class TestWatcherRegistry:
    def test_register_is_idempotent(self) -> None:
        registry = WatcherRegistry("test")
        created: list[QueueWatcher] = []

        def factory() -> QueueWatcher:
            w = QueueWatcher("wt-1")
            created.append(w)
            return w

        try:
            assert registry.register("wt-1", factory) is True
            assert registry.register("wt-1", factory) is False
            assert len(created) == 1
            assert len(registry) == 1
        finally:
            registry.cancel_all()

    def test_concurrent_register_starts_one(self) -> None:
        registry = WatcherRegistry("test")
        barrier = threading.Barrier(8)
        results: list[bool] = []

        def call() -> None:
            barrier.wait()
            results.append(registry.register("wt", lambda: QueueWatcher("wt")))

        threads = [threading.Thread(target=call) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        try:
            assert results.count(True) == 1
        finally:
            registry.cancel_all()

    def test_start_error_registers_nothing(self) -> None:
        registry = WatcherRegistry("test")

        def factory() -> Watcher:
            raise WatcherStartError("no marker")

        assert registry.register("wt", factory) is False
        assert "wt" not in registry

    def test_cancel(self) -> None:
        registry = WatcherRegistry("test")
        registry.register("wt", lambda: QueueWatcher("wt", tick=0.01))
        handle = registry.get("wt")
        assert handle is not None

        assert registry.cancel("wt") is True
        assert handle.cancel.is_set()
        handle.watcher.join(1)
        assert not handle.watcher.is_alive()
        assert "wt" not in registry
        assert registry.cancel("wt") is False

    def test_self_terminating_watcher_releases_key(self) -> None:
        registry = WatcherRegistry("test")

        def factory() -> QueueWatcher:
            w = QueueWatcher("wt", tick=0.01)
            w.stop_after = 2
            return w

        registry.register("wt", factory)
        assert _wait_until(lambda: "wt" not in registry)
        # The key is free for a new watcher
        assert registry.register("wt", lambda: QueueWatcher("wt"))
        registry.cancel_all()

    def test_old_watcher_never_evicts_replacement(self) -> None:
        registry = WatcherRegistry("test")
        first = QueueWatcher("wt", tick=0.05)
        second = QueueWatcher("wt", tick=0.05)

        registry.register("wt", lambda: first)
        registry.cancel("wt")
        assert registry.register("wt", lambda: second) is True
        first.join(1)
        assert not first.is_alive()

        handle = registry.get("wt")
        assert handle is not None
        assert handle.watcher is second
        registry.cancel_all()

    def test_cancelled_but_running_watcher_can_be_replaced(self) -> None:
        registry = WatcherRegistry("test")
        registry.register("wt", lambda: QueueWatcher("wt", tick=0.5))
        handle = registry.get("wt")
        assert handle is not None
        handle.cancel.set()
        # Still in the table, but no longer counts as live
        assert registry.register("wt", lambda: QueueWatcher("wt")) is True
        registry.cancel_all()

    def test_cancel_all(self) -> None:
        registry = WatcherRegistry("test")
        for key in ("a", "b", "c"):
            registry.register(key, lambda key=key: QueueWatcher(key))
        watchers = registry.cancel_all()
        assert len(watchers) == 3
        assert len(registry) == 0
        for w in watchers:
            w.join(1)
            assert not w.is_alive()

    @pytest.mark.parametrize("key", ["", "a/b", "global"])
    def test_keys(self, key: str) -> None:
        registry = WatcherRegistry("test")
        registry.register(key, lambda: QueueWatcher(key))
        assert registry.keys() == [key]
        registry.cancel_all()
