"""Watcher base class and the per-kind watcher registry.

Every watcher is a daemon thread with the same loop:

    while not cancelled:
        activity = _poll(tick)      # blocks at most one tick
        if activity: mark pending
        if _check(): stop           # self-termination (marker gone, root deleted)
        if pending and quiet for `debounce`: _fire()

The cancel ``threading.Event`` is both the stop signal and the tick clock,
so a cancel is observed within one tick.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from collections.abc import Generator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import watchfiles

if TYPE_CHECKING:
    from arbor.session.wire import Wire

logger = logging.getLogger(__name__)


class WatcherStartError(Exception):
    """The watcher cannot start (missing path, no marker, no OS watch)."""


class Watcher(abc.ABC):
    """A cancellable background poller with trailing-edge debounce.

    Subclasses override the hooks they need:

    - ``_setup()``: acquire OS resources; raise ``WatcherStartError`` on failure
    - ``_poll(timeout)``: wait up to ``timeout`` and report activity
    - ``_check()``: return True to stop the watcher
    - ``_fire()``: emit the debounced notification
    - ``_teardown()``: release resources (always runs)

    Args:
        key: Registry key (worktree id, project path, ...).
        wire: Event sink.
        tick: Poll interval in seconds.
        debounce: Quiet period before ``_fire()``; None disables firing.
        clock: Monotonic clock, replaceable in tests.
    """

    kind: str = "watcher"

    def __init__(
        self,
        key: str,
        wire: Wire,
        tick: float = 0.1,
        debounce: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self._wire = wire
        self._tick = tick
        self._debounce = debounce
        self._clock = clock
        self.cancel_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._activity_lock = threading.Lock()
        self._pending = False
        self._last_activity = 0.0
        self._on_exit: Callable[[Watcher], None] | None = None
        self.fire_count = 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, on_exit: Callable[[Watcher], None] | None = None) -> None:
        """Start the watcher thread. ``on_exit`` runs on the thread as it ends."""
        self._on_exit = on_exit
        self._thread = threading.Thread(
            target=self.run, name=f"{self.kind}-watcher-{self.key}", daemon=True
        )
        self._thread.start()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def notify(self) -> None:
        """Record activity now; restarts the quiet period."""
        with self._activity_lock:
            self._pending = True
            self._last_activity = self._clock()

    @property
    def pending(self) -> bool:
        with self._activity_lock:
            return self._pending

    def run(self) -> None:
        logger.debug("Starting %s", self)
        try:
            self._setup()
            while not self.cancelled:
                if self._poll(self._tick):
                    self.notify()
                if self.cancelled:
                    break
                if self._check():
                    logger.debug("%s finished on its own", self)
                    break
                if self._due():
                    self._fire_safely()
        except WatcherStartError as e:
            logger.warning("%s could not start: %s", self, e)
        except Exception:
            logger.exception("%s crashed", self)
        finally:
            try:
                self._teardown()
            except Exception:
                logger.exception("%s teardown failed", self)
            logger.debug("Stopped %s", self)
            if self._on_exit is not None:
                self._on_exit(self)

    def _due(self) -> bool:
        if self._debounce is None:
            return False
        with self._activity_lock:
            if not self._pending:
                return False
            if self._clock() - self._last_activity < self._debounce:
                return False
            self._pending = False
            return True

    def _fire_safely(self) -> None:
        self.fire_count += 1
        try:
            self._fire()
        except Exception:
            logger.exception("%s failed to fire", self)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _setup(self) -> None:
        pass

    def _poll(self, timeout: float) -> bool:
        self.cancel_event.wait(timeout)
        return False

    def _check(self) -> bool:
        return False

    def _fire(self) -> None:
        pass

    def _teardown(self) -> None:
        pass


@dataclass
class WatchHandle:
    """A registered watcher and its cancel event."""

    key: str
    cancel: threading.Event
    watcher: Watcher


class WatcherRegistry:
    """At most one live watcher per key.

    A watcher that ends on its own removes its key, but only while the
    registry still maps that key to it (a replacement is never evicted).
    """

    def __init__(self, name: str = "watchers") -> None:
        self.name = name
        self._handles: dict[str, WatchHandle] = {}
        self._lock = threading.Lock()

    def register(self, key: str, factory: Callable[[], Watcher]) -> bool:
        """Start ``factory()`` under ``key`` unless a live watcher already has it.

        The membership check and the thread start happen under one lock.

        Returns:
            True if a new watcher was started.
        """
        with self._lock:
            existing = self._handles.get(key)
            if existing is not None and self._is_live(existing):
                logger.debug("%s: %s already watched", self.name, key)
                return False

            try:
                watcher = factory()
            except WatcherStartError as e:
                logger.info("%s: not watching %s: %s", self.name, key, e)
                self._handles.pop(key, None)
                return False

            handle = WatchHandle(key=key, cancel=watcher.cancel_event, watcher=watcher)
            self._handles[key] = handle
            watcher.start(on_exit=self._release)

        logger.info("%s: watching %s", self.name, key)
        return True

    def cancel(self, key: str) -> bool:
        """Stop the watcher for ``key``. Returns False if there was none."""
        with self._lock:
            handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel.set()
        logger.debug("%s: cancelled %s", self.name, key)
        return True

    def cancel_all(self) -> list[Watcher]:
        """Stop every watcher; returns them so callers may join."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.cancel.set()
        return [h.watcher for h in handles]

    def get(self, key: str) -> WatchHandle | None:
        with self._lock:
            return self._handles.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def _release(self, watcher: Watcher) -> None:
        with self._lock:
            handle = self._handles.get(watcher.key)
            if handle is not None and handle.watcher is watcher:
                del self._handles[watcher.key]

    @staticmethod
    def _is_live(handle: WatchHandle) -> bool:
        return not handle.cancel.is_set() and handle.watcher.is_alive()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class FilesystemWatcher(Watcher):
    """A watcher whose activity comes from a ``watchfiles`` OS watch.

    Each ``watchfiles.watch`` step returns within one tick (an empty set on
    timeout) and ends as soon as the cancel event is set. The generator is
    lazy, so ``_open_watch`` takes the first step itself: a watch that
    cannot be established fails the start instead of leaving an idle thread.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._changes: Generator[set[tuple[watchfiles.Change, str]], None, None] | None = None

    def _open_watch(
        self,
        *paths: str,
        watch_filter: Callable[[watchfiles.Change, str], bool] | None,
        recursive: bool,
    ) -> None:
        """Open the OS watch on ``paths``.

        Raises:
            WatcherStartError: The OS refused the watch (path gone, no inotify slots).
        """
        tick_ms = max(1, int(self._tick * 1000))
        changes = watchfiles.watch(
            *paths,
            watch_filter=watch_filter,
            debounce=tick_ms,
            step=min(50, tick_ms),
            rust_timeout=tick_ms,
            yield_on_timeout=True,
            stop_event=self.cancel_event,
            recursive=recursive,
            raise_interrupt=False,
        )
        try:
            first = next(changes)
        except StopIteration:
            if self.cancelled:
                return
            raise WatcherStartError("OS watch ended before its first step") from None
        except (OSError, RuntimeError) as e:
            changes.close()
            raise WatcherStartError(f"Could not watch {', '.join(paths)}: {e}") from e
        self._changes = changes
        if first:
            self.notify()

    def _poll(self, timeout: float) -> bool:
        if self._changes is None:
            return super()._poll(timeout)
        try:
            changes = next(self._changes)
        except StopIteration:
            # Stopped by the cancel event
            self._changes = None
            return False
        except (OSError, RuntimeError) as e:
            # Lost after a successful start; keep ticking without it
            logger.debug("%s lost its OS watch: %s", self, e)
            self._changes = None
            return False
        if changes:
            logger.debug("%s saw %d changes", self, len(changes))
        return bool(changes)

    def _teardown(self) -> None:
        if self._changes is not None:
            self._changes.close()
            self._changes = None
