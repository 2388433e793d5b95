"""Debounced change notifications for the state file.

Native notifications come from a watchdog Observer scheduled on the
state file's parent directory, so writers that replace the file via
rename are seen as well as in-place rewrites.  Observer callbacks run on
the observer thread and are handed to the event loop with
``call_soon_threadsafe``; everything else happens on the loop.

Each raw event (re)starts a debounce timer.  When it fires the store is
refreshed and subscribers receive either the new StateSnapshot or the
StateFileError describing why the file could not be decoded.

When the observer cannot be started the watcher polls the file's stat
signature every ``poll_interval`` seconds instead.
"""

import asyncio
import os
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from amux_core.paths import configure_logger
from amux_core.state_store import SessionStateStore, StateFileError

_log = configure_logger("amux.watcher")

DEFAULT_DEBOUNCE = 0.25
DEFAULT_POLL_INTERVAL = 5.0


class _StateFileHandler(FileSystemEventHandler):
    """Forwards events that touch the state file to the watcher's loop."""

    def __init__(self, watcher: "ChangeWatcher", loop: asyncio.AbstractEventLoop):
        self._watcher = watcher
        self._loop = loop
        self._name = watcher.path.name

    def _touches_target(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.basename(os.fsdecode(p)) == self._name for p in paths)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        if not self._touches_target(event):
            return
        try:
            self._loop.call_soon_threadsafe(self._watcher.notify_raw_event)
        except RuntimeError:
            # Loop already closed during shutdown.
            _log.debug("watcher: dropped event after loop close: %s", event)


class ChangeWatcher:
    """Watches one state file and notifies subscribers after each burst of changes."""

    def __init__(
        self,
        store: SessionStateStore,
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        observer_factory: Callable = Observer,
    ) -> None:
        self.store = store
        self.path: Path = store.path
        self.debounce = debounce
        self.poll_interval = poll_interval
        self._observer_factory = observer_factory
        self._subscribers: list[Callable] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer = None
        self._timer: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task | None = None

    # -- subscriptions --------------------------------------------------

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -- lifecycle -------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop is not None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None

    def start(self) -> None:
        """Begin watching.  Must be called from a coroutine on the target loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        try:
            observer = self._observer_factory()
            observer.schedule(_StateFileHandler(self, self._loop),
                              str(self.path.parent), recursive=False)
            observer.start()
        except Exception as e:
            _log.warning("watcher: native watching unavailable for %s (%s), polling every %ss",
                         self.path, e, self.poll_interval)
            self._observer = None
            self._poll_task = self._loop.create_task(self._poll_loop())
            return
        self._observer = observer
        _log.info("watcher: watching %s", self.path)

    def close(self) -> None:
        """Stop watching and cancel every pending timer.  Safe to call twice."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            try:
                observer.join(timeout=1.0)
            except RuntimeError:
                pass  # never started
        if self._loop is not None:
            _log.info("watcher: closed %s", self.path)
        self._loop = None

    # -- events ----------------------------------------------------------

    def notify_raw_event(self) -> None:
        """Restart the debounce window.  Runs on the loop thread."""
        if self._loop is None:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        try:
            result = self.store.refresh()
        except StateFileError as e:
            result = e
        if result is None:
            return
        self._emit(result)

    def _emit(self, result) -> None:
        for callback in list(self._subscribers):
            try:
                callback(result)
            except Exception:
                _log.exception("watcher: subscriber %r failed", callback)

    def _stat_signature(self):
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size, st.st_ino)

    async def _poll_loop(self) -> None:
        last = self._stat_signature()
        while True:
            await asyncio.sleep(self.poll_interval)
            current = self._stat_signature()
            if current is not None and current != last:
                self._fire()
            last = current
