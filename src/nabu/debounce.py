"""Debounced filesystem watcher feeding a queue of events."""

from __future__ import annotations

import os
import queue
import threading
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from . import log
from .events import (
    Created,
    FileSystemEvent,
    MetadataChanged,
    Modified,
    NoticeRemove,
    NoticeWrite,
    Removed,
    Renamed,
    from_watchdog,
)


def _stat(path: Path) -> tuple[int, int] | None:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


class DebouncedEventQueue(FileSystemEventHandler):
    """Coalesces changes per path and delivers them after a quiet interval.

    The first write or removal of a path is announced right away with a
    notice event; the real event follows once the path has been quiet for
    delay seconds.

    Watchdog reports attribute changes (chmod, chown) as modifications. The
    last seen (mtime, size) of every known file is kept, and a modification
    that moves neither is held as a metadata change instead.
    """

    def __init__(self, delay: float, events: queue.Queue | None = None):
        super().__init__()
        self.delay = delay
        self.events: queue.Queue = events if events is not None else queue.Queue()
        self._lock = threading.Lock()
        self._pending: dict[Path, FileSystemEvent] = {}
        self._timers: dict[Path, threading.Timer] = {}
        self._stats: dict[Path, tuple[int, int]] = {}
        self._closed = False

    def on_any_event(self, event):
        translated = from_watchdog(event)
        if translated is not None:
            self.push(translated)

    def snapshot(self, directory: Path) -> None:
        """Remember the state of the files directly inside directory."""
        stats = {}
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.is_file(follow_symlinks=False):
                    continue
                path = Path(directory) / entry.name
                stat = _stat(path)
                if stat is not None:
                    stats[path] = stat
        with self._lock:
            self._stats.update(stats)

    def push(self, event: FileSystemEvent) -> None:
        # The file may already be gone; a missing stat counts as a change.
        stat = _stat(event.path) if isinstance(event, (Created, Modified)) else None
        with self._lock:
            if self._closed:
                return
            if isinstance(event, Created):
                self._remember(event.path, stat)
                self._on_created(event)
            elif isinstance(event, Modified):
                previous = self._remember(event.path, stat)
                if stat is not None and stat == previous:
                    self._on_metadata_changed(MetadataChanged(event.path))
                else:
                    self._on_modified(event)
            elif isinstance(event, MetadataChanged):
                self._on_metadata_changed(event)
            elif isinstance(event, Removed):
                self._stats.pop(event.path, None)
                self._on_removed(event)
            elif isinstance(event, Renamed):
                moved = self._stats.pop(event.old_path, None)
                if moved is not None:
                    self._stats[event.new_path] = moved
                self._on_renamed(event)
            else:
                self.events.put(event)

    def _remember(self, path: Path, stat: tuple[int, int] | None) -> tuple[int, int] | None:
        previous = self._stats.get(path)
        if stat is None:
            self._stats.pop(path, None)
        else:
            self._stats[path] = stat
        return previous

    def _on_created(self, event: Created) -> None:
        prev = self._pending.get(event.path)
        if isinstance(prev, (Removed, Modified, MetadataChanged)):
            # Replaced in place.
            self._hold(Modified(event.path))
        else:
            self._hold(event)

    def _on_modified(self, event: Modified) -> None:
        prev = self._pending.get(event.path)
        if prev is None or isinstance(prev, MetadataChanged):
            self.events.put(NoticeWrite(event.path))
            self._hold(event)
        elif isinstance(prev, (Created, Renamed)):
            self._hold(prev, event.path)
        else:
            self._hold(event)

    def _on_metadata_changed(self, event: MetadataChanged) -> None:
        prev = self._pending.get(event.path)
        if prev is None:
            self._hold(event)
        else:
            # Whatever is pending stages the file anyway.
            self._hold(prev, event.path)

    def _on_removed(self, event: Removed) -> None:
        prev = self._pending.get(event.path)
        if isinstance(prev, Created):
            # Never seen by anyone; nothing to record.
            self._drop(event.path)
            return
        if isinstance(prev, Renamed):
            # The new name was never recorded, so the old one is what disappeared.
            self._drop(event.path)
            self._hold(Removed(prev.old_path))
            return
        if not isinstance(prev, Removed):
            self.events.put(NoticeRemove(event.path))
        self._hold(event)

    def _on_renamed(self, event: Renamed) -> None:
        prev = self._pending.get(event.old_path)
        self._drop(event.old_path)
        if isinstance(prev, Created):
            self._hold(Created(event.new_path))
        elif isinstance(prev, Renamed):
            self._hold(Renamed(prev.old_path, event.new_path))
        else:
            self._hold(event)

    def _hold(self, event: FileSystemEvent, path: Path | None = None) -> None:
        if path is None:
            path = event.new_path if isinstance(event, Renamed) else event.path
        self._pending[path] = event
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        timer = threading.Timer(self.delay, self._flush, args=(path,))
        timer.daemon = True
        self._timers[path] = timer
        timer.start()

    def _drop(self, path: Path) -> None:
        self._pending.pop(path, None)
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()

    def _flush(self, path: Path) -> None:
        with self._lock:
            # Runs on the timer thread. A timer replaced while it waited
            # for the lock no longer owns the path.
            if self._timers.get(path) is not threading.current_thread():
                return
            del self._timers[path]
            event = self._pending.pop(path, None)
            if event is not None and not self._closed:
                self.events.put(event)

    def close(self) -> None:
        """Cancel every pending delivery."""
        with self._lock:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending.clear()


class DebouncedWatcher:
    """A watchdog observer whose events arrive debounced on self.events."""

    def __init__(self, delay: float, observer=None):
        self.handler = DebouncedEventQueue(delay)
        self.observer = observer if observer is not None else Observer()
        self.watched: set[Path] = set()

    @property
    def events(self) -> queue.Queue:
        return self.handler.events

    def watch(self, directory: Path) -> None:
        directory = Path(directory)
        if directory in self.watched:
            return
        self.handler.snapshot(directory)
        self.observer.schedule(self.handler, str(directory), recursive=False)
        self.watched.add(directory)
        log.info(f"Adding {directory} to watcher")

    def start(self) -> None:
        self.observer.start()

    def is_alive(self) -> bool:
        return self.observer.is_alive()

    def stop(self) -> None:
        self.handler.close()
        self.observer.stop()
        self.observer.join()
