import os
import queue
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent

from nabu.debounce import DebouncedEventQueue, DebouncedWatcher
from nabu.events import (
    Created,
    MetadataChanged,
    Modified,
    NoticeRemove,
    NoticeWrite,
    Removed,
    Renamed,
    Rescan,
)

DELAY = 0.05
A = Path("/w/a.txt")
B = Path("/w/b.txt")


def drain(q, timeout=DELAY * 10):
    """Collect events until the queue has been quiet for a while."""
    events = []
    while True:
        try:
            events.append(q.get(timeout=timeout))
        except queue.Empty:
            return events


def test_write_is_announced_then_delivered():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Modified(A))
    assert debouncer.events.get_nowait() == NoticeWrite(A)
    assert drain(debouncer.events) == [Modified(A)]


def test_repeated_writes_coalesce():
    debouncer = DebouncedEventQueue(DELAY)
    for _ in range(5):
        debouncer.push(Modified(A))
    assert drain(debouncer.events) == [NoticeWrite(A), Modified(A)]


def test_create_then_write_stays_created():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Created(A))
    debouncer.push(Modified(A))
    assert drain(debouncer.events) == [Created(A)]


def test_create_then_remove_vanishes():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Created(A))
    debouncer.push(Removed(A))
    assert drain(debouncer.events) == []


def test_write_then_remove_is_removed():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Modified(A))
    debouncer.push(Removed(A))
    assert drain(debouncer.events) == [NoticeWrite(A), NoticeRemove(A), Removed(A)]


def test_remove_then_create_is_a_write():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Removed(A))
    debouncer.push(Created(A))
    assert drain(debouncer.events) == [NoticeRemove(A), Modified(A)]


def test_rename_of_new_file_is_a_create():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Created(A))
    debouncer.push(Renamed(A, B))
    assert drain(debouncer.events) == [Created(B)]


def test_rename_then_remove_removes_old_name():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Renamed(A, B))
    debouncer.push(Removed(B))
    assert drain(debouncer.events) == [Removed(A)]


def test_paths_are_independent():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Created(A))
    debouncer.push(Created(B))
    assert set(drain(debouncer.events)) == {Created(A), Created(B)}


def test_rescan_passes_straight_through():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Rescan())
    assert debouncer.events.get_nowait() == Rescan()


def test_close_cancels_pending():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.push(Created(A))
    debouncer.close()
    debouncer.push(Created(B))
    assert drain(debouncer.events) == []


def test_watchdog_events_are_translated():
    debouncer = DebouncedEventQueue(DELAY)
    debouncer.dispatch(DirModifiedEvent("/w"))
    debouncer.dispatch(FileModifiedEvent("/w/a.txt"))
    assert drain(debouncer.events) == [NoticeWrite(A), Modified(A)]


def test_watcher_schedules_each_directory_once(tmp_path):
    observer = MagicMock()
    watcher = DebouncedWatcher(DELAY, observer=observer)
    watcher.watch(tmp_path)
    watcher.watch(tmp_path)
    observer.schedule.assert_called_once_with(watcher.handler, str(tmp_path), recursive=False)

    watcher.start()
    watcher.stop()
    observer.start.assert_called_once()
    observer.stop.assert_called_once()
    observer.join.assert_called_once()


class TestMetadataChanges:
    def test_unchanged_content_is_a_metadata_change(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        debouncer = DebouncedEventQueue(DELAY)
        debouncer.snapshot(tmp_path)
        os.chmod(path, 0o600)
        debouncer.push(Modified(path))
        assert drain(debouncer.events) == [MetadataChanged(path)]

    def test_changed_content_is_a_write(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        debouncer = DebouncedEventQueue(DELAY)
        debouncer.snapshot(tmp_path)
        path.write_text("longer")
        debouncer.push(Modified(path))
        assert drain(debouncer.events) == [NoticeWrite(path), Modified(path)]

    def test_write_after_chmod_wins(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        debouncer = DebouncedEventQueue(DELAY)
        debouncer.snapshot(tmp_path)
        debouncer.push(Modified(path))
        path.write_text("longer")
        debouncer.push(Modified(path))
        assert drain(debouncer.events) == [NoticeWrite(path), Modified(path)]

    def test_chmod_after_create_stays_created(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        debouncer = DebouncedEventQueue(DELAY)
        debouncer.push(Created(path))
        debouncer.push(Modified(path))
        assert drain(debouncer.events) == [Created(path)]

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="relies on inotify IN_ATTRIB")
    def test_chmod_under_real_observer(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("x")
        watcher = DebouncedWatcher(DELAY)
        watcher.watch(tmp_path)
        watcher.start()
        try:
            os.chmod(path, 0o600)
            assert drain(watcher.events, timeout=1.0) == [MetadataChanged(path)]
        finally:
            watcher.stop()


def test_timer_that_fired_during_rearm_does_not_deliver_early():
    delay = 0.3
    debouncer = DebouncedEventQueue(delay)
    debouncer.push(Created(A))
    with debouncer._lock:
        # The first timer fires here and blocks on the lock.
        time.sleep(delay * 2)
        debouncer._hold(Modified(A))
        rearmed = time.monotonic()
    assert debouncer.events.get(timeout=delay * 5) == Modified(A)
    assert time.monotonic() - rearmed >= delay * 0.8
    assert drain(debouncer.events) == []
