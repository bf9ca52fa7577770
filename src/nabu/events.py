"""Filesystem events and their translation into commits."""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent as WatchdogEvent,
)


@dataclass(frozen=True)
class Created:
    path: Path


@dataclass(frozen=True)
class Modified:
    path: Path


@dataclass(frozen=True)
class MetadataChanged:
    path: Path


@dataclass(frozen=True)
class Removed:
    path: Path


@dataclass(frozen=True)
class Renamed:
    old_path: Path
    new_path: Path


@dataclass(frozen=True)
class NoticeWrite:
    """A path started changing; the debounced event follows later."""

    path: Path


@dataclass(frozen=True)
class NoticeRemove:
    path: Path


@dataclass(frozen=True)
class Rescan:
    """The watcher may have missed events and the tree should be rescanned."""


@dataclass(frozen=True)
class WatchError:
    message: str
    path: Path | None = None


FileSystemEvent = Union[
    Created,
    Modified,
    MetadataChanged,
    Removed,
    Renamed,
    NoticeWrite,
    NoticeRemove,
    Rescan,
    WatchError,
]


@dataclass(frozen=True)
class CommitRequest:
    path: Path
    message: str


def timestamp() -> datetime:
    return datetime.now(timezone.utc)


def translate(event: FileSystemEvent, now: datetime | None = None) -> CommitRequest | None:
    """Decide what to stage and how to describe it, or None to drop the event."""
    if now is None:
        now = timestamp()

    if isinstance(event, Created):
        # Directories are not tracked as content.
        if Path(event.path).is_dir():
            return None
        return CommitRequest(event.path, f"created file {event.path} @ {now}")
    if isinstance(event, Modified):
        return CommitRequest(event.path, f"written file {event.path} @ {now}")
    if isinstance(event, MetadataChanged):
        return CommitRequest(event.path, f"chmod file {event.path} @ {now}")
    if isinstance(event, Removed):
        return CommitRequest(event.path, f"deleted file {event.path} @ {now}")
    if isinstance(event, Renamed):
        return CommitRequest(
            event.new_path,
            f"renamed file {event.old_path} to {event.new_path} @ {now}",
        )
    return None


def from_watchdog(event: WatchdogEvent) -> FileSystemEvent | None:
    """Map a raw watchdog notification, or None when it carries no change.

    Directory modifications only mean an entry inside changed; the entry
    reports its own event.
    """
    src = Path(_decode(event.src_path))
    if event.event_type == EVENT_TYPE_CREATED:
        return Created(src)
    if event.event_type == EVENT_TYPE_MODIFIED:
        if event.is_directory:
            return None
        return Modified(src)
    if event.event_type == EVENT_TYPE_DELETED:
        return Removed(src)
    if event.event_type == EVENT_TYPE_MOVED:
        return Renamed(src, Path(_decode(event.dest_path)))
    return None


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode(errors="surrogateescape")
    return path
