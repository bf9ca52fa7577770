"""Directory enumeration for the watch set."""

import os
from pathlib import Path
from typing import Iterable

from . import log


def list_subdirs(directory: Path, ignored: Iterable[str]) -> list[Path]:
    """List directory and every directory below it, as resolved paths.

    A directory whose name is in ignored is left out together with its whole
    subtree. Entries that cannot be read are skipped.
    """
    ignored = set(ignored)
    root = Path(directory)
    if root.name in ignored:
        return []

    def on_error(err: OSError) -> None:
        log.debug(f"Skipping {err.filename}: {err.strerror}")

    found: list[Path] = []
    for current, dirnames, _ in os.walk(root, onerror=on_error):
        # Pruning dirnames in place stops os.walk from descending.
        dirnames[:] = [d for d in dirnames if d not in ignored]
        try:
            found.append(Path(current).resolve())
        except OSError as e:
            log.debug(f"Skipping {current}: {e}")
    return found
