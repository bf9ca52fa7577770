"""The watch loop: turns filesystem events into commits until cancelled."""

import enum
import queue
import threading
from pathlib import Path
from typing import Iterable

from .config import DEFAULT_PUSH_TIMEOUT, POLL_INTERVAL, NabuConfig
from .debounce import DebouncedWatcher
from .events import Created, FileSystemEvent, Rescan, WatchError, timestamp, translate
from .fs import list_subdirs
from .log import Spinner, debug, error, info, warn
from .repository import (
    AuthenticationMethod,
    DummyRepository,
    Repository,
    RepositoryError,
    WatchedRepository,
)


class RunState(enum.Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting down"
    TERMINATED = "terminated"


class Watch:
    """Owns the repository while watching and hands it to the push on exit.

    cancel is set once, from outside (normally a signal handler), and is
    only read here.
    """

    def __init__(
        self,
        repo: Repository,
        cancel: threading.Event,
        watchlist: Iterable[Path],
        delay: float,
        push_on_exit: bool = False,
        push_timeout: float = DEFAULT_PUSH_TIMEOUT,
        auth: AuthenticationMethod | None = None,
        *,
        root: Path | None = None,
        recursive: bool = False,
        ignore: Iterable[str] = (),
        watcher=None,
        poll_interval: float = POLL_INTERVAL,
    ):
        if push_on_exit and auth is None:
            raise ValueError("push_on_exit requires an authentication method")
        self.repo = repo
        self.cancel = cancel
        self.watchlist = [Path(d) for d in watchlist]
        self.delay = delay
        self.push_on_exit = push_on_exit
        self.push_timeout = push_timeout
        self.auth = auth
        self.root = Path(root) if root is not None else None
        self.recursive = recursive
        self.ignore = frozenset(ignore)
        self.watcher = watcher if watcher is not None else DebouncedWatcher(delay)
        self.poll_interval = poll_interval
        self.state = RunState.RUNNING
        self._disconnected = False

    @classmethod
    def from_config(cls, cfg: NabuConfig, cancel: threading.Event, repo: Repository | None = None):
        if repo is None:
            repo = DummyRepository() if cfg.dry_run else WatchedRepository(cfg.directory)
        if cfg.recursive:
            watchlist = list_subdirs(cfg.directory, cfg.ignore)
        else:
            watchlist = [cfg.directory]
        return cls(
            repo,
            cancel,
            watchlist,
            cfg.delay,
            cfg.push_on_exit,
            cfg.push_timeout,
            cfg.auth,
            root=cfg.directory,
            recursive=cfg.recursive,
            ignore=cfg.ignore,
        )

    @property
    def events(self) -> queue.Queue:
        return self.watcher.events

    def run(self) -> RunState:
        self._watch_all(self.watchlist)
        debug(f"Watching over {[str(d) for d in self.watchlist]}")
        self.watcher.start()
        try:
            self._loop()
        finally:
            self.watcher.stop()
        self._shutdown()
        return self.state

    def _loop(self) -> None:
        while not self.cancel.is_set():
            try:
                event = self.events.get(timeout=self.poll_interval)
            except queue.Empty:
                self._check_watcher()
                continue
            self.handle_event(event)

    def _check_watcher(self) -> None:
        if self._disconnected or self.watcher.is_alive():
            return
        self._disconnected = True
        error("Watcher stopped delivering events; waiting for termination signal.")

    def handle_event(self, event: FileSystemEvent) -> None:
        debug(f"Event received: {event!r}")
        if isinstance(event, WatchError):
            where = f" ({event.path})" if event.path is not None else ""
            error(f"Watcher error{where}: {event.message}")
            return
        if isinstance(event, Rescan):
            warn("Watcher asked for a rescan, committing the whole tree.")
            self._commit_all(f"rescanned tree @ {timestamp()}")
            return
        if self._ignored(event):
            debug(f"Ignoring {event!r}")
            return
        if isinstance(event, Created) and self.recursive and Path(event.path).is_dir():
            self._subscribe(Path(event.path))

        request = translate(event)
        if request is None:
            return
        info(f"Commit with message: {request.message}")
        try:
            self.repo.stage(request.path)
            self.repo.commit(request.message)
        except RepositoryError as e:
            # The next successful commit stages the current file state anyway.
            error(f"Dropped change to {request.path}: {e}")

    def _ignored(self, event: FileSystemEvent) -> bool:
        paths = [getattr(event, name) for name in ("path", "new_path") if hasattr(event, name)]
        for path in paths:
            path = Path(path)
            if self.root is not None:
                try:
                    path = path.relative_to(self.root)
                except ValueError:
                    pass
            if self.ignore.intersection(path.parts):
                return True
        return False

    def _subscribe(self, directory: Path) -> None:
        self._watch_all(list_subdirs(directory, self.ignore))

    def _watch_all(self, directories: Iterable[Path]) -> None:
        for directory in directories:
            try:
                self.watcher.watch(directory)
            except OSError as e:
                warn(f"Cannot watch {directory}: {e}")

    def _commit_all(self, message: str) -> bool:
        try:
            self.repo.stage_all()
            info("Staged changes.")
            self.repo.commit(message)
            info("Committed changes.")
        except RepositoryError as e:
            error(f"Could not save changes: {e}")
            return False
        return True

    def _shutdown(self) -> None:
        self.state = RunState.SHUTTING_DOWN
        info("Termination signal received, attempting to save changes.")
        self._commit_all(f"exited snapshot @ {timestamp()}")
        if self.push_on_exit:
            self._push()
        self.state = RunState.TERMINATED

    def _push(self) -> bool:
        """Push from a background thread, waiting at most push_timeout seconds.

        A push still running at the timeout is abandoned; its thread is a
        daemon and dies with the process.
        """
        done = threading.Event()
        # Hand the repository over; nothing here touches it after this point.
        repo, self.repo = self.repo, None
        auth = self.auth

        def push():
            try:
                repo.push(auth)
                info("Successfully pushed to remote.")
            except RepositoryError as e:
                warn(f"Push failed: {e}")
            finally:
                done.set()

        threading.Thread(target=push, name="nabu-push", daemon=True).start()
        with Spinner("Pushing to remote"):
            finished = done.wait(self.push_timeout)
        if not finished:
            warn("Timeout while pushing, cleaning up now.")
        return finished
