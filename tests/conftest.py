import queue
import shutil
import threading
import time
from pathlib import Path

import pytest

from nabu import config
from nabu.repository import RepositoryError


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def _no_global_config(tmp_path_factory, monkeypatch):
    """Keep the user's ~/.config/nabu.toml out of every test."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setattr(config, "GLOBAL_CONFIG_PATH", home / ".config" / "nabu.toml")


@pytest.fixture
def git_repo(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    from git import Repo

    workdir = tmp_path / "work"
    workdir.mkdir()
    repo = Repo.init(workdir)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Nabu Test")
        cw.set_value("user", "email", "nabu@example.com")
    (workdir / "README.md").write_text("hello\n")
    repo.index.add(["README.md"])
    repo.index.commit("initial commit")
    return repo


class FakeRepository:
    """Records every backend call; stage/commit/push can be made to fail."""

    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()
        self.fail_paths = set()
        self.fail_final = False
        self.push_error = None
        self.push_blocker = None

    def _record(self, *call):
        with self.lock:
            self.calls.append(call)

    def stage(self, path):
        self._record("stage", Path(path))
        if Path(path) in self.fail_paths:
            raise RepositoryError(f"cannot stage {path}")

    def stage_all(self):
        self._record("stage_all")
        if self.fail_final:
            raise RepositoryError("index is locked")

    def commit(self, message):
        self._record("commit", message)

    def push(self, method):
        self._record("push", method)
        if self.push_blocker is not None:
            self.push_blocker.wait()
        if self.push_error is not None:
            raise self.push_error

    def names(self):
        with self.lock:
            return [call[0] for call in self.calls]

    def messages(self):
        with self.lock:
            return [call[1] for call in self.calls if call[0] == "commit"]


class FakeWatcher:
    def __init__(self):
        self.events = queue.Queue()
        self.watched = []
        self.started = False
        self.stopped = False
        self.alive = True

    def watch(self, directory):
        self.watched.append(Path(directory))

    def start(self):
        self.started = True

    def is_alive(self):
        return self.alive

    def stop(self):
        self.stopped = True


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def fake_watcher():
    return FakeWatcher()
