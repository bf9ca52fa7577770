"""Console logging: timestamped lines and the push spinner."""

import sys
import threading
import time
from datetime import datetime, timezone

NAME = "nabu"

LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")

_debug = False


def set_debug(enabled: bool) -> None:
    global _debug
    _debug = enabled


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def log(msg: str, level: str = "INFO") -> None:
    if level not in LEVELS:
        raise ValueError(f"unknown log level: {level}")
    if level == "DEBUG" and not _debug:
        return
    stream = sys.stderr if level == "ERROR" else sys.stdout
    print(f"[{utc_now()}] [{NAME}] {level:<5} {msg}", file=stream, flush=True)


def debug(msg: str) -> None:
    log(msg, "DEBUG")


def info(msg: str) -> None:
    log(msg, "INFO")


def warn(msg: str) -> None:
    log(msg, "WARN")


def error(msg: str) -> None:
    log(msg, "ERROR")


class Spinner:
    """Animated spinner with elapsed time for long-running operations.

    Does nothing when stdout is not a terminal, so background runs keep a
    clean log.
    """

    FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, message: str):
        self.message = message
        self._stop = threading.Event()
        self._thread = None

    def _spin(self):
        start = time.monotonic()
        i = 0
        while not self._stop.is_set():
            elapsed = int(time.monotonic() - start)
            m, s = divmod(elapsed, 60)
            frame = self.FRAMES[i % len(self.FRAMES)]
            line = f"\r[{utc_now()}] [{NAME}] {frame} {self.message} ({m}:{s:02d})"
            sys.stdout.write(line)
            sys.stdout.flush()
            i += 1
            self._stop.wait(0.1)
        # Clear the spinner line
        sys.stdout.write("\r" + " " * 80 + "\r")
        sys.stdout.flush()

    def __enter__(self):
        if sys.stdout.isatty():
            self._thread = threading.Thread(target=self._spin, daemon=True)
            self._thread.start()
        return self

    def __exit__(self, *args):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
