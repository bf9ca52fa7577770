"""Configuration loading, defaults, and merging for nabu."""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from . import log
from .repository import AuthenticationMethod, resolve_authentication

CONFIG_NAME = "nabu.toml"
GLOBAL_CONFIG_PATH = Path.home() / ".config" / CONFIG_NAME

DEFAULT_DELAY = 30
DEFAULT_IGNORE = (".git",)
DEFAULT_PUSH_TIMEOUT = 5

# Seconds the run loop blocks on the event queue before re-checking cancellation.
POLL_INTERVAL = 0.5


class ConfigError(Exception):
    """Invalid configuration or watched directory; raised before watching starts."""


@dataclass(frozen=True)
class Settings:
    """Contents of a nabu.toml document. Every field is optional."""

    delay: int | None = None
    ignore: list[str] | None = None
    push_on_exit: bool | None = None


@dataclass(frozen=True)
class NabuConfig:
    directory: Path
    recursive: bool = False
    dry_run: bool = False
    delay: int = DEFAULT_DELAY
    ignore: frozenset[str] = frozenset(DEFAULT_IGNORE)
    push_on_exit: bool = False
    push_timeout: int = DEFAULT_PUSH_TIMEOUT
    auth: AuthenticationMethod | None = field(default=None, compare=False)

    def __post_init__(self):
        if self.delay <= 0:
            raise ConfigError(f"delay must be a positive number of seconds, got {self.delay}")
        if self.push_timeout <= 0:
            raise ConfigError(
                f"push timeout must be a positive number of seconds, got {self.push_timeout}"
            )
        if self.push_on_exit and self.auth is None:
            raise ConfigError("push on exit requires an authentication method")


def local_config_path(directory: Path) -> Path:
    return Path(directory) / CONFIG_NAME


def parse_settings(raw: dict) -> Settings:
    """Validate a decoded TOML table. Unknown keys are ignored."""
    delay = raw.get("delay")
    if delay is not None and (isinstance(delay, bool) or not isinstance(delay, int)):
        raise ConfigError(f"'delay' must be an integer, got {delay!r}")

    ignore = raw.get("ignore")
    if ignore is not None:
        if not isinstance(ignore, list) or not all(isinstance(i, str) for i in ignore):
            raise ConfigError(f"'ignore' must be a list of strings, got {ignore!r}")

    push_on_exit = raw.get("push_on_exit")
    if push_on_exit is not None and not isinstance(push_on_exit, bool):
        raise ConfigError(f"'push_on_exit' must be a boolean, got {push_on_exit!r}")

    return Settings(delay=delay, ignore=ignore, push_on_exit=push_on_exit)


def read_settings(path: Path) -> Settings:
    """Read and validate one settings file. Raises OSError or ConfigError."""
    log.info(f"Reading config from {path}")
    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e
    return parse_settings(raw)


def load_settings(directory: Path, explicit: Path | None = None) -> Settings | None:
    """Find the settings for a watched directory.

    An explicit path must exist and parse. Otherwise the local file is tried,
    then the global one; a missing file is skipped quietly, a broken one is
    skipped with a warning. Returns None when no file applies.
    """
    if explicit is not None:
        try:
            return read_settings(Path(explicit).expanduser())
        except OSError as e:
            raise ConfigError(f"Cannot read config file {explicit}: {e}") from e

    for path in (local_config_path(directory), GLOBAL_CONFIG_PATH):
        if not path.is_file():
            log.debug(f"No config file at {path}")
            continue
        try:
            return read_settings(path)
        except (OSError, ConfigError) as e:
            log.warn(f"Ignoring unusable config file {path}: {e}")
    return None


def resolve_config(cli_args, settings: Settings | None = None) -> NabuConfig:
    """Merge defaults < settings file < CLI args into a NabuConfig.

    When settings is None the settings file is located and loaded here.
    """
    directory = Path(cli_args.directory).expanduser()
    if not directory.is_dir():
        raise ConfigError(f"Not a directory: {directory}")
    directory = directory.resolve()

    if settings is None:
        settings = load_settings(directory, getattr(cli_args, "config", None))
    if settings is None:
        settings = Settings()

    delay = DEFAULT_DELAY
    ignore = list(DEFAULT_IGNORE)
    push_on_exit = False

    if settings.delay is not None:
        delay = settings.delay
    if settings.ignore is not None:
        ignore = settings.ignore
    if settings.push_on_exit is not None:
        push_on_exit = settings.push_on_exit

    if getattr(cli_args, "delay", None) is not None:
        delay = cli_args.delay
    if getattr(cli_args, "ignore", None):
        ignore = cli_args.ignore
    # The flag can only switch pushing on.
    if getattr(cli_args, "push_on_exit", False):
        push_on_exit = True

    push_timeout = getattr(cli_args, "push_timeout", None)
    if push_timeout is None:
        push_timeout = DEFAULT_PUSH_TIMEOUT

    auth = resolve_authentication(cli_args, required=push_on_exit)

    return NabuConfig(
        directory=directory,
        recursive=bool(getattr(cli_args, "recursive", False)),
        dry_run=bool(getattr(cli_args, "dry_run", False)),
        delay=delay,
        ignore=frozenset(ignore),
        push_on_exit=push_on_exit,
        push_timeout=push_timeout,
        auth=auth,
    )


def default_config_text() -> str:
    ignore_toml = ", ".join(f'"{name}"' for name in DEFAULT_IGNORE)
    config_lines = [
        f"delay = {DEFAULT_DELAY}",
        f"ignore = [{ignore_toml}]",
        "push_on_exit = false",
    ]
    return "\n".join(config_lines) + "\n"


def write_default_config(path: Path) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_config_text())
    return path
