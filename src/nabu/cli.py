"""CLI entry point: nabu watch, nabu init."""

import argparse
import signal
import sys
import threading
from pathlib import Path

from . import config, log
from .config import (
    DEFAULT_PUSH_TIMEOUT,
    ConfigError,
    local_config_path,
    resolve_config,
    write_default_config,
)
from .repository import AuthenticationError, RepositoryError
from .watcher import Watch


def install_signal_handlers(cancel: threading.Event) -> None:
    """Make SIGINT and SIGTERM request a graceful shutdown."""

    def request_stop(sig, frame):
        if not cancel.is_set():
            log.info(f"Received {signal.Signals(sig).name}, shutting down")
        cancel.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)


def cmd_watch(args) -> int:
    """Watch a directory and commit every change until interrupted."""
    cancel = threading.Event()
    try:
        cfg = resolve_config(args)
        watch = Watch.from_config(cfg, cancel)
    except (ConfigError, AuthenticationError, RepositoryError) as e:
        log.error(str(e))
        return 1

    mode = " (dry run)" if cfg.dry_run else ""
    log.info(f"Started{mode}: {cfg.directory} (delay={cfg.delay}s)")
    install_signal_handlers(cancel)
    watch.run()
    return 0


def cmd_init(args) -> int:
    """Write a default nabu.toml."""
    if args.global_:
        path = config.GLOBAL_CONFIG_PATH
    else:
        path = local_config_path(Path(args.directory).expanduser())

    if path.exists() and not args.force:
        choice = input(f"  {path} already exists. Overwrite? [y/N]: ").strip().lower()
        if choice not in ("y", "yes"):
            print("  Left unchanged.")
            return 0

    try:
        write_default_config(path)
    except OSError as e:
        log.error(f"Cannot write {path}: {e}")
        return 1
    log.info(f"Config file written to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nabu",
        description="nabu: commit every change in a directory to git",
    )
    parser.add_argument("--debug", action="store_true", help="Print debug information")
    subparsers = parser.add_subparsers(dest="command")

    # nabu init
    init_parser = subparsers.add_parser("init", help="Write a default nabu.toml")
    init_parser.add_argument(
        "--global",
        dest="global_",
        action="store_true",
        help=f"Write the global config file ({config.GLOBAL_CONFIG_PATH})",
    )
    init_parser.add_argument(
        "--directory", type=Path, default=Path("."), help="Directory to write nabu.toml into"
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing file without asking"
    )

    # nabu watch
    watch_parser = subparsers.add_parser("watch", help="Watch over a directory")
    watch_parser.add_argument("directory", type=Path, help="The directory to watch over")
    watch_parser.add_argument(
        "-r", "--recursive", action="store_true", help="Also watch sub-directories"
    )
    watch_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would be committed without touching the repository",
    )
    watch_parser.add_argument("--delay", type=int, default=None, help="Watcher event delay in seconds")
    watch_parser.add_argument(
        "--ignore", nargs="+", default=None, metavar="NAME", help="Directory names to ignore"
    )
    watch_parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Path to the configuration file"
    )
    watch_parser.add_argument(
        "--push-on-exit",
        action="store_true",
        help="Push to the remote on exit (otherwise read from the config)",
    )
    watch_parser.add_argument(
        "--push-timeout",
        type=int,
        default=None,
        help=f"Push timeout in seconds (default: {DEFAULT_PUSH_TIMEOUT})",
    )
    auth = watch_parser.add_mutually_exclusive_group()
    auth.add_argument("--ssh-agent", action="store_true", help="Authenticate with the ssh-agent")
    auth.add_argument("--ssh-key", type=Path, default=None, help="Authenticate with an ssh key")
    auth.add_argument("--username", default=None, help="Authenticate with a username and password")
    watch_parser.add_argument(
        "--ssh-passphrase", default=None, help="Passphrase for the ssh key"
    )
    watch_parser.add_argument(
        "--password", default=None, help="Password for --username (or set NABU_PASSWORD)"
    )
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    log.set_debug(args.debug)

    if args.command == "watch":
        if args.ssh_passphrase is not None and args.ssh_key is None:
            parser.error("--ssh-passphrase requires --ssh-key")
        if args.password is not None and args.username is None:
            parser.error("--password requires --username")
        sys.exit(cmd_watch(args))
    elif args.command == "init":
        sys.exit(cmd_init(args))
    else:
        parser.print_help()
        sys.exit(0)
