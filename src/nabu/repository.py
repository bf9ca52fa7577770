"""Repository backends and push authentication."""

from __future__ import annotations

import os
import shlex
import stat
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Protocol, Union

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, PushInfo, Repo
from git.exc import CacheError

from . import log

DEFAULT_REMOTE = "origin"

# Set by a running ssh-agent.
AGENT_ENV_VARS = ("SSH_AGENT_PID", "SSH_AUTH_SOCK")

PASSWORD_ENV_VAR = "NABU_PASSWORD"

PUSH_FAILED = PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE

ASKPASS_SCRIPT = """#!/bin/sh
case "$1" in
    Username*) printf '%s\\n' "$NABU_ASKPASS_USERNAME" ;;
    *) printf '%s\\n' "$NABU_ASKPASS_SECRET" ;;
esac
"""


@dataclass(frozen=True)
class SshAgent:
    pass


@dataclass(frozen=True)
class SshKey:
    path: Path
    passphrase: str = field(default="", repr=False)


@dataclass(frozen=True)
class UsernamePassword:
    username: str
    password: str = field(repr=False)


AuthenticationMethod = Union[SshAgent, SshKey, UsernamePassword]


class AuthenticationError(Exception):
    """No usable authentication method; raised before watching starts."""


class KeyNotFoundError(AuthenticationError, FileNotFoundError):
    pass


class RepositoryError(Exception):
    pass


class PushError(RepositoryError):
    pass


def resolve_authentication(cli_args, required: bool = False) -> AuthenticationMethod | None:
    """Pick the authentication method selected on the command line.

    Tried in order: ssh-agent, ssh key, username and password. When nothing
    resolves, returns None, or raises if a method is required.
    """
    if getattr(cli_args, "ssh_agent", False):
        if not any(os.environ.get(var) for var in AGENT_ENV_VARS):
            log.warn("ssh-agent is not running.")
        return SshAgent()

    key = getattr(cli_args, "ssh_key", None)
    if key is not None:
        key = Path(key).expanduser()
        if not key.exists():
            raise KeyNotFoundError(f"provided key does not exist: {key}")
        return SshKey(key, getattr(cli_args, "ssh_passphrase", None) or "")

    username = getattr(cli_args, "username", None)
    password = getattr(cli_args, "password", None) or os.environ.get(PASSWORD_ENV_VAR)
    if username and password:
        return UsernamePassword(username, password)

    if required:
        if username:
            raise AuthenticationError(
                f"no password for {username}: pass --password or set {PASSWORD_ENV_VAR}"
            )
        raise AuthenticationError(
            "pushing on exit needs --ssh-agent, --ssh-key or --username"
        )
    return None


@contextmanager
def _askpass() -> Iterator[str]:
    """Write a throwaway askpass helper; the secrets travel in the environment."""
    fd, script = tempfile.mkstemp(prefix="nabu-askpass-", suffix=".sh")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(ASKPASS_SCRIPT)
        os.chmod(script, stat.S_IRWXU)
        yield script
    finally:
        os.unlink(script)


@contextmanager
def _agent_credentials(method: SshAgent) -> Iterator[dict[str, str]]:
    # ssh finds the agent through the inherited environment.
    yield {}


@contextmanager
def _key_credentials(method: SshKey) -> Iterator[dict[str, str]]:
    env = {
        "GIT_SSH_COMMAND": f"ssh -i {shlex.quote(str(method.path))} -o IdentitiesOnly=yes",
    }
    if not method.passphrase:
        yield env
        return
    with _askpass() as script:
        env.update(
            SSH_ASKPASS=script,
            SSH_ASKPASS_REQUIRE="force",
            DISPLAY=os.environ.get("DISPLAY", ":0"),
            NABU_ASKPASS_SECRET=method.passphrase,
        )
        yield env


@contextmanager
def _password_credentials(method: UsernamePassword) -> Iterator[dict[str, str]]:
    with _askpass() as script:
        yield {
            "GIT_ASKPASS": script,
            "GIT_TERMINAL_PROMPT": "0",
            "NABU_ASKPASS_USERNAME": method.username,
            "NABU_ASKPASS_SECRET": method.password,
        }


_CREDENTIAL_PROVIDERS: dict[type, Callable[..., ContextManager[dict[str, str]]]] = {
    SshAgent: _agent_credentials,
    SshKey: _key_credentials,
    UsernamePassword: _password_credentials,
}


def credential_provider(method: AuthenticationMethod) -> ContextManager[dict[str, str]]:
    """Return a context manager yielding the git environment for method."""
    try:
        provider = _CREDENTIAL_PROVIDERS[type(method)]
    except KeyError:
        raise AuthenticationError(f"unsupported authentication method: {method!r}") from None
    return provider(method)


class Repository(Protocol):
    def stage(self, path: Path) -> None: ...

    def stage_all(self) -> None: ...

    def commit(self, message: str) -> None: ...

    def push(self, method: AuthenticationMethod) -> None: ...


class WatchedRepository:
    """A git working tree driven through GitPython."""

    def __init__(self, path: Path):
        try:
            self.repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryError(f"{path} is not a git repository") from e
        if self.repo.bare:
            raise RepositoryError(f"{path} is a bare repository")
        self.workdir = Path(self.repo.working_tree_dir).resolve()

    def relative(self, path: Path) -> Path:
        # The path may be gone already, so it is made absolute without resolving.
        absolute = Path(os.path.abspath(self.workdir / path))
        try:
            return absolute.relative_to(self.workdir)
        except ValueError:
            raise RepositoryError(f"{path} is outside the repository at {self.workdir}") from None

    def stage(self, path: Path) -> None:
        rel = self.relative(path)
        try:
            # --all picks up deletions as well as new and changed content.
            self.repo.git.add("--all", "--", rel.as_posix())
        except GitCommandError as e:
            raise RepositoryError(f"cannot stage {rel}: {e.stderr.strip()}") from e
        except OSError as e:
            raise RepositoryError(f"cannot stage {rel}: {e}") from e

    def stage_all(self) -> None:
        try:
            self.repo.git.add("--all")
        except GitCommandError as e:
            raise RepositoryError(f"cannot stage working tree: {e.stderr.strip()}") from e
        except OSError as e:
            raise RepositoryError(f"cannot stage working tree: {e}") from e

    def has_staged_changes(self) -> bool:
        return self.repo.is_dirty(index=True, working_tree=False, untracked_files=False)

    def commit(self, message: str) -> None:
        try:
            if not self.has_staged_changes():
                log.info("Nothing to commit.")
                return
            # A ref lock held by another git process raises a plain OSError.
            self.repo.index.commit(message)
        except (GitCommandError, CacheError, OSError, ValueError) as e:
            raise RepositoryError(f"cannot commit: {e}") from e

    def push(self, method: AuthenticationMethod) -> None:
        try:
            branch = self.repo.active_branch
        except TypeError as e:
            raise PushError("HEAD is detached, there is no branch to push") from e

        tracking = branch.tracking_branch()
        remote_name = tracking.remote_name if tracking is not None else DEFAULT_REMOTE
        remote_head = tracking.remote_head if tracking is not None else branch.name
        try:
            remote = self.repo.remote(remote_name)
        except ValueError as e:
            raise PushError(f"no remote named {remote_name}") from e

        refspec = f"{branch.name}:{remote_head}"
        log.info(f"Pushing {refspec} to {remote_name}")
        try:
            with credential_provider(method) as env:
                with self.repo.git.custom_environment(**env):
                    results = remote.push(refspec=refspec)
        except GitCommandError as e:
            raise PushError(f"push to {remote_name} failed: {e.stderr.strip()}") from e
        except OSError as e:
            raise PushError(f"push to {remote_name} failed: {e}") from e

        error = getattr(results, "error", None)
        if error is not None:
            raise PushError(f"push to {remote_name} failed: {error}") from error
        if not results:
            raise PushError(f"push to {remote_name} reported nothing")
        for info in results:
            log.debug(f"{info.remote_ref_string}: {info.summary.strip()}")
            if info.flags & PUSH_FAILED:
                raise PushError(
                    f"push of {info.local_ref} to {remote_name} rejected: {info.summary.strip()}"
                )


class DummyRepository:
    """Logs what would be done to the repository and does nothing."""

    def stage(self, path: Path) -> None:
        log.info(f"[dry-run] stage {path}")

    def stage_all(self) -> None:
        log.info("[dry-run] stage all")

    def commit(self, message: str) -> None:
        log.info(f"[dry-run] commit: {message}")

    def push(self, method: AuthenticationMethod) -> None:
        log.info(f"[dry-run] push using {type(method).__name__}")
