from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Sequence, Union
import grp
import hashlib
import logging
import os
import pwd
import shlex
import shutil
import stat
import subprocess

from .errors import CommandError, RemoteExecutionError
from .types import HostConfig

logger = logging.getLogger(__name__)

SSH_CONNECTION_FAILURE = 255

PathLike = Union[str, Path, PurePosixPath]


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


class Executor:
    """Channel to one host: commands plus the file primitives operations need.

    ``write_file``, ``ensure_directory`` and ``set_ownership`` compare the
    current state first and only mutate when it diverges. In dry-run mode
    every comparison still happens but nothing is changed.
    """

    # failing to start the local client is a transport problem for ssh only
    launch_error_retryable = False

    def __init__(self, host: HostConfig, *, dry_run: bool = False, timeout: Optional[float] = None):
        self.host = host
        self.dry_run = dry_run
        self.timeout = timeout

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` on the host; mutable commands are skipped during dry-runs."""

        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        limit = timeout if timeout is not None else self.timeout
        logger.debug("host=%s run=%s", self.host.name, shlex.join(cmd_list))
        try:
            proc = subprocess.run(
                self.wrap(cmd_list),
                capture_output=True,
                text=True,
                check=False,
                input=input,
                timeout=limit,
            )
        except subprocess.TimeoutExpired:
            raise RemoteExecutionError(
                f"'{shlex.join(cmd_list)}' timed out after {limit}s", retryable=True
            ) from None
        except OSError as exc:
            raise RemoteExecutionError(
                f"unable to launch '{self.wrap(cmd_list)[0]}': {exc}", retryable=self.launch_error_retryable
            ) from None
        self.check_transport(proc)
        if check and proc.returncode != 0:
            raise CommandError(cmd_list, proc.returncode, proc.stdout, proc.stderr)
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def wrap(self, command: list[str]) -> list[str]:
        return command

    def check_transport(self, proc: subprocess.CompletedProcess) -> None:
        """Raise a retryable error when the channel, not the command, failed."""

    # Queries -------------------------------------------------------------
    def which(self, binary: str) -> bool:
        raise NotImplementedError

    def path_kind(self, path: PathLike) -> Optional[str]:
        """Return ``"directory"``, ``"file"`` or ``None`` when absent."""
        raise NotImplementedError

    def checksum(self, path: PathLike) -> Optional[str]:
        raise NotImplementedError

    def file_mode(self, path: PathLike) -> Optional[int]:
        raise NotImplementedError

    def ownership(self, path: PathLike) -> Optional[tuple[str, str]]:
        raise NotImplementedError

    # Mutations -----------------------------------------------------------
    def put(self, path: PathLike, content: str) -> None:
        raise NotImplementedError

    def chmod(self, path: PathLike, mode: int) -> None:
        raise NotImplementedError

    def mkdir(self, path: PathLike) -> None:
        raise NotImplementedError

    def chown(self, path: PathLike, owner: Optional[str], group: Optional[str]) -> None:
        raise NotImplementedError

    def remove_path(self, path: PathLike) -> bool:
        raise NotImplementedError

    # Idempotent primitives ----------------------------------------------
    def write_file(self, path: PathLike, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        current = self.checksum(path)
        if current != content_digest(content):
            reasons.append("content" if current is not None else "created")
            if not self.dry_run:
                self.put(path, content)
        reasons.extend(self._ensure_mode(path, mode))
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def ensure_directory(self, path: PathLike, *, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        kind = self.path_kind(path)
        if kind is None:
            reasons.append("created")
            if not self.dry_run:
                self.mkdir(path)
        elif kind != "directory":
            reasons.append("replaced-non-dir")
            if not self.dry_run:
                self.remove_path(path)
                self.mkdir(path)
        reasons.extend(self._ensure_mode(path, mode))
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def set_ownership(
        self, path: PathLike, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        if owner is None and group is None:
            return False, "noop"
        current_owner, current_group = self.ownership(path) or (None, None)
        want_owner = owner if owner is not None and owner != current_owner else None
        want_group = group if group is not None and group != current_group else None
        if want_owner is None and want_group is None:
            return False, "noop"
        if not self.dry_run:
            self.chown(path, want_owner, want_group)
        reasons = []
        if want_owner is not None:
            reasons.append(f"owner->{want_owner}")
        if want_group is not None:
            reasons.append(f"group->{want_group}")
        return True, ", ".join(reasons)

    def _ensure_mode(self, path: PathLike, mode: Optional[int]) -> list[str]:
        if mode is None:
            return []
        if self.file_mode(path) == mode:
            return []
        if not self.dry_run:
            self.chmod(path, mode)
        return [f"mode->{mode:04o}"]


class LocalExecutor(Executor):
    """Executor that acts directly on the controller."""

    def which(self, binary: str) -> bool:
        return shutil.which(binary) is not None

    def path_kind(self, path: PathLike) -> Optional[str]:
        path = Path(path)
        if path.is_dir() and not path.is_symlink():
            return "directory"
        if path.exists() or path.is_symlink():
            return "file"
        return None

    def checksum(self, path: PathLike) -> Optional[str]:
        try:
            return hashlib.sha256(Path(path).read_bytes()).hexdigest()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def file_mode(self, path: PathLike) -> Optional[int]:
        try:
            return stat.S_IMODE(Path(path).stat().st_mode)
        except FileNotFoundError:
            return None

    def ownership(self, path: PathLike) -> Optional[tuple[str, str]]:
        try:
            info = Path(path).stat()
        except FileNotFoundError:
            return None
        return _user_name(info.st_uid), _group_name(info.st_gid)

    def put(self, path: PathLike, content: str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def chmod(self, path: PathLike, mode: int) -> None:
        # ``chmod`` fails if the path is absent, so guard it.
        if Path(path).exists():
            os.chmod(path, mode)

    def mkdir(self, path: PathLike) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def chown(self, path: PathLike, owner: Optional[str], group: Optional[str]) -> None:
        try:
            shutil.chown(path, user=owner, group=group)
        except LookupError as exc:
            raise RemoteExecutionError(str(exc)) from None

    def remove_path(self, path: PathLike) -> bool:
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True


class SshExecutor(Executor):
    """Executor that drives a remote host through the system ``ssh`` client.

    Every primitive is a single stateless command; authentication is left to
    the user's ssh configuration and agent.
    """

    launch_error_retryable = True

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        timeout: Optional[float] = None,
        ssh_executable: str = "ssh",
        ssh_options: Sequence[str] = (),
    ):
        super().__init__(host, dry_run=dry_run, timeout=timeout)
        self.ssh_executable = ssh_executable
        self.ssh_options = list(ssh_options)

    def wrap(self, command: list[str]) -> list[str]:
        wrapped = [self.ssh_executable, "-o", "BatchMode=yes", *self.ssh_options]
        if self.host.port:
            wrapped += ["-p", str(self.host.port)]
        if self.host.user:
            wrapped += ["-l", self.host.user]
        wrapped += [self.host.address or self.host.name, "--", shlex.join(command)]
        return wrapped

    def check_transport(self, proc: subprocess.CompletedProcess) -> None:
        if proc.returncode == SSH_CONNECTION_FAILURE:
            detail = (proc.stderr or "").strip() or "connection failed"
            raise RemoteExecutionError(f"ssh to {self.host.name}: {detail}", retryable=True)

    def _sh(self, script: str, *, mutable: bool, input: Optional[str] = None, check: bool = True) -> CommandResult:
        return self.run(["sh", "-c", script], mutable=mutable, input=input, check=check)

    def which(self, binary: str) -> bool:
        result = self._sh(f"command -v {shlex.quote(binary)}", mutable=False, check=False)
        return result.returncode == 0

    def path_kind(self, path: PathLike) -> Optional[str]:
        quoted = shlex.quote(str(path))
        result = self._sh(
            f"if [ -d {quoted} ] && [ ! -L {quoted} ]; then echo directory; "
            f"elif [ -e {quoted} ] || [ -L {quoted} ]; then echo file; fi",
            mutable=False,
        )
        kind = result.stdout.strip()
        return kind or None

    def checksum(self, path: PathLike) -> Optional[str]:
        result = self.run(["sha256sum", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def file_mode(self, path: PathLike) -> Optional[int]:
        result = self.run(["stat", "-c", "%a", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return int(result.stdout.strip(), 8)

    def ownership(self, path: PathLike) -> Optional[tuple[str, str]]:
        result = self.run(["stat", "-c", "%U %G", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        owner, _, group = result.stdout.strip().partition(" ")
        return owner, group

    def put(self, path: PathLike, content: str) -> None:
        target = PurePosixPath(str(path))
        staging = target.with_name(f".{target.name}.marionette.tmp")
        self._sh(
            f"mkdir -p {shlex.quote(str(target.parent))} && "
            f"cat > {shlex.quote(str(staging))} && "
            f"mv -f {shlex.quote(str(staging))} {shlex.quote(str(target))}",
            mutable=True,
            input=content,
        )

    def chmod(self, path: PathLike, mode: int) -> None:
        self.run(["chmod", f"{mode:04o}", "--", str(path)])

    def mkdir(self, path: PathLike) -> None:
        self.run(["mkdir", "-p", "--", str(path)])

    def chown(self, path: PathLike, owner: Optional[str], group: Optional[str]) -> None:
        if owner is not None:
            spec = f"{owner}:{group}" if group is not None else owner
            self.run(["chown", spec, "--", str(path)])
        elif group is not None:
            self.run(["chgrp", group, "--", str(path)])

    def remove_path(self, path: PathLike) -> bool:
        if self.path_kind(path) is None:
            return False
        if not self.dry_run:
            self.run(["rm", "-rf", "--", str(path)])
        return True


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)
