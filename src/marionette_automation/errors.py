from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union


class MarionetteError(Exception):
    """Base class for every error raised by marionette."""


class ConfigurationError(MarionetteError, ValueError):
    """Raised when an inventory, playbook or role bundle is malformed."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[Union[str, Path]] = None,
        line: Optional[int] = None,
    ):
        self.path = Path(path) if path is not None else None
        self.line = line
        if self.path is not None:
            location = f"{self.path}:{line}" if line is not None else str(self.path)
            message = f"{location} {message}"
        super().__init__(message)


class RoleNotFoundError(ConfigurationError):
    def __init__(self, role: str, search_paths: Sequence[Path] = ()):
        self.role = role
        self.search_paths = list(search_paths)
        searched = ", ".join(str(p) for p in self.search_paths) or "<none>"
        super().__init__(f"role '{role}' not found (searched: {searched})")


class UnknownOperationKindError(ConfigurationError):
    def __init__(self, kind: str, task: Optional[str] = None, **kwargs):
        self.kind = kind
        self.task = task
        label = f" in task '{task}'" if task else ""
        super().__init__(f"unknown operation '{kind}'{label}", **kwargs)


class UndefinedVariableError(MarionetteError):
    """A placeholder referenced a key that no variable layer defines."""

    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(message or f"'{name}' is undefined")


class RenderError(MarionetteError):
    """Template text could not be parsed."""


class RemoteExecutionError(MarionetteError):
    """An operation could not be carried out on the target host.

    ``retryable`` separates transport trouble (connection refused, timeouts)
    from a permanent rejection by the host itself.
    """

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class CommandError(RemoteExecutionError):
    def __init__(self, command: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        output = (stderr or stdout).strip()
        message = f"'{' '.join(self.command)}' exited with {returncode}"
        if output:
            message = f"{message}: {output}"
        super().__init__(message, retryable=False)


class HandlerError(MarionetteError):
    def __init__(self, handler: str, reason: str):
        self.handler = handler
        self.reason = reason
        super().__init__(f"handler '{handler}' failed: {reason}")
