from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig


class DirectoryOperation(Operation):
    """Ensure a directory exists with the requested ownership, or is absent."""

    kind = "file"
    resource_keys = ("path", "dest", "name")
    STATES = {"directory", "absent"}

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest") or spec.get("name")
        if not raw_path:
            raise ValueError(f"{self.kind} operation requires a path")
        self.path = PurePosixPath(str(raw_path))
        self.state = str(spec.get("state", "directory"))
        if self.state not in self.STATES:
            raise ValueError(f"{self.kind} operation state must be 'directory' or 'absent'")
        self.mode = self._parse_mode(spec.get("mode"))
        self.owner = self._optional_str(spec.get("owner"))
        self.group = self._optional_str(spec.get("group"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.state == "absent":
            removed = executor.remove_path(self.path)
            return self.result(host, removed, "removed" if removed else "noop")

        changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        owner_changed, owner_detail = executor.set_ownership(self.path, owner=self.owner, group=self.group)
        if owner_changed:
            detail = owner_detail if detail == "noop" else f"{detail}, {owner_detail}"
        return self.result(host, changed or owner_changed, detail)


class EnsureDirectoryOperation(DirectoryOperation):
    kind = "directory"
