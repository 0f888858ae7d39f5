from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig


class TemplateOperation(Operation):
    """Ensure ``dest`` holds ``content`` with the requested mode and ownership.

    ``content`` is rendered when the task graph is built; by the time the
    operation runs it is literal text. Only a differing checksum or mode
    causes a write.
    """

    kind = "template"
    resource_keys = ("dest", "path")

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_dest = spec.get("dest") or spec.get("path")
        if not raw_dest:
            raise ValueError(f"{self.kind} operation requires a dest")
        self.dest = PurePosixPath(str(raw_dest))
        raw_content = spec.get("content")
        if raw_content is None:
            raise ValueError(f"{self.kind} operation requires content or a src to render")
        self.content = str(raw_content)
        self.mode = self._parse_mode(spec.get("mode"))
        self.owner = self._optional_str(spec.get("owner"))
        self.group = self._optional_str(spec.get("group"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        changed, detail = executor.write_file(self.dest, content=self.content, mode=self.mode)
        owner_changed, owner_detail = executor.set_ownership(self.dest, owner=self.owner, group=self.group)
        if owner_changed:
            detail = owner_detail if detail == "noop" else f"{detail}, {owner_detail}"
        return self.result(host, changed or owner_changed, detail)


class CopyOperation(TemplateOperation):
    """Like ``template`` but the source file is copied without rendering."""

    kind = "copy"
