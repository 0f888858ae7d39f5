from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    groups: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class GroupConfig:
    name: str
    hosts: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class Inventory:
    hosts: dict[str, HostConfig]
    groups: dict[str, GroupConfig]
    path: Optional[Path] = None


@dataclass
class TaskSpec:
    name: str
    type: str
    data: dict[str, Any]
    notify: list[str] = field(default_factory=list)
    role: Optional[str] = None


@dataclass
class RoleSpec:
    name: str
    path: Path
    tasks: list[TaskSpec] = field(default_factory=list)
    handlers: list[TaskSpec] = field(default_factory=list)
    defaults: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)

    @property
    def templates_dir(self) -> Path:
        return self.path / "templates"


@dataclass
class PlaySpec:
    hosts: str
    name: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    tasks: list[TaskSpec] = field(default_factory=list)
    handlers: list[TaskSpec] = field(default_factory=list)
    base_dir: Optional[Path] = None


@dataclass
class Playbook:
    plays: list[PlaySpec]
    path: Optional[Path] = None


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    task: Optional[str] = None
    retryable: bool = False
    skipped: bool = False
    handler: bool = False

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.failed:
            return "unreachable" if self.retryable else "failed"
        return "changed" if self.changed else "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "task": self.task,
            "action": self.action,
            "resource": self.resource,
            "status": self.status,
            "changed": self.changed,
            "failed": self.failed,
            "retryable": self.retryable,
            "handler": self.handler,
            "details": self.details,
        }
