"""Expands plays into ordered, fully rendered per-host task lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from .errors import (
    ConfigurationError,
    RenderError,
    RoleNotFoundError,
    UndefinedVariableError,
    UnknownOperationKindError,
)
from .inventory import VariableResolver, select_hosts
from .operations import OPERATION_REGISTRY, Operation
from .templating import render_file, render_value
from .types import HostConfig, Inventory, PlaySpec, Playbook, RoleSpec, TaskSpec

logger = logging.getLogger(__name__)

RENDERED_SOURCE_KINDS = {"template"}
COPIED_SOURCE_KINDS = {"copy"}


@dataclass
class PlannedTask:
    """A task bound to one host with its parameters already rendered.

    ``error`` is set instead of ``operation`` when rendering failed for this
    host; executing it fails the host at this point in the sequence.
    """

    task: TaskSpec
    operation: Optional[Operation] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.task.name


@dataclass
class HostPlan:
    host: HostConfig
    tasks: list[PlannedTask] = field(default_factory=list)
    handlers: dict[str, PlannedTask] = field(default_factory=dict)

    @property
    def broken(self) -> bool:
        return any(planned.error for planned in self.tasks)


@dataclass
class TaskGraph:
    hosts: dict[str, HostPlan] = field(default_factory=dict)

    def pairs(self) -> Iterator[tuple[HostConfig, PlannedTask]]:
        for plan in self.hosts.values():
            for planned in plan.tasks:
                yield plan.host, planned

    def __len__(self) -> int:
        return sum(len(plan.tasks) for plan in self.hosts.values())


class TaskGraphBuilder:
    """Builds a ``TaskGraph`` without contacting any host.

    Structural problems (unknown roles, unknown operation kinds, notify of a
    handler nobody defines, invalid parameters) raise ``ConfigurationError``.
    Undefined variables and template syntax errors only break the host they
    occur on.
    """

    def __init__(
        self,
        inventory: Inventory,
        roles: Mapping[str, RoleSpec],
        *,
        resolver: Optional[VariableResolver] = None,
        registry: Optional[Mapping[str, type[Operation]]] = None,
    ):
        self.inventory = inventory
        self.roles = roles
        self.resolver = resolver or VariableResolver(inventory)
        self.registry = registry if registry is not None else OPERATION_REGISTRY

    def build(self, playbook: Playbook, *, limit: Optional[str] = None) -> TaskGraph:
        limited = set(select_hosts(self.inventory, limit)) if limit else None
        expanded = [self.expand_roles(play) for play in playbook.plays]
        for play, roles in zip(playbook.plays, expanded):
            self._validate_play(play, roles)

        graph = TaskGraph()
        for play, roles in zip(playbook.plays, expanded):
            hosts = select_hosts(self.inventory, play.hosts)
            if limited is not None:
                hosts = [name for name in hosts if name in limited]
            if not hosts:
                logger.warning("play '%s' matched no hosts", play.name or play.hosts)
            for name in hosts:
                plan = graph.hosts.get(name)
                if plan is None:
                    plan = graph.hosts[name] = HostPlan(host=self.inventory.hosts[name])
                if plan.broken:
                    continue
                self._plan_play(plan, play, roles)
        logger.debug("graph hosts=%d tasks=%d", len(graph.hosts), len(graph))
        return graph

    def expand_roles(self, play: PlaySpec) -> list[RoleSpec]:
        """Roles of ``play`` with dependencies first, each role once."""

        ordered: list[RoleSpec] = []
        seen: set[str] = set()
        visiting: list[str] = []

        def visit(name: str) -> None:
            if name in seen:
                return
            if name in visiting:
                cycle = " -> ".join(visiting[visiting.index(name) :] + [name])
                raise ConfigurationError(f"role dependency cycle: {cycle}")
            role = self.roles.get(name)
            if role is None:
                raise RoleNotFoundError(name)
            visiting.append(name)
            for dependency in role.dependencies:
                visit(dependency)
            visiting.pop()
            seen.add(name)
            ordered.append(role)

        for name in play.roles:
            visit(name)
        return ordered

    def _validate_play(self, play: PlaySpec, roles: list[RoleSpec]) -> None:
        handler_names = {h.name for role in roles for h in role.handlers}
        handler_names.update(h.name for h in play.handlers)
        for task in self._play_tasks(play, roles, handlers=True):
            if task.type not in self.registry:
                raise UnknownOperationKindError(task.type, task.name)
        for task in self._play_tasks(play, roles):
            for name in task.notify:
                if name not in handler_names:
                    raise ConfigurationError(
                        f"task '{task.name}' notifies undefined handler '{name}'"
                    )

    @staticmethod
    def _play_tasks(play: PlaySpec, roles: list[RoleSpec], *, handlers: bool = False) -> list[TaskSpec]:
        tasks = [task for role in roles for task in role.tasks] + list(play.tasks)
        if handlers:
            tasks += [h for role in roles for h in role.handlers] + list(play.handlers)
        return tasks

    def _plan_play(self, plan: HostPlan, play: PlaySpec, roles: list[RoleSpec]) -> None:
        host = plan.host.name
        try:
            namespace = self.resolver.resolve(
                host,
                role_defaults=[role.defaults for role in roles],
                play_vars=play.variables,
            )
        except (UndefinedVariableError, RenderError) as exc:
            logger.warning("host=%s variables failed to resolve: %s", host, exc)
            marker = TaskSpec(name="resolve variables", type="vars", data={})
            plan.tasks.append(PlannedTask(task=marker, error=str(exc)))
            return

        by_role = {role.name: role for role in roles}
        for task in self._play_tasks(play, roles):
            planned = self._plan_task(task, namespace, play, by_role.get(task.role or ""), host)
            plan.tasks.append(planned)
            if planned.error:
                return
        handlers = [(h, by_role.get(h.role or "")) for role in roles for h in role.handlers]
        handlers += [(h, None) for h in play.handlers]
        for handler, role in handlers:
            if handler.name not in plan.handlers:
                plan.handlers[handler.name] = self._plan_task(handler, namespace, play, role, host)

    def _plan_task(
        self,
        task: TaskSpec,
        namespace: Mapping[str, Any],
        play: PlaySpec,
        role: Optional[RoleSpec],
        host: str,
    ) -> PlannedTask:
        try:
            data = render_value(task.data, namespace)
            self._materialize_source(task, data, namespace, play, role)
        except (UndefinedVariableError, RenderError) as exc:
            logger.warning("host=%s task='%s' failed to render: %s", host, task.name, exc)
            return PlannedTask(task=task, error=str(exc))
        operation_cls = self.registry[task.type]
        try:
            operation = operation_cls(data)
        except ValueError as exc:
            label = f"role '{task.role}' task '{task.name}'" if task.role else f"task '{task.name}'"
            raise ConfigurationError(f"{label}: {exc}") from None
        return PlannedTask(task=task, operation=operation)

    def _materialize_source(
        self,
        task: TaskSpec,
        data: dict[str, Any],
        namespace: Mapping[str, Any],
        play: PlaySpec,
        role: Optional[RoleSpec],
    ) -> None:
        src = data.get("src")
        if not src or "content" in data:
            return
        if task.type in RENDERED_SOURCE_KINDS:
            path = self._find_source(str(src), "templates", play, role, task)
            data["content"] = render_file(path, namespace)
        elif task.type in COPIED_SOURCE_KINDS:
            path = self._find_source(str(src), "files", play, role, task)
            data["content"] = path.read_text()

    @staticmethod
    def _find_source(
        src: str, subdir: str, play: PlaySpec, role: Optional[RoleSpec], task: TaskSpec
    ) -> Path:
        candidate = Path(src).expanduser()
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
        else:
            bases: list[Path] = []
            if role is not None:
                bases.append(role.path / subdir)
            if play.base_dir is not None:
                bases += [play.base_dir / subdir, play.base_dir]
            for base in bases:
                if (base / src).is_file():
                    return base / src
        raise ConfigurationError(f"task '{task.name}': {subdir[:-1]} source '{src}' not found")
