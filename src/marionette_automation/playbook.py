from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .errors import ConfigurationError, RoleNotFoundError
from .inventory import read_yaml
from .types import PlaySpec, Playbook, RoleSpec, TaskSpec

logger = logging.getLogger(__name__)

# Accepted on a task but without effect on how it is applied.
IGNORED_TASK_KEYS = {"tags", "become", "become_user", "become_method", "no_log"}
# Need conditional or looped execution.
UNSUPPORTED_TASK_KEYS = {
    "when", "loop", "with_items", "register", "until", "delegate_to", "block", "changed_when", "listen",
}
TASK_META_KEYS = {"name", "notify", "type", "args"} | IGNORED_TASK_KEYS
PLAY_KEYS = {"name", "hosts", "roles", "vars", "tasks", "handlers", "become", "gather_facts", "tags"}
INCLUDE_KEYS = ("import_tasks", "include_tasks")


def parse_task(raw: Any, *, index: int, role: Optional[str] = None, path: Optional[Path] = None) -> TaskSpec:
    """Turn one task entry into a ``TaskSpec``.

    Both ``{type: package, name: nginx}`` and the module-key form
    ``{package: {name: nginx}}`` are accepted; the module-key form also takes
    ``key=value`` strings.
    """

    if not isinstance(raw, dict):
        raise ConfigurationError(f"task {index} must be a mapping", path=path)
    unsupported = sorted(UNSUPPORTED_TASK_KEYS.intersection(raw))
    if unsupported:
        raise ConfigurationError(f"task {index} uses unsupported keyword(s): {', '.join(unsupported)}", path=path)

    if "type" in raw:
        kind = str(raw["type"])
        data = {k: v for k, v in raw.items() if k not in TASK_META_KEYS}
    else:
        candidates = [key for key in raw if key not in TASK_META_KEYS]
        if len(candidates) != 1:
            found = ", ".join(candidates) or "none"
            raise ConfigurationError(
                f"task {index} must declare exactly one operation (found: {found})", path=path
            )
        kind = str(candidates[0])
        data = _parse_arguments(raw[kind], index=index, path=path)

    extra_args = raw.get("args") or {}
    if not isinstance(extra_args, dict):
        raise ConfigurationError(f"task {index} args must be a mapping", path=path)
    data.update(extra_args)

    name = raw.get("name") or f"{kind} #{index}"
    return TaskSpec(
        name=str(name),
        type=kind,
        data=data,
        notify=_as_names(raw.get("notify"), index=index, path=path),
        role=role,
    )


def parse_tasks(
    raw: Any,
    *,
    role: Optional[str] = None,
    path: Optional[Path] = None,
    _seen: Optional[set[Path]] = None,
) -> list[TaskSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError("task list must be a sequence", path=path)
    tasks: list[TaskSpec] = []
    for index, entry in enumerate(raw, start=1):
        include = _include_target(entry)
        if include is not None:
            if path is None:
                raise ConfigurationError(f"task {index} includes '{include}' outside of a file")
            tasks.extend(_load_task_file(path.parent / include, role=role, seen=_seen))
            continue
        tasks.append(parse_task(entry, index=index, role=role, path=path))
    return tasks


def _load_task_file(path: Path, *, role: Optional[str], seen: Optional[set[Path]]) -> list[TaskSpec]:
    seen = set(seen or set())
    real = path.resolve()
    if real in seen:
        raise ConfigurationError("recursive task import", path=path)
    seen.add(real)
    if not path.is_file():
        raise ConfigurationError("task file does not exist", path=path)
    return parse_tasks(read_yaml(path), role=role, path=path, _seen=seen)


class RoleLoader:
    """Finds and parses role bundles.

    A role lives in ``<search path>/<name>/`` and may provide
    ``tasks/main.yml``, ``handlers/main.yml``, ``defaults/main.yml``,
    ``meta/main.yml`` (``dependencies``) and a ``templates/`` directory.
    """

    def __init__(self, search_paths: Iterable[Path]):
        self.search_paths = [Path(p) for p in search_paths]
        self._cache: dict[str, RoleSpec] = {}

    def find(self, name: str) -> Path:
        for base in self.search_paths:
            candidate = base / name
            if candidate.is_dir():
                return candidate
        candidate = Path(name).expanduser()
        if candidate.is_absolute() and candidate.is_dir():
            return candidate
        raise RoleNotFoundError(name, self.search_paths)

    def load(self, name: str) -> RoleSpec:
        if name in self._cache:
            return self._cache[name]
        path = self.find(name)
        role = RoleSpec(
            name=name,
            path=path,
            tasks=self._read_tasks(path / "tasks", name),
            handlers=self._read_tasks(path / "handlers", name),
            defaults=self._read_defaults(path / "defaults"),
            dependencies=self._read_dependencies(path / "meta"),
        )
        logger.debug(
            "role=%s tasks=%d handlers=%d deps=%s",
            name,
            len(role.tasks),
            len(role.handlers),
            ",".join(role.dependencies),
        )
        self._cache[name] = role
        return role

    def load_all(self, names: Iterable[str]) -> dict[str, RoleSpec]:
        """Load ``names`` and everything they depend on."""

        roles: dict[str, RoleSpec] = {}
        pending = list(names)
        while pending:
            name = pending.pop(0)
            if name in roles:
                continue
            role = self.load(name)
            roles[name] = role
            pending.extend(role.dependencies)
        return roles

    @staticmethod
    def _main_file(directory: Path) -> Optional[Path]:
        for filename in ("main.yml", "main.yaml"):
            candidate = directory / filename
            if candidate.is_file():
                return candidate
        return None

    def _read_tasks(self, directory: Path, role: str) -> list[TaskSpec]:
        main = self._main_file(directory)
        if main is None:
            return []
        return _load_task_file(main, role=role, seen=None)

    def _read_defaults(self, directory: Path) -> dict[str, Any]:
        main = self._main_file(directory)
        if main is None:
            return {}
        data = read_yaml(main)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError("role defaults must be a mapping", path=main)
        return data

    def _read_dependencies(self, directory: Path) -> list[str]:
        main = self._main_file(directory)
        if main is None:
            return []
        meta = read_yaml(main) or {}
        if not isinstance(meta, dict):
            raise ConfigurationError("role meta must be a mapping", path=main)
        return [_role_name(dep, path=main) for dep in meta.get("dependencies") or []]


class PlaybookLoader:
    """Reads a playbook, splicing ``import_playbook`` entries in place."""

    def load(self, path: Path) -> Playbook:
        path = Path(path)
        plays = self._load_plays(path, set())
        return Playbook(plays=plays, path=path)

    def _load_plays(self, path: Path, seen: set[Path]) -> list[PlaySpec]:
        real = path.resolve()
        if real in seen:
            raise ConfigurationError("recursive playbook import", path=path)
        if not path.is_file():
            raise ConfigurationError("playbook does not exist", path=path)
        seen = seen | {real}
        data = read_yaml(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ConfigurationError("playbook must be a list of plays", path=path)
        plays: list[PlaySpec] = []
        for index, entry in enumerate(data, start=1):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"play {index} must be a mapping", path=path)
            imported = entry.get("import_playbook")
            if imported:
                plays.extend(self._load_plays(path.parent / str(imported), seen))
                continue
            plays.append(self._parse_play(entry, index, path))
        return plays

    @staticmethod
    def _parse_play(entry: dict[str, Any], index: int, path: Path) -> PlaySpec:
        unknown = sorted(set(entry) - PLAY_KEYS)
        if unknown:
            raise ConfigurationError(f"play {index} has unsupported key(s): {', '.join(unknown)}", path=path)
        hosts = entry.get("hosts")
        if not hosts:
            raise ConfigurationError(f"play {index} is missing 'hosts'", path=path)
        if isinstance(hosts, (list, tuple)):
            hosts = ":".join(str(h) for h in hosts)
        variables = entry.get("vars") or {}
        if not isinstance(variables, dict):
            raise ConfigurationError(f"play {index} vars must be a mapping", path=path)
        roles = entry.get("roles") or []
        if not isinstance(roles, list):
            raise ConfigurationError(f"play {index} roles must be a list", path=path)
        return PlaySpec(
            name=entry.get("name"),
            hosts=str(hosts),
            roles=[_role_name(role, path=path) for role in roles],
            variables=variables,
            tasks=parse_tasks(entry.get("tasks"), path=path),
            handlers=parse_tasks(entry.get("handlers"), path=path),
            base_dir=path.parent,
        )


def _parse_arguments(value: Any, *, index: int, path: Optional[Path]) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        arguments: dict[str, Any] = {}
        for token in shlex.split(value):
            key, sep, item = token.partition("=")
            if not sep:
                raise ConfigurationError(f"task {index} argument '{token}' is not key=value", path=path)
            arguments[key] = item
        return arguments
    raise ConfigurationError(f"task {index} arguments must be a mapping or key=value string", path=path)


def _as_names(value: Any, *, index: int, path: Optional[Path]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ConfigurationError(f"task {index} notify must be a name or list of names", path=path)


def _include_target(entry: Any) -> Optional[str]:
    if not isinstance(entry, dict):
        return None
    for key in INCLUDE_KEYS:
        if key in entry:
            return str(entry[key])
    return None


def _role_name(entry: Any, *, path: Path) -> str:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        name = entry.get("role") or entry.get("name")
        extra = set(entry) - {"role", "name"}
        if name and not extra:
            return str(name)
    raise ConfigurationError(f"invalid role reference {entry!r}", path=path)


def role_search_paths(playbook: Playbook, extra: Sequence[Path] = ()) -> list[Path]:
    paths: list[Path] = []
    for play in playbook.plays:
        if play.base_dir is not None and play.base_dir / "roles" not in paths:
            paths.append(play.base_dir / "roles")
    for path in extra:
        if Path(path) not in paths:
            paths.append(Path(path))
    return paths
