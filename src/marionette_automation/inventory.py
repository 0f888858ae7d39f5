from __future__ import annotations

import fnmatch
import logging
import re
import shlex
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import yaml

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigurationError, RenderError, UndefinedVariableError
from .secrets import SecretResolver
from .templating import referenced_names, render_value
from .types import GroupConfig, HostConfig, Inventory

logger = logging.getLogger(__name__)

ALL_GROUP = "all"
UNGROUPED = "ungrouped"
YAML_SUFFIXES = {".yml", ".yaml"}
DIRECTORY_CANDIDATES = ("hosts", "hosts.ini", "hosts.yml", "hosts.yaml", "inventory.yml", "inventory.toml")

CONNECTION_KEYS = ("ansible_connection", "connection")
ADDRESS_KEYS = ("ansible_host", "address")
PORT_KEYS = ("ansible_port", "port")
USER_KEYS = ("ansible_user", "user")


class InventoryLoader:
    """Loads hosts, groups and their variable files.

    Three layouts are understood: the INI format (``[group]``,
    ``[group:vars]``, ``[group:children]``), the YAML format rooted at
    ``all:`` and a TOML format with ``[hosts.*]`` and ``[groups.*]`` tables.
    ``group_vars/`` and ``host_vars/`` next to the inventory file are merged
    on top of variables declared inline.
    """

    SECTION_RE = re.compile(r"^\[([^\]:\s]+)(?::(\w+))?\]$")

    def __init__(self, *, default_connection: str = "ssh"):
        self.default_connection = default_connection

    def load(self, path: Path) -> Inventory:
        path = self._locate(Path(path))
        builder = _InventoryBuilder()
        suffix = path.suffix.lower()
        if suffix in YAML_SUFFIXES:
            self._load_yaml(path, builder)
        elif suffix == ".toml":
            self._load_toml(path, builder)
        else:
            self._load_ini(path, builder)
        self._load_variable_files(path.parent, builder)
        inventory = builder.finish(path, self.default_connection)
        logger.debug(
            "inventory=%s hosts=%d groups=%d", path, len(inventory.hosts), len(inventory.groups)
        )
        return inventory

    @staticmethod
    def _locate(path: Path) -> Path:
        if path.is_dir():
            for name in DIRECTORY_CANDIDATES:
                candidate = path / name
                if candidate.is_file():
                    return candidate
            raise ConfigurationError("no inventory file found in directory", path=path)
        if not path.exists():
            raise ConfigurationError("inventory does not exist", path=path)
        return path

    # INI -----------------------------------------------------------------
    def _load_ini(self, path: Path, builder: "_InventoryBuilder") -> None:
        group = UNGROUPED
        section = "hosts"
        for lineno, raw in enumerate(path.read_text().splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith(("#", ";")):
                continue
            if line.startswith("["):
                match = self.SECTION_RE.match(line)
                if not match:
                    raise ConfigurationError(f"malformed section header '{line}'", path=path, line=lineno)
                group = match.group(1)
                section = match.group(2) or "hosts"
                if section not in {"hosts", "vars", "children"}:
                    raise ConfigurationError(f"unknown section type '{section}'", path=path, line=lineno)
                builder.group(group)
                continue
            try:
                tokens = shlex.split(line, comments=True)
            except ValueError as exc:
                raise ConfigurationError(str(exc), path=path, line=lineno) from None
            if section == "hosts":
                builder.add_host(tokens[0], group, self._parse_pairs(tokens[1:], path, lineno))
            elif section == "children":
                builder.add_child(group, tokens[0])
            else:
                builder.group(group).variables.update(self._parse_pairs(tokens, path, lineno))

    @staticmethod
    def _parse_pairs(tokens: Sequence[str], path: Path, lineno: int) -> dict[str, Any]:
        pairs: dict[str, Any] = {}
        for token in tokens:
            key, sep, value = token.partition("=")
            if not sep or not key:
                raise ConfigurationError(f"expected key=value, got '{token}'", path=path, line=lineno)
            pairs[key] = _coerce_scalar(value)
        return pairs

    # YAML ----------------------------------------------------------------
    def _load_yaml(self, path: Path, builder: "_InventoryBuilder") -> None:
        data = read_yaml(path)
        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigurationError("inventory must be a mapping of groups", path=path)
        for name, payload in data.items():
            self._yaml_group(path, builder, str(name), payload)

    def _yaml_group(self, path: Path, builder: "_InventoryBuilder", name: str, payload: Any) -> None:
        group = builder.group(name)
        if payload is None:
            return
        if not isinstance(payload, dict):
            raise ConfigurationError(f"group '{name}' must be a mapping", path=path)
        hosts = payload.get("hosts") or {}
        if isinstance(hosts, list):
            hosts = {host: None for host in hosts}
        if not isinstance(hosts, dict):
            raise ConfigurationError(f"hosts of group '{name}' must be a mapping", path=path)
        for host_name, host_vars in hosts.items():
            if host_vars is not None and not isinstance(host_vars, dict):
                raise ConfigurationError(f"variables of host '{host_name}' must be a mapping", path=path)
            builder.add_host(str(host_name), name, dict(host_vars or {}))
        variables = payload.get("vars") or {}
        if not isinstance(variables, dict):
            raise ConfigurationError(f"vars of group '{name}' must be a mapping", path=path)
        group.variables.update(variables)
        children = payload.get("children") or {}
        if isinstance(children, list):
            children = {child: None for child in children}
        for child_name, child_payload in children.items():
            builder.add_child(name, str(child_name))
            self._yaml_group(path, builder, str(child_name), child_payload)

    # TOML ----------------------------------------------------------------
    def _load_toml(self, path: Path, builder: "_InventoryBuilder") -> None:
        try:
            data = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(str(exc), path=path) from None
        builder.group(ALL_GROUP).variables.update(data.get("variables", {}))
        for name, payload in data.get("hosts", {}).items():
            host_vars = dict(payload.get("variables", {}))
            for key in ("connection", "address", "port", "user"):
                if key in payload:
                    host_vars.setdefault(key, payload[key])
            builder.add_host(name, UNGROUPED, host_vars)
        for name, payload in data.get("groups", {}).items():
            group = builder.group(name)
            group.variables.update(payload.get("variables", {}))
            for host_name in payload.get("hosts", []):
                builder.add_host(host_name, name, {})
            for child in payload.get("children", []):
                builder.add_child(name, child)

    # group_vars / host_vars ---------------------------------------------
    def _load_variable_files(self, base_dir: Path, builder: "_InventoryBuilder") -> None:
        for name in list(builder.groups):
            builder.groups[name].variables.update(_read_vars_dir(base_dir / "group_vars", name))
        for name in list(builder.hosts):
            builder.hosts[name].update(_read_vars_dir(base_dir / "host_vars", name))


class _InventoryBuilder:
    def __init__(self) -> None:
        self.hosts: dict[str, dict[str, Any]] = {}
        self.groups: dict[str, GroupConfig] = {ALL_GROUP: GroupConfig(name=ALL_GROUP)}
        self.membership: dict[str, list[str]] = {}

    def group(self, name: str) -> GroupConfig:
        if name not in self.groups:
            self.groups[name] = GroupConfig(name=name)
        return self.groups[name]

    def add_host(self, name: str, group: str, variables: dict[str, Any]) -> None:
        self.hosts.setdefault(name, {}).update(variables)
        groups = self.membership.setdefault(name, [])
        if group not in (ALL_GROUP, UNGROUPED) and group not in groups:
            groups.append(group)
        members = self.group(group).hosts
        if name not in members:
            members.append(name)

    def add_child(self, parent: str, child: str) -> None:
        children = self.group(parent).children
        self.group(child)
        if child not in children:
            children.append(child)

    def finish(self, path: Path, default_connection: str) -> Inventory:
        self._check_cycles(path)
        ungrouped = self.groups.get(UNGROUPED)
        if ungrouped is not None:
            ungrouped.hosts = [h for h in ungrouped.hosts if not self.membership.get(h)]
            if not ungrouped.hosts and not ungrouped.variables:
                del self.groups[UNGROUPED]
        hosts: dict[str, HostConfig] = {}
        for name, variables in self.hosts.items():
            connection = _first(variables, CONNECTION_KEYS)
            if connection is None:
                connection = "local" if name in {"localhost", "127.0.0.1"} else default_connection
            port = _first(variables, PORT_KEYS)
            try:
                port = int(port) if port is not None else None
            except (TypeError, ValueError):
                raise ConfigurationError(f"host '{name}' has a non-numeric port", path=path) from None
            hosts[name] = HostConfig(
                name=name,
                connection=str(connection),
                address=_optional_str(_first(variables, ADDRESS_KEYS)),
                port=port,
                user=_optional_str(_first(variables, USER_KEYS)),
                groups=list(self.membership.get(name, [])),
                variables=variables,
            )
        self.groups[ALL_GROUP].hosts = list(hosts)
        return Inventory(hosts=hosts, groups=self.groups, path=path)

    def _check_cycles(self, path: Path) -> None:
        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = " -> ".join(visiting[visiting.index(name) :] + [name])
                raise ConfigurationError(f"group cycle detected: {cycle}", path=path)
            visiting.append(name)
            for child in self.groups[name].children:
                visit(child)
            visiting.pop()
            done.add(name)

        for name in self.groups:
            visit(name)


class VariableResolver:
    """Builds the per-host variable namespace.

    Layers, later ones winning on key collisions: role defaults, the ``all``
    group, every other group of the host ordered by depth (parents before
    children, equal depth in declaration order), host variables, play
    variables and finally facts computed from the inventory.
    """

    def __init__(self, inventory: Inventory, *, secret_resolver: Optional[SecretResolver] = None):
        self.inventory = inventory
        self.secret_resolver = secret_resolver
        self._depths = self._group_depths()

    def group_chain(self, host_name: str) -> list[str]:
        host = self._host(host_name)
        seen: set[str] = set()
        pending = list(host.groups)
        while pending:
            name = pending.pop()
            if name in seen or name == ALL_GROUP:
                continue
            seen.add(name)
            pending.extend(self._parents(name))
        order = {name: index for index, name in enumerate(self.inventory.groups)}
        return sorted(seen, key=lambda name: (self._depths.get(name, 1), order[name]))

    def layers(
        self,
        host_name: str,
        *,
        role_defaults: Iterable[Mapping[str, Any]] = (),
        play_vars: Optional[Mapping[str, Any]] = None,
    ) -> list[Mapping[str, Any]]:
        host = self._host(host_name)
        stack: list[Mapping[str, Any]] = list(role_defaults)
        stack.append(self.inventory.groups[ALL_GROUP].variables)
        stack.extend(self.inventory.groups[name].variables for name in self.group_chain(host_name))
        stack.append(host.variables)
        if play_vars:
            stack.append(play_vars)
        stack.append(self.facts(host_name))
        return stack

    def resolve(
        self,
        host_name: str,
        *,
        role_defaults: Iterable[Mapping[str, Any]] = (),
        play_vars: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for layer in self.layers(host_name, role_defaults=role_defaults, play_vars=play_vars):
            merged.update(layer)
        if self.secret_resolver is not None:
            merged = self.secret_resolver.resolve(merged)
        return _resolve_references(merged)

    def resolve_all(self, **kwargs: Any) -> dict[str, dict[str, Any]]:
        return {name: self.resolve(name, **kwargs) for name in self.inventory.hosts}

    def facts(self, host_name: str) -> dict[str, Any]:
        chain = self.group_chain(host_name)
        return {
            "inventory_hostname": host_name,
            "inventory_hostname_short": host_name.split(".")[0],
            "group_names": sorted(chain),
            "groups": {name: hosts_in_group(self.inventory, name) for name in self.inventory.groups},
        }

    def _host(self, host_name: str) -> HostConfig:
        try:
            return self.inventory.hosts[host_name]
        except KeyError:
            raise ConfigurationError(f"host '{host_name}' is not defined in the inventory") from None

    def _parents(self, name: str) -> list[str]:
        return [g.name for g in self.inventory.groups.values() if name in g.children]

    def _group_depths(self) -> dict[str, int]:
        depths: dict[str, int] = {}

        def depth(name: str) -> int:
            if name in depths:
                return depths[name]
            parents = [p for p in self._parents(name) if p != ALL_GROUP]
            value = 1 + max((depth(p) for p in parents), default=0)
            depths[name] = value
            return value

        for name in self.inventory.groups:
            if name != ALL_GROUP:
                depth(name)
        return depths


def hosts_in_group(inventory: Inventory, name: str) -> list[str]:
    """Hosts of ``name`` and all of its descendant groups, in inventory order."""

    if name == ALL_GROUP:
        return list(inventory.hosts)
    members: set[str] = set()
    pending = [name]
    seen: set[str] = set()
    while pending:
        current = pending.pop()
        if current in seen or current not in inventory.groups:
            continue
        seen.add(current)
        members.update(inventory.groups[current].hosts)
        pending.extend(inventory.groups[current].children)
    return [host for host in inventory.hosts if host in members]


def select_hosts(inventory: Inventory, pattern: str) -> list[str]:
    """Expand a host pattern such as ``webservers:!web3:&prod``."""

    selected: set[str] = set()
    intersect: list[set[str]] = []
    exclude: set[str] = set()
    for term in (t.strip() for t in re.split(r"[:,]", pattern)):
        if not term:
            continue
        if term.startswith("!"):
            exclude |= _match_term(inventory, term[1:])
        elif term.startswith("&"):
            intersect.append(_match_term(inventory, term[1:]))
        else:
            selected |= _match_term(inventory, term)
    for subset in intersect:
        selected &= subset
    selected -= exclude
    return [host for host in inventory.hosts if host in selected]


def _match_term(inventory: Inventory, term: str) -> set[str]:
    if term in (ALL_GROUP, "*"):
        return set(inventory.hosts)
    if term in inventory.groups:
        return set(hosts_in_group(inventory, term))
    if term in inventory.hosts:
        return {term}
    matched = set(fnmatch.filter(inventory.hosts, term))
    for group in fnmatch.filter(inventory.groups, term):
        matched.update(hosts_in_group(inventory, group))
    if not matched:
        logger.warning("pattern '%s' matched no hosts", term)
    return matched


def _resolve_references(merged: dict[str, Any]) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    stack: list[str] = []

    def resolve_key(key: str) -> None:
        if key in resolved:
            return
        if key in stack:
            cycle = " -> ".join(stack[stack.index(key) :] + [key])
            raise UndefinedVariableError(key, f"circular variable reference: {cycle}")
        stack.append(key)
        value = merged[key]
        for name in referenced_names(value):
            if name in merged:
                resolve_key(name)
        resolved[key] = render_value(value, resolved)
        stack.pop()

    for key in merged:
        try:
            resolve_key(key)
        except RenderError as exc:
            raise RenderError(f"variable '{key}': {exc}") from None
    return resolved


def _read_vars_dir(base: Path, name: str) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for suffix in (".yml", ".yaml", ""):
        candidate = base / f"{name}{suffix}"
        if candidate.is_file():
            values.update(_read_mapping(candidate))
    directory = base / name
    if directory.is_dir():
        for child in sorted(directory.iterdir()):
            if child.suffix.lower() in YAML_SUFFIXES:
                values.update(_read_mapping(child))
    return values


def _read_mapping(path: Path) -> dict[str, Any]:
    data = read_yaml(path)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("variable file must contain a mapping", path=path)
    return data


def read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        raise ConfigurationError(f"invalid YAML: {exc}", path=path, line=line) from None


def _coerce_scalar(text: str) -> Any:
    lowered = text.lower()
    if lowered in {"true", "yes"}:
        return True
    if lowered in {"false", "no"}:
        return False
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _first(variables: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if variables.get(key) is not None:
            return variables[key]
    return None


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
