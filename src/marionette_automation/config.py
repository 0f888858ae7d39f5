from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigurationError


DEFAULT_CONFIG = Path("/etc/marionette/main.conf")
DEFAULT_FORKS = 5
DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_TIMEOUT = 300.0


@dataclass
class MarionetteConfig:
    inventory: Optional[Path] = None
    roles_path: list[Path] = field(default_factory=list)
    forks: int = DEFAULT_FORKS
    retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    timeout: Optional[float] = DEFAULT_TIMEOUT
    default_connection: str = "ssh"
    ssh_executable: str = "ssh"
    ssh_options: list[str] = field(default_factory=list)
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)


def load_config(path: Path) -> MarionetteConfig:
    path = Path(path)
    if not path.exists():
        return MarionetteConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(str(exc), path=path) from None
    defaults = data.get("defaults", {})
    inventory = defaults.get("inventory")
    timeout = defaults.get("timeout", DEFAULT_TIMEOUT)
    try:
        return MarionetteConfig(
            inventory=Path(inventory) if inventory else None,
            roles_path=[Path(p) for p in _as_list(defaults.get("roles_path"))],
            forks=int(defaults.get("forks", DEFAULT_FORKS)),
            retries=int(defaults.get("retries", DEFAULT_RETRIES)),
            retry_delay=float(defaults.get("retry_delay", DEFAULT_RETRY_DELAY)),
            timeout=float(timeout) if timeout else None,
            default_connection=str(defaults.get("default_connection", "ssh")),
            ssh_executable=str(defaults.get("ssh_executable", "ssh")),
            ssh_options=[str(opt) for opt in _as_list(defaults.get("ssh_options"))],
            aws_region=str(defaults["aws_region"]) if defaults.get("aws_region") else None,
            aws_profile=str(defaults["aws_profile"]) if defaults.get("aws_profile") else None,
            plugin_dirs=[Path(p) for p in _as_list(defaults.get("plugin_dirs"))],
            plugin_modules=[str(m) for m in _as_list(defaults.get("plugin_modules"))],
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid [defaults] value: {exc}", path=path) from None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
