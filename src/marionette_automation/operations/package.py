from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import logging

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

PRESENT_STATES = {"present", "installed"}
ABSENT_STATES = {"absent", "removed"}
LATEST_STATES = {"latest"}


class PackageOperation(Operation):
    """Install, upgrade or remove packages using the host's package manager."""

    kind = "package"
    default_manager: Optional[str] = None

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("packages") or spec.get("pkg")
        if isinstance(packages, str):
            self.packages = [p.strip() for p in packages.split(",") if p.strip()]
        else:
            self.packages = [str(p) for p in packages or []]
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in PRESENT_STATES | ABSENT_STATES | LATEST_STATES:
            raise ValueError("package state must be 'present', 'latest' or 'absent'")
        self.preferred_manager = spec.get("manager") or self.default_manager
        self.update_cache = bool(self._coerce_bool(spec.get("update_cache", False)))

    @property
    def resource(self) -> Optional[str]:
        return ",".join(self.packages)

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        manager = PackageManagerFactory.create(self.preferred_manager, executor)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages
        )
        if self.state in ABSENT_STATES:
            changed, details = manager.ensure_absent(executor, self.packages)
        else:
            changed, details = manager.ensure_present(
                executor,
                self.packages,
                upgrade=self.state in LATEST_STATES,
                update_cache=self.update_cache,
            )
        detail_msg = f"manager={manager.name} {details}" if details else f"manager={manager.name}"
        return self.result(host, changed, detail_msg)


class AptOperation(PackageOperation):
    kind = "apt"
    default_manager = "apt"


class DnfOperation(PackageOperation):
    kind = "dnf"
    default_manager = "dnf"


class YumOperation(PackageOperation):
    kind = "yum"
    default_manager = "yum"


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            if executor.which(binary):
                return factory()
        raise RuntimeError(f"No supported package manager found on {executor.host.name}")


class PackageManager:
    name = "generic"

    def ensure_present(
        self,
        executor: Executor,
        packages: Iterable[str],
        *,
        upgrade: bool = False,
        update_cache: bool = False,
    ) -> tuple[bool, str]:
        packages = list(packages)
        if update_cache:
            self.refresh(executor)
        missing = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        outdated: list[str] = []
        if upgrade:
            outdated = [pkg for pkg in packages if pkg not in missing and self.is_outdated(executor, pkg)]
        if not missing and not outdated:
            return False, "already-latest" if upgrade else "already-installed"
        details: list[str] = []
        if missing:
            self.install(executor, missing)
            details.append(f"installed={','.join(missing)}")
        if outdated:
            self.upgrade(executor, outdated)
            details.append(f"upgraded={','.join(outdated)}")
        return True, " ".join(details)

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        removable = [pkg for pkg in packages if self.is_installed(executor, pkg)]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"

    def refresh(self, executor: Executor) -> None:
        pass

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def upgrade(self, executor: Executor, packages: list[str]) -> None:
        self.install(executor, packages)

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError

    def is_outdated(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and "install ok installed" in result.stdout


class AptPackageManager(PackageManager):
    name = "apt"

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages])

    def upgrade(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", "--only-upgrade", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)

    def is_outdated(self, executor: Executor, package: str) -> bool:
        result = executor.run(["apt-cache", "policy", package], check=False, mutable=False)
        installed = candidate = None
        for line in result.stdout.splitlines():
            key, _, value = line.strip().partition(":")
            if key == "Installed":
                installed = value.strip()
            elif key == "Candidate":
                candidate = value.strip()
        if not installed or not candidate or candidate == "(none)":
            return False
        return installed != candidate


class DnfPackageManager(PackageManager):
    name = "dnf"
    # ``check-update`` exits 100 when updates are available.
    UPDATES_AVAILABLE = 100

    def refresh(self, executor: Executor) -> None:
        executor.run([self.name, "makecache"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "install", "-y", *packages])

    def upgrade(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "upgrade", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False, mutable=False)
        return result.returncode == 0

    def is_outdated(self, executor: Executor, package: str) -> bool:
        result = executor.run([self.name, "-q", "check-update", package], check=False, mutable=False)
        return result.returncode == self.UPDATES_AVAILABLE


class YumPackageManager(DnfPackageManager):
    name = "yum"
