import pytest

from marionette_automation.executors import CommandResult, LocalExecutor
from marionette_automation.operations import package as pkg
from marionette_automation.operations.package import (
    AptPackageManager,
    DnfPackageManager,
    PackageManager,
    PackageManagerFactory,
)
from marionette_automation.types import HostConfig


class FakePackageManager(PackageManager):
    name = "fake"

    def __init__(self, installed: set[str], outdated: set[str]):
        self._installed = installed
        self._outdated = outdated
        self.installed_calls: list[list[str]] = []
        self.upgraded_calls: list[list[str]] = []
        self.removed_calls: list[list[str]] = []

    def install(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.installed_calls.append(packages)
        self._installed.update(packages)

    def upgrade(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.upgraded_calls.append(packages)
        self._outdated.difference_update(packages)

    def remove(self, executor, packages: list[str]) -> None:  # type: ignore[override]
        self.removed_calls.append(packages)
        for pkg_name in packages:
            self._installed.discard(pkg_name)

    def is_installed(self, executor, package: str) -> bool:  # type: ignore[override]
        return package in self._installed

    def is_outdated(self, executor, package: str) -> bool:  # type: ignore[override]
        return package in self._outdated


@pytest.fixture
def fake_manager(monkeypatch):
    installed = {"git", "curl"}
    outdated = {"curl"}

    def create(cls, preferred, executor):
        return FakePackageManager(installed, outdated)

    monkeypatch.setattr(pkg.PackageManagerFactory, "create", classmethod(create))
    return installed, outdated


def build_executor() -> LocalExecutor:
    host = HostConfig(name="local")
    return LocalExecutor(host, dry_run=False)


def test_package_present_installs_missing_then_noop(fake_manager):
    installed, _ = fake_manager
    op = pkg.PackageOperation({"packages": ["git", "htop"], "state": "present"})

    first = op.apply(HostConfig("local"), build_executor())
    second = op.apply(HostConfig("local"), build_executor())

    assert first.changed is True
    assert first.details == "manager=fake installed=htop"
    assert "htop" in installed
    assert second.changed is False
    assert second.details == "manager=fake already-installed"


def test_package_latest_upgrades_outdated(fake_manager):
    _, outdated = fake_manager
    op = pkg.AptOperation({"name": "curl,git", "state": "latest"})

    first = op.apply(HostConfig("local"), build_executor())
    second = op.apply(HostConfig("local"), build_executor())

    assert first.details == "manager=fake upgraded=curl"
    assert not outdated
    assert second.changed is False
    assert first.resource == "curl,git"


def test_package_absent_removes_installed(fake_manager):
    installed, _ = fake_manager
    op = pkg.PackageOperation({"packages": ["git"], "state": "absent"})
    result = op.apply(HostConfig("local"), build_executor())

    assert result.changed is True
    assert "git" not in installed


def test_package_requires_names():
    with pytest.raises(ValueError):
        pkg.PackageOperation({})
    with pytest.raises(ValueError):
        pkg.PackageOperation({"name": "nginx", "state": "purged"})


class ScriptedExecutor:
    """Answers ``run`` from a table keyed on the command's first words."""

    def __init__(self, binaries=(), responses=None):
        self.host = HostConfig(name="local")
        self.dry_run = False
        self.binaries = set(binaries)
        self.responses = responses or {}
        self.commands: list[list[str]] = []

    def which(self, binary: str) -> bool:
        return binary in self.binaries

    def run(self, command, *, check=True, mutable=True, input=None, timeout=None):  # noqa: ARG002
        self.commands.append(list(command))
        returncode, stdout = self.responses.get(tuple(command[:2]), (0, ""))
        return CommandResult(list(command), stdout, "", returncode)


def test_factory_detects_manager_from_host_binaries():
    assert isinstance(PackageManagerFactory.create(None, ScriptedExecutor(binaries={"dnf"})), DnfPackageManager)
    assert isinstance(PackageManagerFactory.create("apt", ScriptedExecutor()), AptPackageManager)
    with pytest.raises(RuntimeError):
        PackageManagerFactory.create(None, ScriptedExecutor())


def test_apt_outdated_compares_policy_versions():
    executor = ScriptedExecutor(
        responses={("apt-cache", "policy"): (0, "nginx:\n  Installed: 1.18.0-6\n  Candidate: 1.18.0-7\n")}
    )
    assert AptPackageManager().is_outdated(executor, "nginx") is True


def test_dnf_outdated_uses_check_update_exit_code():
    executor = ScriptedExecutor(responses={("dnf", "-q"): (100, "nginx.x86_64 1.24 updates\n")})
    assert DnfPackageManager().is_outdated(executor, "nginx") is True


def test_apt_install_runs_apt_get():
    executor = ScriptedExecutor(responses={("dpkg-query", "-W"): (1, "")})
    changed, details = AptPackageManager().ensure_present(executor, ["nginx"], update_cache=True)

    assert changed is True
    assert details == "installed=nginx"
    assert ["apt-get", "update"] in executor.commands
    assert ["apt-get", "install", "-y", "nginx"] in executor.commands
