from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

RUNNING_STATES = {"started", "running"}
STOPPED_STATES = {"stopped"}
# Not idempotent: always performed.
ACTION_STATES = {"restarted", "reloaded"}


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable)

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])

    def reload(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "reload", service])


class ServiceOperation(Operation):
    """Manage systemd services."""

    kind = "service"
    resource_keys = ("name",)

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        self._enabled = self._coerce_bool(spec.get("enabled"))
        self._state = spec.get("state")
        if self._state is not None:
            self._state = str(self._state)
            if self._state not in RUNNING_STATES | STOPPED_STATES | ACTION_STATES:
                raise ValueError(
                    "service state must be 'started', 'stopped', 'restarted' or 'reloaded'"
                )
        if self._state is None and self._enabled is None:
            raise ValueError("service operation requires a state or enabled")
        self.systemctl = SystemCtl()

    @property
    def idempotent(self) -> bool:
        return self._state not in ACTION_STATES

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not self.systemctl.available(executor):
            raise RuntimeError(f"systemctl is not available on {host.name}")

        changes: list[str] = []

        if self._enabled is not None:
            should_enable = bool(self._enabled)
            enabled = self.systemctl.is_enabled(executor, self.name)
            if should_enable and not enabled:
                logger.debug("Enabling service %s", self.name)
                if not executor.dry_run:
                    self.systemctl.enable(executor, self.name)
                changes.append("enabled")
            elif not should_enable and enabled:
                logger.debug("Disabling service %s", self.name)
                if not executor.dry_run:
                    self.systemctl.disable(executor, self.name)
                changes.append("disabled")

        desired = self._state
        if desired in RUNNING_STATES:
            if not self.systemctl.is_active(executor, self.name):
                logger.debug("Starting service %s", self.name)
                if not executor.dry_run:
                    self.systemctl.start(executor, self.name)
                changes.append("started")
        elif desired in STOPPED_STATES:
            if self.systemctl.is_active(executor, self.name):
                logger.debug("Stopping service %s", self.name)
                if not executor.dry_run:
                    self.systemctl.stop(executor, self.name)
                changes.append("stopped")
        elif desired == "restarted":
            logger.debug("Restarting service %s", self.name)
            if not executor.dry_run:
                self.systemctl.restart(executor, self.name)
            changes.append("restarted")
        elif desired == "reloaded":
            logger.debug("Reloading service %s", self.name)
            if not executor.dry_run:
                self.systemctl.reload(executor, self.name)
            changes.append("reloaded")

        changed = bool(changes)
        detail = ", ".join(changes) if changes else "noop"
        return self.result(host, changed, detail)


class SystemdOperation(ServiceOperation):
    kind = "systemd"
