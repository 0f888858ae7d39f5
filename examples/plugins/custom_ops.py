"""
Example plugin module for Marionette.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it registers a ``command`` operation that runs
a shell command unless the path named by ``creates`` already exists.

    - name: initialise web root
      command:
        cmd: /usr/local/bin/bootstrap-site --target /srv/www
        creates: /srv/www/.bootstrapped
"""

import shlex

from marionette_automation.operations.base import Operation
from marionette_automation.types import ActionResult, HostConfig


class CommandOperation(Operation):
    kind = "command"
    resource_keys = ("creates", "cmd")

    def __init__(self, spec: dict):
        super().__init__(spec)
        cmd = spec.get("cmd")
        if not cmd:
            raise ValueError("command operation requires cmd")
        self.argv = shlex.split(cmd) if isinstance(cmd, str) else [str(c) for c in cmd]
        self.creates = spec.get("creates")

    @property
    def idempotent(self) -> bool:
        return self.creates is not None

    def apply(self, host: HostConfig, executor) -> ActionResult:
        if self.creates and executor.path_kind(self.creates) is not None:
            return self.result(host, False, f"{self.creates} exists")
        executor.run(self.argv)
        return self.result(host, True, "ran")


def register_operations(registry) -> None:
    registry["command"] = CommandOperation
