from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .config import MarionetteConfig
from .errors import ConfigurationError, HandlerError, RemoteExecutionError
from .executors import Executor, LocalExecutor, SshExecutor
from .graph import HostPlan, PlannedTask, TaskGraph, TaskGraphBuilder
from .inventory import VariableResolver
from .playbook import RoleLoader, role_search_paths
from .report import HostReport, HostState, RunReport
from .secrets import SecretResolver
from .types import ActionResult, HostConfig, Inventory, Playbook

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[HostConfig, PlannedTask], None]
ExecutorFactory = Callable[[HostConfig], Executor]


class Orchestrator:
    """Drives a playbook across the inventory and collects the run report.

    Each host gets one worker; workers run concurrently up to ``forks`` while
    the tasks of a single host run strictly in order. Handlers notified by
    changed tasks fire once per host, after its regular tasks, in the order
    they were first notified.
    ``host_states`` follows every host from pending through running to its
    final state.
    """

    def __init__(
        self,
        config: Optional[MarionetteConfig] = None,
        *,
        check: bool = False,
        executor_factory: Optional[ExecutorFactory] = None,
        progress_callback: Optional[ProgressCallback] = None,
        secret_resolver: Optional[SecretResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or MarionetteConfig()
        self.check = check
        self.executor_factory = executor_factory or self._executor_for
        self.progress_callback = progress_callback
        self.secret_resolver = secret_resolver
        self._sleep = sleep
        self._abort = threading.Event()
        self.host_states: dict[str, HostState] = {}

    def run(self, playbook: Playbook, inventory: Inventory, *, limit: Optional[str] = None) -> RunReport:
        graph = self.build(playbook, inventory, limit=limit)
        return self.execute(graph)

    def build(self, playbook: Playbook, inventory: Inventory, *, limit: Optional[str] = None) -> TaskGraph:
        loader = RoleLoader(role_search_paths(playbook, self.config.roles_path))
        roles = loader.load_all(name for play in playbook.plays for name in play.roles)
        resolver = VariableResolver(inventory, secret_resolver=self.secret_resolver)
        return TaskGraphBuilder(inventory, roles, resolver=resolver).build(playbook, limit=limit)

    def execute(self, graph: TaskGraph) -> RunReport:
        executors = {name: self.executor_factory(plan.host) for name, plan in graph.hosts.items()}
        self.host_states = {name: HostState.PENDING for name in graph.hosts}
        forks = max(1, self.config.forks)
        logger.info("run hosts=%d forks=%d check=%s", len(graph.hosts), forks, self.check)
        with ThreadPoolExecutor(max_workers=forks, thread_name_prefix="marionette") as pool:
            futures = [
                pool.submit(self._run_host, plan, executors[name])
                for name, plan in graph.hosts.items()
            ]
            reports = tuple(future.result() for future in futures)
        return RunReport(hosts=reports, check=self.check, aborted=self._abort.is_set())

    def abort(self) -> None:
        """Stop issuing new tasks; operations already in flight finish."""
        logger.warning("abort requested; waiting for in-flight tasks")
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _run_host(self, plan: HostPlan, executor: Executor) -> HostReport:
        host = plan.host
        state = self.host_states[host.name] = HostState.RUNNING
        error: Optional[str] = None
        results: list[ActionResult] = []
        # dict as an ordered set: first notification decides firing order
        notified: dict[str, None] = {}
        fired: list[str] = []
        logger.debug("host=%s state=%s tasks=%d", host.name, state.value, len(plan.tasks))

        for index, planned in enumerate(plan.tasks):
            if self._abort.is_set():
                error = "run aborted"
                results.extend(self._skipped(host, plan.tasks[index:]))
                break
            result = self._apply(host, executor, planned)
            results.append(result)
            if result.failed:
                error = f"task '{planned.name}' failed: {result.details}"
                results.extend(self._skipped(host, plan.tasks[index + 1 :]))
                break
            if result.changed:
                for name in planned.task.notify:
                    notified.setdefault(name, None)

        if error is None:
            pending = list(notified)
            for index, name in enumerate(pending):
                handler = plan.handlers[name]
                if self._abort.is_set():
                    error = "run aborted"
                    results.extend(self._skipped(host, [plan.handlers[n] for n in pending[index:]], handler=True))
                    break
                result = self._apply(host, executor, handler, handler=True)
                fired.append(name)
                results.append(result)
                if result.failed:
                    error = str(HandlerError(name, result.details))
                    remaining = [plan.handlers[n] for n in pending[index + 1 :]]
                    results.extend(self._skipped(host, remaining, handler=True))
                    break

        state = self.host_states[host.name] = HostState.FAILED if error else HostState.COMPLETED
        if error:
            logger.error("host=%s state=%s %s", host.name, state.value, error)
        else:
            logger.info("host=%s state=%s handlers=%s", host.name, state.value, ",".join(fired) or "-")
        return HostReport(
            host=host.name,
            state=state,
            results=tuple(results),
            handlers_fired=tuple(fired),
            error=error,
        )

    def _apply(
        self, host: HostConfig, executor: Executor, planned: PlannedTask, *, handler: bool = False
    ) -> ActionResult:
        if self.progress_callback:
            self.progress_callback(host, planned)
        if planned.error or planned.operation is None:
            result = self._failure(host, planned, planned.error or "task was not built", retryable=False)
        else:
            result = self._apply_with_retries(host, executor, planned)
        result.task = planned.name
        result.handler = handler
        logger.debug(
            "action=%s host=%s task='%s' status=%s", result.action, host.name, planned.name, result.status
        )
        return result

    def _apply_with_retries(self, host: HostConfig, executor: Executor, planned: PlannedTask) -> ActionResult:
        operation = planned.operation
        assert operation is not None
        attempt = 0
        while True:
            try:
                result = operation.apply(host, executor)
            except RemoteExecutionError as exc:
                # actions that always act are attempted once
                retry = exc.retryable and operation.idempotent
                if retry and attempt < self.config.retries and not self._abort.is_set():
                    delay = self.config.retry_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "action=%s host=%s transient failure (attempt %d/%d, retry in %.1fs): %s",
                        operation.kind,
                        host.name,
                        attempt,
                        self.config.retries,
                        delay,
                        exc,
                    )
                    self._sleep(delay)
                    continue
                return self._failure(host, planned, str(exc), retryable=exc.retryable)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "action=%s host=%s failed: %s", operation.kind, host.name, exc, exc_info=True
                )
                return self._failure(host, planned, str(exc), retryable=False)
            if result.resource is None:
                result.resource = operation.resource
            return result

    @staticmethod
    def _failure(host: HostConfig, planned: PlannedTask, details: str, *, retryable: bool) -> ActionResult:
        operation = planned.operation
        return ActionResult(
            host=host.name,
            action=operation.kind if operation else planned.task.type,
            changed=False,
            details=details,
            failed=True,
            resource=operation.resource if operation else None,
            retryable=retryable,
        )

    @staticmethod
    def _skipped(host: HostConfig, planned: list[PlannedTask], *, handler: bool = False) -> list[ActionResult]:
        return [
            ActionResult(
                host=host.name,
                action=item.operation.kind if item.operation else item.task.type,
                changed=False,
                details="skipped",
                resource=item.operation.resource if item.operation else None,
                task=item.name,
                skipped=True,
                handler=handler,
            )
            for item in planned
        ]

    def _executor_for(self, host: HostConfig) -> Executor:
        if host.connection == "local":
            return LocalExecutor(host, dry_run=self.check, timeout=self.config.timeout)
        if host.connection == "ssh":
            return SshExecutor(
                host,
                dry_run=self.check,
                timeout=self.config.timeout,
                ssh_executable=self.config.ssh_executable,
                ssh_options=self.config.ssh_options,
            )
        raise ConfigurationError(f"host '{host.name}' uses unknown connection '{host.connection}'")
