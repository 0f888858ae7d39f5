import pytest

from marionette_automation import runner as runner_mod
from marionette_automation.config import MarionetteConfig
from marionette_automation.errors import CommandError, ConfigurationError, RemoteExecutionError
from marionette_automation.executors import LocalExecutor
from marionette_automation.graph import TaskGraphBuilder
from marionette_automation.operations.base import Operation
from marionette_automation.report import HostState
from marionette_automation.types import (
    ActionResult,
    GroupConfig,
    HostConfig,
    Inventory,
    PlaySpec,
    Playbook,
    TaskSpec,
)


CALLS: list[tuple[str, str]] = []


class RecordOperation(Operation):
    """Records each application; ``changed`` and ``fail_on`` steer the outcome."""

    kind = "record"

    def apply(self, host: HostConfig, executor) -> ActionResult:  # noqa: ARG002
        CALLS.append((host.name, self.spec["name"]))
        if host.name in self.spec.get("fail_on", []):
            return ActionResult(host=host.name, action=self.kind, changed=False, details="boom", failed=True)
        return self.result(host, bool(self.spec.get("changed", False)), "recorded")


class FlakyOperation(Operation):
    kind = "flaky"
    attempts = 0

    def apply(self, host: HostConfig, executor) -> ActionResult:  # noqa: ARG002
        type(self).attempts += 1
        if type(self).attempts <= self.spec.get("failures", 0):
            raise RemoteExecutionError("connection reset", retryable=True)
        return self.result(host, True, "done")


class FlakyRestartOperation(FlakyOperation):
    kind = "flaky_restart"

    @property
    def idempotent(self) -> bool:
        return False


class BrokenOperation(Operation):
    kind = "broken"

    def apply(self, host: HostConfig, executor) -> ActionResult:  # noqa: ARG002
        raise CommandError(["false"], 1, stderr="nope")


REGISTRY = {
    "record": RecordOperation,
    "flaky": FlakyOperation,
    "flaky_restart": FlakyRestartOperation,
    "broken": BrokenOperation,
}


@pytest.fixture(autouse=True)
def reset_calls():
    CALLS.clear()
    FlakyOperation.attempts = 0
    FlakyRestartOperation.attempts = 0
    yield


def make_inventory(*names: str) -> Inventory:
    hosts = {name: HostConfig(name=name, connection="local", groups=["webservers"]) for name in names}
    groups = {
        "all": GroupConfig(name="all", hosts=list(names)),
        "webservers": GroupConfig(name="webservers", hosts=list(names)),
    }
    return Inventory(hosts=hosts, groups=groups)


def task(name: str, kind: str = "record", notify=(), **data) -> TaskSpec:
    return TaskSpec(name=name, type=kind, data={"name": name, **data}, notify=list(notify))


def run(play: PlaySpec, inventory: Inventory, **kwargs):
    sleeps: list[float] = []
    config = kwargs.pop("config", MarionetteConfig(forks=2, retries=2, retry_delay=0.5))
    orchestrator = runner_mod.Orchestrator(
        config,
        executor_factory=lambda host: LocalExecutor(host),
        sleep=sleeps.append,
        **kwargs,
    )
    graph = TaskGraphBuilder(inventory, {}, registry=REGISTRY).build(Playbook(plays=[play]))
    return orchestrator.execute(graph), sleeps


def test_tasks_run_in_declared_order_per_host():
    play = PlaySpec(hosts="all", tasks=[task("one"), task("two"), task("three")])
    report, _ = run(play, make_inventory("web1", "web2"))

    assert report.succeeded
    assert [h.host for h in report] == ["web1", "web2"]
    for host in ("web1", "web2"):
        assert [name for h, name in CALLS if h == host] == ["one", "two", "three"]
        assert report[host].state is HostState.COMPLETED


def test_handlers_fire_once_in_first_notified_order():
    play = PlaySpec(
        hosts="all",
        tasks=[
            task("config", changed=True, notify=["restart"]),
            task("site", changed=True, notify=["reload", "restart"]),
            task("unchanged", changed=False, notify=["never"]),
            task("more", changed=True, notify=["reload"]),
        ],
        handlers=[task("never"), task("reload", changed=True), task("restart", changed=True)],
    )
    report, _ = run(play, make_inventory("web1"))

    host = report["web1"]
    assert host.handlers_fired == ("restart", "reload")
    assert [name for _, name in CALLS] == ["config", "site", "unchanged", "more", "restart", "reload"]
    assert [r.task for r in host.results if r.handler] == ["restart", "reload"]


def test_unchanged_tasks_do_not_notify():
    play = PlaySpec(hosts="all", tasks=[task("config", notify=["restart"])], handlers=[task("restart")])
    report, _ = run(play, make_inventory("web1"))
    assert report["web1"].handlers_fired == ()
    assert report.totals.ok == 1


def test_failure_is_isolated_to_its_host():
    play = PlaySpec(
        hosts="all",
        tasks=[
            task("one", changed=True, notify=["restart"]),
            task("two", fail_on=["web2"]),
            task("three"),
        ],
        handlers=[task("restart")],
    )
    report, _ = run(play, make_inventory("web1", "web2", "web3"))

    assert report.failed_hosts == ["web2"]
    assert not report.succeeded
    web2 = report["web2"]
    assert web2.state is HostState.FAILED
    assert [r.status for r in web2.results] == ["changed", "failed", "skipped"]
    assert web2.handlers_fired == ()
    assert "two" in web2.error
    for host in ("web1", "web3"):
        assert report[host].state is HostState.COMPLETED
        assert report[host].handlers_fired == ("restart",)
    assert ("web2", "three") not in CALLS


def test_transient_failures_are_retried_with_backoff():
    play = PlaySpec(hosts="all", tasks=[task("flaky", kind="flaky", failures=2)])
    report, sleeps = run(play, make_inventory("web1"))

    assert report.succeeded
    assert FlakyOperation.attempts == 3
    assert sleeps == [0.5, 1.0]
    assert report["web1"].results[0].status == "changed"


def test_exhausted_retries_mark_host_unreachable():
    play = PlaySpec(hosts="all", tasks=[task("flaky", kind="flaky", failures=10), task("after")])
    report, sleeps = run(play, make_inventory("web1"))

    results = report["web1"].results
    assert results[0].status == "unreachable"
    assert results[0].retryable is True
    assert results[1].status == "skipped"
    assert sleeps == [0.5, 1.0]
    assert report.totals.unreachable == 1
    assert report["web1"].state is HostState.FAILED


def test_actions_that_always_act_are_not_retried():
    play = PlaySpec(hosts="all", tasks=[task("restart", kind="flaky_restart", failures=1)])
    report, sleeps = run(play, make_inventory("web1"))

    assert FlakyRestartOperation.attempts == 1
    assert sleeps == []
    assert report["web1"].results[0].status == "unreachable"


def test_permanent_errors_are_not_retried():
    play = PlaySpec(hosts="all", tasks=[task("broken", kind="broken")])
    report, sleeps = run(play, make_inventory("web1"))

    result = report["web1"].results[0]
    assert result.status == "failed"
    assert "exited with 1" in result.details
    assert sleeps == []


def test_handler_failure_fails_host_after_tasks():
    play = PlaySpec(
        hosts="all",
        tasks=[task("config", changed=True, notify=["restart", "reload"])],
        handlers=[task("restart", fail_on=["web1"]), task("reload")],
    )
    report, _ = run(play, make_inventory("web1"))

    host = report["web1"]
    assert host.state is HostState.FAILED
    assert "handler 'restart' failed" in host.error
    assert [r.status for r in host.results] == ["changed", "failed", "skipped"]
    assert ("web1", "reload") not in CALLS


def test_abort_stops_new_tasks_and_records_skips():
    holder = {}

    class AbortingOperation(Operation):
        kind = "abort"

        def apply(self, host: HostConfig, executor) -> ActionResult:  # noqa: ARG002
            holder["orchestrator"].abort()
            return self.result(host, True, "aborting")

    registry = dict(REGISTRY, abort=AbortingOperation)
    inventory = make_inventory("web1", "web2")
    play = PlaySpec(hosts="all", tasks=[task("stop", kind="abort"), task("after")])
    orchestrator = runner_mod.Orchestrator(
        MarionetteConfig(forks=1), executor_factory=lambda host: LocalExecutor(host)
    )
    holder["orchestrator"] = orchestrator
    graph = TaskGraphBuilder(inventory, {}, registry=registry).build(Playbook(plays=[play]))

    report = orchestrator.execute(graph)

    assert report.aborted
    assert [r.status for r in report["web1"].results] == ["changed", "skipped"]
    assert [r.status for r in report["web2"].results] == ["skipped", "skipped"]
    assert report.failed_hosts == ["web1", "web2"]
    assert CALLS == []


def test_render_failure_is_reported_for_that_host_only():
    inventory = make_inventory("web1", "web2")
    inventory.hosts["web1"].variables["site"] = "one"
    play = PlaySpec(hosts="all", tasks=[task("render", label="{{ site }}")])
    report, _ = run(play, inventory)

    assert report["web1"].state is HostState.COMPLETED
    assert report["web2"].state is HostState.FAILED
    assert "site" in report["web2"].results[0].details


def test_check_mode_uses_dry_run_executors():
    seen = []

    class DryRunCheckOperation(Operation):
        kind = "dry_run_check"

        def apply(self, host: HostConfig, executor) -> ActionResult:
            seen.append(executor.dry_run)
            return self.result(host, True, "would change")

    inventory = make_inventory("web1")
    play = PlaySpec(hosts="all", tasks=[TaskSpec(name="dry_run_check", type="dry_run_check", data={})])
    orchestrator = runner_mod.Orchestrator(MarionetteConfig(), check=True)
    graph = TaskGraphBuilder(inventory, {}, registry={"dry_run_check": DryRunCheckOperation}).build(Playbook(plays=[play]))

    report = orchestrator.execute(graph)

    assert seen == [True]
    assert report.check is True
    assert report.to_dict()["totals"]["changed"] == 1


def test_progress_callback_sees_every_task():
    seen = []
    play = PlaySpec(hosts="all", tasks=[task("one"), task("two")])
    run(play, make_inventory("web1"), progress_callback=lambda host, planned: seen.append((host.name, planned.name)))
    assert seen == [("web1", "one"), ("web1", "two")]


def test_unknown_connection_is_a_configuration_error():
    inventory = make_inventory("web1")
    inventory.hosts["web1"].connection = "winrm"
    graph = TaskGraphBuilder(inventory, {}, registry=REGISTRY).build(
        Playbook(plays=[PlaySpec(hosts="all", tasks=[task("one")])])
    )
    with pytest.raises(ConfigurationError, match="winrm"):
        runner_mod.Orchestrator().execute(graph)


def test_executor_selection_follows_connection():
    orchestrator = runner_mod.Orchestrator(MarionetteConfig(ssh_options=["-F", "/dev/null"]))
    local = orchestrator._executor_for(HostConfig(name="localhost", connection="local"))
    remote = orchestrator._executor_for(HostConfig(name="web1", connection="ssh"))
    assert isinstance(local, runner_mod.LocalExecutor)
    assert isinstance(remote, runner_mod.SshExecutor)
    assert remote.ssh_options == ["-F", "/dev/null"]


def test_host_states_move_from_pending_to_final():
    snapshots = []
    orchestrator = runner_mod.Orchestrator(
        MarionetteConfig(forks=1),
        executor_factory=lambda host: LocalExecutor(host),
        progress_callback=lambda host, planned: snapshots.append(dict(orchestrator.host_states)),
    )
    play = PlaySpec(hosts="all", tasks=[task("one", fail_on=["web2"])])
    graph = TaskGraphBuilder(make_inventory("web1", "web2"), {}, registry=REGISTRY).build(Playbook(plays=[play]))

    orchestrator.execute(graph)

    assert snapshots[0] == {"web1": HostState.RUNNING, "web2": HostState.PENDING}
    assert orchestrator.host_states == {"web1": HostState.COMPLETED, "web2": HostState.FAILED}
