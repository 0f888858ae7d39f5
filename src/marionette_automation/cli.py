from __future__ import annotations

import argparse
import contextlib
import importlib
import importlib.util
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .config import DEFAULT_CONFIG, load_config
from .errors import ConfigurationError, MarionetteError
from .graph import PlannedTask
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .playbook import PlaybookLoader
from .report import HostStats, RunReport
from .runner import Orchestrator
from .secrets import SecretResolver
from .types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_HOSTS_FAILED = 2
EXIT_CONFIG_INVALID = 4


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


STATUS_COLORS = {
    "changed": Ansi.GREEN,
    "failed": Ansi.RED,
    "unreachable": Ansi.ORANGE,
    "skipped": Ansi.YELLOW,
    "ok": Ansi.BLUE,
}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="marionette", description="Marionette agentless configuration runner")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Apply a playbook to the inventory")
    run.add_argument("playbook", type=Path, help="Path to the playbook file")
    run.add_argument(
        "-i",
        "--inventory",
        type=Path,
        help="Inventory file or directory (default from config)",
    )
    run.add_argument("-l", "--limit", help="Further restrict the hosts selected by each play")
    run.add_argument("--check", action="store_true", help="Report what would change without changing it")
    run.add_argument("-f", "--forks", type=int, help="Number of hosts handled in parallel")
    run.add_argument("--json", action="store_true", help="Print the run report as JSON")
    run.add_argument("--report-file", type=Path, help="Also write the JSON run report to this path")
    run.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to marionette config file (default: {DEFAULT_CONFIG})",
    )
    run.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
        if args.forks is not None:
            if args.forks < 1:
                raise ConfigurationError("--forks must be at least 1")
            cfg.forks = args.forks
        _apply_aws_env(cfg)
        _load_plugins(cfg)

        inventory_path = args.inventory or cfg.inventory
        if inventory_path is None:
            raise ConfigurationError("no inventory given (use --inventory or set it in the config)")
        inventory = InventoryLoader(default_connection=cfg.default_connection).load(inventory_path)
        playbook = PlaybookLoader().load(args.playbook)

        orchestrator = Orchestrator(
            cfg,
            check=args.check,
            progress_callback=None if args.json else print_progress,
            secret_resolver=SecretResolver(region=cfg.aws_region, profile=cfg.aws_profile),
        )
        graph = orchestrator.build(playbook, inventory, limit=args.limit)
        with _abort_on_interrupt(orchestrator):
            report = orchestrator.execute(graph)
    except ConfigurationError as exc:
        _clear_progress()
        print(colorize(f"Configuration invalid: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG_INVALID
    except MarionetteError as exc:
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_HOSTS_FAILED

    _clear_progress()
    if args.json:
        print(report.to_json())
    else:
        print_report(report, logging.getLogger().getEffectiveLevel())

    if args.report_file:
        args.report_file.parent.mkdir(parents=True, exist_ok=True)
        args.report_file.write_text(report.to_json() + "\n")

    return EXIT_OK if report.succeeded else EXIT_HOSTS_FAILED


def print_report(report: RunReport, log_level: int) -> None:
    for result in report.results:
        if should_display_result(result, log_level):
            print(format_result(result))
    print(render_recap(report))
    print(render_summary(report.totals))


def format_result(result: ActionResult) -> str:
    status = result.status
    resource = f"[{result.resource}]" if result.resource else ""
    prefix = "handler " if result.handler else ""
    line = f"{result.host}::{prefix}{result.action}{resource} {status} - {result.details}"
    return colorize(line, STATUS_COLORS.get(status))


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed or result.skipped:
        return True
    return log_level <= logging.DEBUG


def render_recap(report: RunReport) -> str:
    width = max((len(h.host) for h in report), default=0)
    lines = ["RECAP" + (" (check mode)" if report.check else "")]
    for host_report in report:
        stats = host_report.stats
        counts = " ".join(f"{key}={value}" for key, value in stats.to_dict().items())
        color = Ansi.RED if host_report.error else (Ansi.GREEN if stats.changed else Ansi.BLUE)
        line = f"{host_report.host.ljust(width)} : {host_report.state.value:<9} {counts}"
        if host_report.error:
            line += f" - {host_report.error}"
        lines.append(colorize(line, color))
    return "\n".join(lines)


def render_summary(totals: HostStats) -> str:
    text = " | ".join(f"{key.capitalize()}: {value}" for key, value in totals.to_dict().items())
    color = Ansi.RED if totals.failed or totals.unreachable else Ansi.GREEN
    return colorize(text, color)


def print_progress(host: HostConfig, planned: PlannedTask) -> None:
    global _last_progress_len
    label = planned.operation.describe() if planned.operation else planned.task.type
    line = f"{host.name}::{label} pending..."
    _clear_progress()
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


@contextlib.contextmanager
def _abort_on_interrupt(orchestrator: Orchestrator) -> Iterator[None]:
    def handle(signum, frame):  # noqa: ARG001
        _clear_progress()
        print(colorize("Interrupted: finishing in-flight tasks", Ansi.YELLOW), file=sys.stderr)
        orchestrator.abort()

    try:
        previous = signal.signal(signal.SIGINT, handle)
    except ValueError:
        # not the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _load_plugins(cfg) -> None:
    for directory in getattr(cfg, "plugin_dirs", []) or []:
        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigurationError(f"plugin directory {directory} does not exist")
        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            spec = importlib.util.spec_from_file_location(f"marionette_plugin_{path.stem}", path)
            if spec is None or spec.loader is None:
                raise ConfigurationError("cannot load plugin", path=path)
            module = importlib.util.module_from_spec(spec)
            try:
                spec.loader.exec_module(module)
            except Exception as exc:  # noqa: BLE001
                raise ConfigurationError(f"plugin failed to import: {exc}", path=path) from None
            _register_plugin(module, str(path))

    for name in getattr(cfg, "plugin_modules", []) or []:
        try:
            module = importlib.import_module(name)
        except ImportError as exc:
            raise ConfigurationError(f"plugin module {name} failed to import: {exc}") from None
        _register_plugin(module, name)


def _register_plugin(module, label: str) -> None:
    register = getattr(module, "register_operations", None)
    if not callable(register):
        raise ConfigurationError(f"plugin {label} does not define register_operations(registry)")
    before = set(OPERATION_REGISTRY)
    register(OPERATION_REGISTRY)
    logger.debug("plugin=%s operations=%s", label, ",".join(sorted(set(OPERATION_REGISTRY) - before)))


def _apply_aws_env(cfg) -> None:
    if getattr(cfg, "aws_profile", None) and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile  # type: ignore[assignment]
    if getattr(cfg, "aws_region", None):
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region  # type: ignore[assignment]
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region  # type: ignore[assignment]


if __name__ == "__main__":
    raise SystemExit(main())
