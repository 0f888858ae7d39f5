from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from .types import ActionResult


class HostState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class HostStats:
    ok: int = 0
    changed: int = 0
    unreachable: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_results(cls, results: Iterable[ActionResult]) -> "HostStats":
        counts = {"ok": 0, "changed": 0, "unreachable": 0, "failed": 0, "skipped": 0}
        for result in results:
            counts[result.status] += 1
        return cls(**counts)

    def __add__(self, other: "HostStats") -> "HostStats":
        return HostStats(
            ok=self.ok + other.ok,
            changed=self.changed + other.changed,
            unreachable=self.unreachable + other.unreachable,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "ok": self.ok,
            "changed": self.changed,
            "unreachable": self.unreachable,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class HostReport:
    host: str
    state: HostState
    results: tuple[ActionResult, ...] = ()
    handlers_fired: tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def stats(self) -> HostStats:
        return HostStats.from_results(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "state": self.state.value,
            "error": self.error,
            "handlers_fired": list(self.handlers_fired),
            "stats": self.stats.to_dict(),
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class RunReport:
    """Terminal record of one orchestration run, one entry per host."""

    hosts: tuple[HostReport, ...] = ()
    check: bool = False
    aborted: bool = False
    _index: dict[str, HostReport] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {report.host: report for report in self.hosts})

    def __getitem__(self, host: str) -> HostReport:
        return self._index[host]

    def __contains__(self, host: object) -> bool:
        return host in self._index

    def __iter__(self) -> Iterator[HostReport]:
        return iter(self.hosts)

    def __len__(self) -> int:
        return len(self.hosts)

    @property
    def results(self) -> list[ActionResult]:
        return [result for report in self.hosts for result in report.results]

    @property
    def totals(self) -> HostStats:
        total = HostStats()
        for report in self.hosts:
            total = total + report.stats
        return total

    @property
    def succeeded(self) -> bool:
        return all(report.state is HostState.COMPLETED for report in self.hosts)

    @property
    def failed_hosts(self) -> list[str]:
        return [report.host for report in self.hosts if report.state is HostState.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check,
            "aborted": self.aborted,
            "succeeded": self.succeeded,
            "totals": self.totals.to_dict(),
            "hosts": [report.to_dict() for report in self.hosts],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
