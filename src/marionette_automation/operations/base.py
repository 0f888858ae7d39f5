from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..types import ActionResult, HostConfig
from ..executors import Executor


class Operation(ABC):
    """Shared surface for runnable automation actions.

    Subclasses validate their parameters in ``__init__`` (raising
    ``ValueError``) so a malformed task is rejected before any host is
    contacted.
    """

    kind = "operation"
    resource_keys: tuple[str, ...] = ("name", "path", "dest")

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        """Perform the operation against ``host`` using ``executor``."""

    @property
    def idempotent(self) -> bool:
        return True

    @property
    def resource(self) -> Optional[str]:
        for key in self.resource_keys:
            value = self.spec.get(key)
            if isinstance(value, (list, tuple)):
                return ",".join(str(v) for v in value) or None
            if value:
                return str(value)
        return None

    def describe(self) -> str:
        resource = f"[{self.resource}]" if self.resource else ""
        return f"{self.kind}{resource}"

    def result(self, host: HostConfig, changed: bool, details: str) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=self.kind,
            changed=changed,
            details=details,
            resource=self.resource,
        )

    @staticmethod
    def _parse_mode(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return int(text, 8)
        except ValueError:
            raise ValueError(f"invalid mode '{text}'") from None

    @staticmethod
    def _coerce_bool(value: Any) -> Optional[bool]:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "on", "1"}:
                return True
            if lowered in {"false", "no", "off", "0"}:
                return False
            raise ValueError(f"Unable to interpret boolean value '{value}'")
        return bool(value)

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)
