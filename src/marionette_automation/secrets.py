from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Optional

from .errors import ConfigurationError, UndefinedVariableError
from .templating import Verbatim

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

logger = logging.getLogger(__name__)


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and "aws_secret" in value


class SecretResolver:
    """Replaces ``{aws_secret: name, key: field}`` references with their values.

    Lookups are cached per resolver so a secret shared by many hosts is only
    fetched once per run.
    """

    def __init__(self, *, region: Optional[str] = None, profile: Optional[str] = None):
        self.region = region
        self.profile = profile
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._client = None
        self._lock = threading.Lock()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self.resolve_value(v) for k, v in values.items()}

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if is_secret_reference(value):
                return self._resolve_aws_secret(value)
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]
            secret_str = self._fetch(name)

            value: Any = secret_str
            if key is not None:
                try:
                    payload = json.loads(secret_str)
                except json.JSONDecodeError:
                    raise ConfigurationError(f"secret {name} is not a JSON document") from None
                if str(key) not in payload:
                    raise UndefinedVariableError(f"{name}.{key}")
                value = payload[str(key)]

            value = _verbatim(value)
            self._cache[cache_key] = value
            return value

    def _fetch(self, name: str) -> str:
        if boto3 is None:
            raise ConfigurationError("boto3 is required to resolve aws_secret references")
        if self._client is None:
            session = boto3.session.Session(profile_name=self.profile, region_name=self.region)
            self._client = session.client("secretsmanager")
        logger.debug("fetching secret=%s", name)
        try:
            response = self._client.get_secret_value(SecretId=name)
        except Exception as exc:  # noqa: BLE001
            raise UndefinedVariableError(name, f"secret {name} could not be fetched: {exc}") from None
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise ConfigurationError(f"secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()
        return secret_str


def _verbatim(value: Any) -> Any:
    """Mark fetched strings so braces in a secret are never read as placeholders."""
    if isinstance(value, str):
        return Verbatim(value)
    if isinstance(value, dict):
        return {k: _verbatim(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_verbatim(v) for v in value]
    return value
