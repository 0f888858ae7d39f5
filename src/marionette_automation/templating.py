"""Placeholder expansion for task parameters and template files.

Plain text only understands ``{{ name }}`` and ``{{ name.key.0 }}`` lookups.
Text that contains Jinja2 block syntax (``{% ... %}`` or ``{# ... #}``) is
handed to Jinja2 with ``StrictUndefined`` so loops and conditionals in role
templates keep working.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import jinja2
import jinja2.meta
from jinja2 import nodes

from .errors import RenderError, UndefinedVariableError

OPEN = "{{"
CLOSE = "}}"

EXPRESSION_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.(?:[A-Za-z_][A-Za-z0-9_]*|\d+))*$")
SINGLE_PLACEHOLDER_RE = re.compile(r"^\s*\{\{\s*([^{}]*?)\s*\}\}\s*$")
JINJA_BLOCK_RE = re.compile(r"\{[%#]")
JINJA_UNDEFINED_RE = re.compile(r"'([^']+)' (?:is undefined|has no attribute '([^']+)')")


class Verbatim(str):
    """A string that is never parsed for placeholders."""


def _finalize(value: Any) -> Any:
    return "" if value is None else value


_jinja_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    finalize=_finalize,
)


def has_placeholders(text: str) -> bool:
    return OPEN in text or bool(JINJA_BLOCK_RE.search(text))


def render(text: str, namespace: Mapping[str, Any]) -> str:
    """Return ``text`` with every placeholder replaced from ``namespace``.

    A ``}}`` that closes no placeholder is literal text, as it is for Jinja2.
    """

    if isinstance(text, Verbatim):
        return text
    if JINJA_BLOCK_RE.search(text):
        return _render_jinja(text, namespace)

    parts: list[str] = []
    pos = 0
    while True:
        start = text.find(OPEN, pos)
        if start == -1:
            parts.append(text[pos:])
            break
        parts.append(text[pos:start])
        end = text.find(CLOSE, start + len(OPEN))
        if end == -1:
            raise RenderError(f"unclosed placeholder at offset {start}")
        inner = text[start + len(OPEN) : end]
        if OPEN in inner:
            raise RenderError(f"nested '{OPEN}' in placeholder at offset {start}")
        parts.append(_stringify(lookup(namespace, _parse_expression(inner, start))))
        pos = end + len(CLOSE)
    return "".join(parts)


def render_value(value: Any, namespace: Mapping[str, Any]) -> Any:
    """Render strings nested anywhere inside ``value``.

    A string made of exactly one placeholder yields the referenced value
    itself, so ``"{{ http_port }}"`` stays an integer.
    """

    if isinstance(value, Verbatim):
        return value
    if isinstance(value, str):
        if not has_placeholders(value):
            return value
        match = SINGLE_PLACEHOLDER_RE.match(value)
        if match and not JINJA_BLOCK_RE.search(value):
            return lookup(namespace, _parse_expression(match.group(1), 0))
        return render(value, namespace)
    if isinstance(value, dict):
        return {key: render_value(item, namespace) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item, namespace) for item in value]
    return value


def referenced_names(value: Any) -> set[str]:
    """Top-level variable names a value refers to."""

    if isinstance(value, Verbatim):
        return set()
    if isinstance(value, str):
        if not has_placeholders(value):
            return set()
        try:
            return jinja2.meta.find_undeclared_variables(_jinja_env.parse(value))
        except jinja2.TemplateSyntaxError as exc:
            raise RenderError(f"line {exc.lineno}: {exc.message}") from None
    if isinstance(value, dict):
        names: set[str] = set()
        for item in value.values():
            names |= referenced_names(item)
        return names
    if isinstance(value, (list, tuple)):
        names = set()
        for item in value:
            names |= referenced_names(item)
        return names
    return set()


def render_file(path: Path, namespace: Mapping[str, Any]) -> str:
    try:
        text = Path(path).read_text()
    except FileNotFoundError:
        raise RenderError(f"template {path} does not exist") from None
    try:
        return render(text, namespace)
    except RenderError as exc:
        raise RenderError(f"{path}: {exc}") from None


def lookup(namespace: Mapping[str, Any], expression: str) -> Any:
    """Resolve a dotted ``expression`` against ``namespace``."""

    current: Any = namespace
    parts = expression.split(".")
    for index, part in enumerate(parts):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
            continue
        if isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            position = int(part)
            if position < len(current):
                current = current[position]
                continue
        raise UndefinedVariableError(".".join(parts[: index + 1]))
    return current


def _parse_expression(inner: str, offset: int) -> str:
    expression = inner.strip()
    if not expression:
        raise RenderError(f"empty placeholder at offset {offset}")
    if not EXPRESSION_RE.match(expression):
        raise RenderError(f"malformed expression '{expression}' at offset {offset}")
    return expression


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _render_jinja(text: str, namespace: Mapping[str, Any]) -> str:
    try:
        template = _jinja_env.from_string(text)
        return template.render(dict(namespace))
    except jinja2.UndefinedError as exc:
        raise UndefinedVariableError(_undefined_name(exc, text), str(exc)) from None
    except jinja2.TemplateSyntaxError as exc:
        raise RenderError(f"line {exc.lineno}: {exc.message}") from None


def _undefined_name(exc: jinja2.UndefinedError, text: str) -> str:
    match = JINJA_UNDEFINED_RE.search(str(exc))
    if not match:
        return str(exc)
    attribute = match.group(2)
    if not attribute:
        return match.group(1)
    # Jinja2 only knows the missing attribute; recover the dotted path from the template
    for node in _jinja_env.parse(text).find_all((nodes.Getattr, nodes.Getitem)):
        path = _dotted_path(node)
        if path and path.rsplit(".", 1)[-1] == attribute:
            return path
    return attribute


def _dotted_path(node: nodes.Node) -> Optional[str]:
    parts: list[str] = []
    while isinstance(node, (nodes.Getattr, nodes.Getitem)):
        if isinstance(node, nodes.Getattr):
            parts.append(node.attr)
        elif isinstance(node.arg, nodes.Const):
            parts.append(str(node.arg.value))
        else:
            return None
        node = node.node
    if not isinstance(node, nodes.Name):
        return None
    parts.append(node.name)
    return ".".join(reversed(parts))
