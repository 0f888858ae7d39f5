import stat
from pathlib import Path

import pytest

from marionette_automation.executors import LocalExecutor
from marionette_automation.operations.template import CopyOperation, TemplateOperation
from marionette_automation.types import HostConfig


HOST = HostConfig(name="local")


def mode_of(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_template_writes_then_is_unchanged(tmp_path: Path):
    dest = tmp_path / "www" / "index.html"
    op = TemplateOperation({"dest": str(dest), "content": "<h1>Welcome to web1!</h1>\n", "mode": "0750"})

    first = op.apply(HOST, LocalExecutor(HOST))
    second = op.apply(HOST, LocalExecutor(HOST))

    assert first.changed is True
    assert first.details == "created, mode->0750"
    assert dest.read_text() == "<h1>Welcome to web1!</h1>\n"
    assert mode_of(dest) == 0o750
    assert second.changed is False
    assert second.details == "noop"
    assert second.resource == str(dest)


def test_template_rewrites_divergent_content(tmp_path: Path):
    dest = tmp_path / "nginx.conf"
    dest.write_text("listen 8000;\n")
    op = TemplateOperation({"dest": str(dest), "content": "listen 80;\n"})

    result = op.apply(HOST, LocalExecutor(HOST))

    assert result.changed is True
    assert result.details == "content"
    assert dest.read_text() == "listen 80;\n"


def test_template_fixes_mode_only(tmp_path: Path):
    dest = tmp_path / "motd"
    dest.write_text("hello\n")
    dest.chmod(0o600)
    op = TemplateOperation({"dest": str(dest), "content": "hello\n", "mode": "0644"})

    result = op.apply(HOST, LocalExecutor(HOST))

    assert result.changed is True
    assert result.details == "mode->0644"
    assert mode_of(dest) == 0o644


def test_template_dry_run_reports_without_writing(tmp_path: Path):
    dest = tmp_path / "index.html"
    op = TemplateOperation({"dest": str(dest), "content": "hi\n", "mode": "0644"})

    result = op.apply(HOST, LocalExecutor(HOST, dry_run=True))

    assert result.changed is True
    assert not dest.exists()


def test_copy_shares_template_semantics(tmp_path: Path):
    dest = tmp_path / "robots.txt"
    op = CopyOperation({"dest": str(dest), "content": "User-agent: *\n"})
    assert op.apply(HOST, LocalExecutor(HOST)).action == "copy"
    assert op.apply(HOST, LocalExecutor(HOST)).changed is False


def test_template_requires_dest_and_content():
    with pytest.raises(ValueError):
        TemplateOperation({"content": "x"})
    with pytest.raises(ValueError):
        TemplateOperation({"dest": "/tmp/x"})
    with pytest.raises(ValueError):
        TemplateOperation({"dest": "/tmp/x", "content": "x", "mode": "rw-r--r--"})
