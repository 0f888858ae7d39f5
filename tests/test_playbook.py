from pathlib import Path
import textwrap

import pytest

from marionette_automation.errors import ConfigurationError, RoleNotFoundError
from marionette_automation.playbook import (
    PlaybookLoader,
    RoleLoader,
    parse_task,
    role_search_paths,
)


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text).lstrip())
    return path


def test_parse_task_module_key_form():
    task = parse_task(
        {"name": "install nginx", "apt": {"name": "nginx", "state": "present"}, "notify": "restart nginx"},
        index=1,
    )
    assert task.type == "apt"
    assert task.data == {"name": "nginx", "state": "present"}
    assert task.notify == ["restart nginx"]


def test_parse_task_free_form_arguments_and_args():
    task = parse_task({"service": "name=nginx state=started", "args": {"enabled": True}}, index=3)
    assert task.type == "service"
    assert task.data == {"name": "nginx", "state": "started", "enabled": True}
    assert task.name == "service #3"


def test_parse_task_explicit_type_form():
    task = parse_task({"type": "file", "path": "/srv/www", "mode": "0755", "tags": ["web"]}, index=1)
    assert task.type == "file"
    assert task.data == {"path": "/srv/www", "mode": "0755"}


def test_parse_task_rejects_conditionals():
    with pytest.raises(ConfigurationError, match="when"):
        parse_task({"apt": {"name": "nginx"}, "when": "ansible_os_family == 'Debian'"}, index=1)


def test_parse_task_requires_exactly_one_operation():
    with pytest.raises(ConfigurationError):
        parse_task({"name": "two", "apt": {"name": "a"}, "service": {"name": "b"}}, index=1)
    with pytest.raises(ConfigurationError):
        parse_task({"name": "none"}, index=2)


def test_parse_task_rejects_bad_notify():
    with pytest.raises(ConfigurationError):
        parse_task({"apt": {"name": "a"}, "notify": {"handler": "x"}}, index=1)


def test_playbook_loader_reads_plays(tmp_path: Path):
    path = write(
        tmp_path / "site.yml",
        """
        - name: web tier
          hosts: [webservers, proxies]
          vars:
            nginx_port: 80
          roles:
            - common
            - role: webserver
          tasks:
            - name: landing page
              template:
                src: index.html.j2
                dest: /var/www/html/index.html
              notify: reload nginx
          handlers:
            - name: reload nginx
              service: name=nginx state=reloaded
        """,
    )
    playbook = PlaybookLoader().load(path)

    play = playbook.plays[0]
    assert play.hosts == "webservers:proxies"
    assert play.roles == ["common", "webserver"]
    assert play.variables == {"nginx_port": 80}
    assert play.tasks[0].notify == ["reload nginx"]
    assert play.handlers[0].name == "reload nginx"
    assert play.base_dir == tmp_path
    assert role_search_paths(playbook, [Path("/opt/roles")]) == [tmp_path / "roles", Path("/opt/roles")]


def test_import_playbook_is_spliced_in_place(tmp_path: Path):
    write(tmp_path / "db.yml", "- hosts: dbservers\n  tasks: []\n")
    path = write(
        tmp_path / "site.yml",
        """
        - hosts: all
        - import_playbook: db.yml
        - hosts: webservers
        """,
    )
    playbook = PlaybookLoader().load(path)
    assert [play.hosts for play in playbook.plays] == ["all", "dbservers", "webservers"]


def test_recursive_import_is_rejected(tmp_path: Path):
    write(tmp_path / "a.yml", "- import_playbook: b.yml\n")
    write(tmp_path / "b.yml", "- import_playbook: a.yml\n")
    with pytest.raises(ConfigurationError, match="recursive"):
        PlaybookLoader().load(tmp_path / "a.yml")


def test_play_with_unknown_key_is_rejected(tmp_path: Path):
    path = write(tmp_path / "site.yml", "- hosts: all\n  strategy: free\n")
    with pytest.raises(ConfigurationError, match="strategy"):
        PlaybookLoader().load(path)


def test_play_requires_hosts(tmp_path: Path):
    path = write(tmp_path / "site.yml", "- name: nowhere\n")
    with pytest.raises(ConfigurationError, match="hosts"):
        PlaybookLoader().load(path)


def test_invalid_yaml_reports_line(tmp_path: Path):
    path = write(tmp_path / "site.yml", "- hosts: all\n  tasks: [\n")
    with pytest.raises(ConfigurationError) as excinfo:
        PlaybookLoader().load(path)
    assert excinfo.value.line is not None


@pytest.fixture
def roles_dir(tmp_path: Path) -> Path:
    base = tmp_path / "roles"
    write(
        base / "webserver" / "tasks" / "main.yml",
        """
        - name: install nginx
          apt: name=nginx
        - import_tasks: config.yml
        """,
    )
    write(
        base / "webserver" / "tasks" / "config.yml",
        """
        - name: nginx configuration
          template:
            src: nginx.conf.j2
            dest: /etc/nginx/nginx.conf
          notify: restart nginx
        """,
    )
    write(base / "webserver" / "handlers" / "main.yml", "- name: restart nginx\n  service: name=nginx state=restarted\n")
    write(base / "webserver" / "defaults" / "main.yml", "nginx_port: 8000\n")
    write(base / "webserver" / "meta" / "main.yml", "dependencies:\n  - role: common\n")
    write(base / "common" / "tasks" / "main.yaml", "- package: name=curl\n")
    return base


def test_role_loader_reads_bundle(roles_dir: Path):
    role = RoleLoader([roles_dir]).load("webserver")

    assert [task.name for task in role.tasks] == ["install nginx", "nginx configuration"]
    assert all(task.role == "webserver" for task in role.tasks)
    assert role.handlers[0].name == "restart nginx"
    assert role.defaults == {"nginx_port": 8000}
    assert role.dependencies == ["common"]
    assert role.templates_dir == roles_dir / "webserver" / "templates"


def test_role_loader_load_all_follows_dependencies(roles_dir: Path):
    roles = RoleLoader([roles_dir]).load_all(["webserver"])
    assert set(roles) == {"webserver", "common"}
    assert roles["common"].tasks[0].type == "package"


def test_missing_role_lists_search_paths(roles_dir: Path, tmp_path: Path):
    with pytest.raises(RoleNotFoundError) as excinfo:
        RoleLoader([roles_dir, tmp_path / "other"]).load("database")
    assert excinfo.value.role == "database"
    assert str(roles_dir) in str(excinfo.value)


def test_recursive_task_import_is_rejected(tmp_path: Path):
    write(tmp_path / "roles" / "loop" / "tasks" / "main.yml", "- include_tasks: main.yml\n")
    with pytest.raises(ConfigurationError, match="recursive"):
        RoleLoader([tmp_path / "roles"]).load("loop")
