import subprocess
import types

import pytest
from docker.errors import NotFound

from jmr import docker_ops
from jmr.docker_ops import DockerRuntime, compose_command
from jmr.errors import StackError


class _Subprocess:
    """Records argv; fails any call whose argv contains `fail_on`."""

    def __init__(self, fail_on=None, returncode=1):
        self.fail_on = fail_on
        self.returncode = returncode
        self.calls = []

    def __call__(self, argv, check=False, **kw):
        self.calls.append(list(argv))
        failed = self.fail_on is not None and self.fail_on in argv
        if failed and check:
            raise subprocess.CalledProcessError(self.returncode, argv)
        return types.SimpleNamespace(returncode=self.returncode if failed else 0)


@pytest.fixture
def compose_v2(monkeypatch):
    monkeypatch.setattr(docker_ops, "compose_command", lambda: ["docker", "compose"])


def _runtime(settings):
    return DockerRuntime(settings)


def test_start_stack_pulls_then_starts(settings, compose_v2, monkeypatch):
    proc = _Subprocess()
    monkeypatch.setattr(docker_ops.subprocess, "run", proc)

    _runtime(settings).start_stack()

    base = ["docker", "compose", "-f", settings.compose_file, "--project-directory", settings.base_dir]
    assert proc.calls == [base + ["pull"], base + ["up", "-d"]]


def test_failed_pull_aborts_before_up(settings, compose_v2, monkeypatch):
    proc = _Subprocess(fail_on="pull", returncode=18)
    monkeypatch.setattr(docker_ops.subprocess, "run", proc)

    with pytest.raises(StackError, match="exit code 18"):
        _runtime(settings).start_stack()
    assert [c[-1] for c in proc.calls] == ["pull"]


def test_failed_up_is_fatal(settings, compose_v2, monkeypatch):
    monkeypatch.setattr(docker_ops.subprocess, "run", _Subprocess(fail_on="up"))
    with pytest.raises(StackError):
        _runtime(settings).start_stack()


def test_start_without_compose_is_fatal(settings, monkeypatch):
    monkeypatch.setattr(docker_ops, "compose_command", lambda: None)
    with pytest.raises(StackError, match="not available"):
        _runtime(settings).start_stack()


def test_stop_stack_tolerates_compose_failure(settings, compose_v2, monkeypatch):
    proc = _Subprocess(fail_on="down")
    monkeypatch.setattr(docker_ops.subprocess, "run", proc)
    monkeypatch.setattr(docker_ops, "docker_available", lambda: False)

    _runtime(settings).stop_stack()

    assert proc.calls[0][-4:] == ["down", "--rmi", "all", "--volumes"]


def test_stop_stack_without_compose_still_returns(settings, monkeypatch):
    monkeypatch.setattr(docker_ops, "compose_command", lambda: None)
    monkeypatch.setattr(docker_ops, "docker_available", lambda: False)
    _runtime(settings).stop_stack()


class _Container:
    def __init__(self, name, gone=False):
        self.name = name
        self.gone = gone
        self.removed = False

    def remove(self, force=False, v=False):
        if self.gone:
            raise NotFound("already gone")
        self.removed = force and v


def test_leftover_containers_are_removed_by_project_label(settings, monkeypatch):
    left = [_Container("jitsi-web"), _Container("jitsi-jvb", gone=True)]
    seen = {}

    def list_containers(all=False, filters=None):
        seen["filters"] = filters
        return left

    client = types.SimpleNamespace(containers=types.SimpleNamespace(list=list_containers))
    monkeypatch.setattr(docker_ops, "docker_available", lambda: True)
    monkeypatch.setattr(docker_ops, "_client", lambda: client)

    assert _runtime(settings).remove_project_containers() == ["jitsi-web"]
    assert seen["filters"] == {"label": "com.docker.compose.project=jitsi"}
    assert left[0].removed


def test_ensure_runtime_installs_missing_docker(settings, monkeypatch):
    installed = []
    monkeypatch.setattr(docker_ops.shutil, "which", lambda name: None)
    monkeypatch.setattr(docker_ops, "install_docker", lambda: installed.append(True))
    monkeypatch.setattr(docker_ops, "compose_command", lambda: ["docker", "compose"])

    _runtime(settings).ensure_runtime()

    assert installed == [True]


def test_ensure_runtime_install_failure_is_fatal(settings, monkeypatch):
    def broken_install():
        raise subprocess.CalledProcessError(100, ["apt-get", "install"])

    monkeypatch.setattr(docker_ops.shutil, "which", lambda name: None)
    monkeypatch.setattr(docker_ops, "install_docker", broken_install)

    with pytest.raises(StackError, match="Docker installation failed"):
        _runtime(settings).ensure_runtime()


def test_ensure_runtime_without_compose_after_install(settings, monkeypatch):
    installed = []
    monkeypatch.setattr(docker_ops.shutil, "which", lambda name: "/usr/bin/" + name if name == "docker" else None)
    monkeypatch.setattr(docker_ops, "_quiet", lambda argv: True)
    monkeypatch.setattr(docker_ops, "install_docker", lambda: installed.append(True))
    monkeypatch.setattr(docker_ops, "compose_command", lambda: None)

    with pytest.raises(StackError, match="Compose not available"):
        _runtime(settings).ensure_runtime()
    assert installed == [True]


def test_compose_command_prefers_plugin(monkeypatch):
    monkeypatch.setattr(docker_ops.shutil, "which", lambda name: "/usr/bin/" + name)
    monkeypatch.setattr(docker_ops, "_quiet", lambda argv: argv == ["docker", "compose", "version"])
    assert compose_command() == ["docker", "compose"]

    monkeypatch.setattr(docker_ops, "_quiet", lambda argv: False)
    assert compose_command() == ["docker-compose"]

    monkeypatch.setattr(docker_ops.shutil, "which", lambda name: None)
    assert compose_command() is None


def test_exec_in_decodes_output(settings, monkeypatch):
    result = types.SimpleNamespace(exit_code=0, output=b"OK: Showing all 1 users\n")
    container = types.SimpleNamespace(exec_run=lambda cmd, stdout=True, stderr=True: result)
    client = types.SimpleNamespace(containers=types.SimpleNamespace(get=lambda name: container))
    monkeypatch.setattr(docker_ops, "_client", lambda: client)

    assert _runtime(settings).exec_in("jitsi-prosody", ["prosodyctl", "status"]) == (0, "OK: Showing all 1 users\n")
