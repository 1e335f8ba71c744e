import os
import sys

import pytest

# Ensure project root is importable (so `import jmr` and `import cli` work without an install)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from jmr import db  # noqa: E402
from jmr.config import HostFacts  # noqa: E402
from jmr.errors import StackError  # noqa: E402
from jmr.reconciler import Reconciler  # noqa: E402
from jmr.settings import Settings  # noqa: E402


class FakeRuntime:
    """In-memory ContainerRuntime.

    `ready_after`: number of `prosodyctl status` probes before it answers 0
    (None = never). `error`: raised by every container probe.
    """

    def __init__(self, settings=None, ready_after=1, logs_text="", fail_start=False, error=None):
        self.settings = settings
        self.ready_after = ready_after
        self.logs_text = logs_text
        self.fail_start = fail_start
        self.error = error
        self.exec_results = {}
        self.calls = []
        self.execs = []
        self.running = set()
        self.status_probes = 0

    def ensure_runtime(self):
        self.calls.append("ensure_runtime")

    def start_stack(self):
        self.calls.append("start_stack")
        if self.fail_start:
            raise StackError("pull failed: manifest unknown")
        self.running = {"jitsi-prosody", "jitsi-jicofo", "jitsi-jvb", "jitsi-web"}

    def stop_stack(self):
        self.calls.append("stop_stack")
        self.running.clear()

    def exec_in(self, container, cmd):
        if self.error is not None:
            raise self.error
        self.execs.append((container, list(cmd)))
        if cmd[:2] == ["prosodyctl", "status"]:
            self.status_probes += 1
            ok = self.ready_after is not None and self.status_probes >= self.ready_after
            return (0 if ok else 1), ""
        sub = cmd[3] if len(cmd) > 3 else ""
        return self.exec_results.get(sub, (0, ""))

    def logs(self, container):
        if self.error is not None:
            raise self.error
        return self.logs_text

    def container_running(self, container):
        return container in self.running


class FakeIdentityStore:
    def __init__(self, users=None, fail=False):
        self.users = dict(users or {})  # (user, domain) -> password
        self.fail = fail
        self.calls = []

    def set_password(self, user, domain, password):
        self.calls.append(("set_password", user, domain))
        if self.fail or (user, domain) not in self.users:
            return False
        self.users[(user, domain)] = password
        return True

    def register(self, user, domain, password):
        self.calls.append(("register", user, domain))
        if self.fail:
            return False
        self.users[(user, domain)] = password
        return True

    def delete_user(self, user, domain):
        return self.users.pop((user, domain), None) is not None

    def list_users(self, domain):
        return sorted(u for (u, d) in self.users if d == domain)


@pytest.fixture(autouse=True)
def _reset_journal():
    yield
    db.close_db()


@pytest.fixture
def settings(tmp_path):
    return Settings(base_dir=str(tmp_path / "jitsi"), ready_attempts=3, ready_delay_s=0, ready_deadline_s=0)


@pytest.fixture
def host():
    return HostFacts(fqdn="meet.local", timezone="Europe/Berlin")


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_identity():
    return FakeIdentityStore()


@pytest.fixture
def make_reconciler(settings, host, fake_runtime, fake_identity):
    def _make(environ=None, runtime=None, identity=None):
        return Reconciler(
            settings,
            runtime if runtime is not None else fake_runtime,
            identity if identity is not None else fake_identity,
            environ or {},
            host,
        )

    return _make


@pytest.fixture
def make_runtime():
    return FakeRuntime


@pytest.fixture
def make_identity():
    return FakeIdentityStore
