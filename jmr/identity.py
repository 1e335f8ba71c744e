from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from docker.errors import DockerException

from .compose import XMPP_AUTH_DOMAIN, XMPP_DOMAIN
from .docker_ops import ContainerRuntime


class IdentityStore(Protocol):
    def set_password(self, user: str, domain: str, password: str) -> bool: ...

    def register(self, user: str, domain: str, password: str) -> bool: ...

    def delete_user(self, user: str, domain: str) -> bool: ...

    def list_users(self, domain: str) -> list[str]: ...


def admin_domain(enable_auth: bool) -> str:
    """Authenticated mode keeps accounts in the auth domain."""
    return XMPP_AUTH_DOMAIN if enable_auth else XMPP_DOMAIN


class ProsodyIdentityStore:
    """prosodyctl inside the XMPP container."""

    def __init__(self, runtime: ContainerRuntime, container: str, config_path: str):
        self.runtime = runtime
        self.container = container
        self.config_path = config_path

    def _ctl(self, *args: str) -> tuple[int, str]:
        try:
            return self.runtime.exec_in(self.container, ["prosodyctl", "--config", self.config_path, *args])
        except (DockerException, OSError) as e:
            return 1, f"{type(e).__name__}: {e}"

    def set_password(self, user: str, domain: str, password: str) -> bool:
        code, _ = self._ctl("passwd", user, domain, password)
        return code == 0

    def register(self, user: str, domain: str, password: str) -> bool:
        code, _ = self._ctl("register", user, domain, password)
        return code == 0

    def delete_user(self, user: str, domain: str) -> bool:
        code, _ = self._ctl("deluser", f"{user}@{domain}")
        return code == 0

    def list_users(self, domain: str) -> list[str]:
        code, out = self._ctl("shell", "user", "list", domain)
        if code != 0:
            return []
        users = []
        for line in out.splitlines():
            line = line.strip()
            # The shell ends with a summary line ("OK: Showing all N users").
            if not line or line.startswith("OK:") or line.startswith("|"):
                continue
            users.append(line)
        return users


@dataclass(frozen=True)
class IdentityOutcome:
    action: str  # updated|registered|failed
    user: str
    domain: str

    @property
    def ok(self) -> bool:
        return self.action != "failed"


def ensure_admin(store: IdentityStore, user: str, domain: str, password: str) -> IdentityOutcome:
    """Set the password; if the user does not exist yet, register it."""
    if store.set_password(user, domain, password):
        return IdentityOutcome("updated", user, domain)
    if store.register(user, domain, password):
        return IdentityOutcome("registered", user, domain)
    return IdentityOutcome("failed", user, domain)
