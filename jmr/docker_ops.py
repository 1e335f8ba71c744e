from __future__ import annotations

import shutil
import subprocess
from typing import Protocol

import docker
import requests
from docker.errors import DockerException, NotFound

from .db import log_event
from .errors import StackError
from .packages import install_docker
from .settings import Settings


COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


class ContainerRuntime(Protocol):
    def ensure_runtime(self) -> None: ...

    def start_stack(self) -> None: ...

    def stop_stack(self) -> None: ...

    def exec_in(self, container: str, cmd: list[str]) -> tuple[int, str]: ...

    def logs(self, container: str) -> str: ...

    def container_running(self, container: str) -> bool: ...


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def _quiet(argv: list[str]) -> bool:
    try:
        return subprocess.run(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL).returncode == 0
    except OSError:
        return False


def compose_command() -> list[str] | None:
    """`docker compose` plugin, else legacy `docker-compose`, else None."""
    if shutil.which("docker") and _quiet(["docker", "compose", "version"]):
        return ["docker", "compose"]
    if shutil.which("docker-compose"):
        return ["docker-compose"]
    return None


class DockerRuntime:
    """Runs the stack through the compose CLI; inspects it via the Docker SDK."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _install(self) -> None:
        try:
            install_docker()
        except (subprocess.CalledProcessError, OSError, requests.RequestException) as e:
            raise StackError(f"Docker installation failed: {e}") from e

    def ensure_runtime(self) -> None:
        if not shutil.which("docker"):
            self._install()
        else:
            log_event("INFO", "Docker already installed.", step="runtime")
            if shutil.which("systemctl"):
                # Already running is fine.
                _quiet(["systemctl", "start", "docker"])

        if compose_command() is None:
            log_event("WARN", "Docker Compose not found; attempting to install via official repos.", step="runtime")
            self._install()
            if compose_command() is None:
                raise StackError("Docker Compose not available.")
        log_event("INFO", "Docker Compose is available: " + " ".join(compose_command() or []), step="runtime")

    def _compose(self, *args: str, check: bool = True) -> None:
        base = compose_command()
        if base is None:
            raise StackError("Docker Compose not available.")
        argv = [*base, "-f", self.settings.compose_file, "--project-directory", self.settings.base_dir, *args]
        try:
            subprocess.run(argv, check=check)
        except subprocess.CalledProcessError as e:
            raise StackError(f"'{' '.join(argv)}' failed with exit code {e.returncode}") from e

    def start_stack(self) -> None:
        log_event("INFO", "Pulling images...", step="stack")
        self._compose("pull")
        log_event("INFO", "Starting/updating stack...", step="stack")
        self._compose("up", "-d")

    def stop_stack(self) -> None:
        """Tear down services, images and volumes; leftovers are removed by label."""
        try:
            self._compose("down", "--rmi", "all", "--volumes", check=False)
        except StackError as e:
            log_event("WARN", str(e), step="remove")
        for name in self.remove_project_containers():
            log_event("INFO", f"Removed leftover container {name}", step="remove")

    def remove_project_containers(self) -> list[str]:
        if not docker_available():
            return []
        c = _client()
        label = f"{COMPOSE_PROJECT_LABEL}={self.settings.project_name}"
        removed: list[str] = []
        for cont in c.containers.list(all=True, filters={"label": label}):
            try:
                cont.remove(force=True, v=True)
                removed.append(cont.name)
            except NotFound:
                continue
        return removed

    def exec_in(self, container: str, cmd: list[str]) -> tuple[int, str]:
        c = _client()
        cont = c.containers.get(container)
        result = cont.exec_run(cmd, stdout=True, stderr=True)
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return result.exit_code, output

    def logs(self, container: str) -> str:
        c = _client()
        cont = c.containers.get(container)
        return cont.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")

    def container_running(self, container: str) -> bool:
        if not docker_available():
            return False
        c = _client()
        try:
            cont = c.containers.get(container)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False
