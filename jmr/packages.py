from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable

import requests

from .db import log_event
from .errors import UnsupportedHostError


DOCKER_REPO = "https://download.docker.com/linux"
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin"]
APT_KEYRING = "/etc/apt/keyrings/docker.gpg"
APT_SOURCE = "/etc/apt/sources.list.d/docker.list"

# Checked in this order; the first one on PATH wins.
PACKAGE_MANAGERS = ("apt-get", "dnf", "yum", "zypper", "pacman")


@dataclass(frozen=True)
class Command:
    argv: list[str]
    check: bool = True
    # Tried when argv fails.
    fallback: list[str] | None = None


def detect_package_manager(which: Callable[[str], str | None] = shutil.which) -> str:
    for pm in PACKAGE_MANAGERS:
        if which(pm):
            return "apt" if pm == "apt-get" else pm
    raise UnsupportedHostError("No supported package manager found (apt/dnf/yum/zypper/pacman).")


def os_release() -> dict[str, str]:
    try:
        return dict(platform.freedesktop_os_release())
    except OSError:
        return {}


def install_commands(pm: str, release: dict[str, str]) -> list[Command]:
    """Commands installing Docker Engine from the vendor repository.

    apt additionally needs the signing key and source list written first,
    see prepare_apt_repo().
    """
    enable = Command(["systemctl", "enable", "--now", "docker"])
    distro = release.get("ID", "")
    if pm == "apt":
        return [
            Command(["apt-get", "update"]),
            Command(["apt-get", "install", "-y", *DOCKER_PACKAGES]),
            enable,
        ]
    if pm == "dnf":
        repo_distro = "fedora" if distro == "fedora" else "centos"
        return [
            Command(["dnf", "-y", "install", "dnf-plugins-core"]),
            Command(["dnf", "config-manager", "--add-repo", f"{DOCKER_REPO}/{repo_distro}/docker-ce.repo"]),
            Command(["dnf", "-y", "install", *DOCKER_PACKAGES]),
            enable,
        ]
    if pm == "yum":
        return [
            Command(["yum", "-y", "install", "yum-utils"]),
            Command(["yum-config-manager", "--add-repo", f"{DOCKER_REPO}/centos/docker-ce.repo"]),
            Command(["yum", "-y", "install", *DOCKER_PACKAGES]),
            enable,
        ]
    if pm == "zypper":
        return [
            Command(["zypper", "refresh"]),
            Command(["zypper", "-n", "install", "ca-certificates"]),
            Command(["zypper", "-n", "addrepo", f"{DOCKER_REPO}/{distro}/docker-ce.repo", "docker-ce"], check=False),
            Command(["zypper", "refresh"]),
            Command(
                ["zypper", "-n", "install", *DOCKER_PACKAGES],
                fallback=["zypper", "-n", "install", "docker", "docker-compose"],
            ),
            enable,
        ]
    if pm == "pacman":
        return [
            Command(["pacman", "-Sy", "--noconfirm", "--needed", "docker", "docker-compose"]),
            enable,
        ]
    raise UnsupportedHostError(f"Unsupported package manager: {pm}")


def apt_source_line(release: dict[str, str], arch: str) -> str:
    return (
        f"deb [arch={arch} signed-by={APT_KEYRING}] {DOCKER_REPO}/{release.get('ID', '')} "
        f"{release.get('VERSION_CODENAME', '')} stable\n"
    )


def run(cmd: Command) -> None:
    log_event("INFO", "Running: " + " ".join(cmd.argv), step="packages")
    try:
        subprocess.run(cmd.argv, check=cmd.check)
    except subprocess.CalledProcessError:
        if cmd.fallback is None:
            raise
        log_event("WARN", "Retrying with: " + " ".join(cmd.fallback), step="packages")
        subprocess.run(cmd.fallback, check=True)


def prepare_apt_repo(release: dict[str, str], runner: Callable[[Command], None] = run) -> None:
    runner(Command(["apt-get", "update"]))
    runner(Command(["apt-get", "install", "-y", "ca-certificates", "gnupg"]))
    os.makedirs(os.path.dirname(APT_KEYRING), mode=0o755, exist_ok=True)
    if not (os.path.exists(APT_KEYRING) and os.path.getsize(APT_KEYRING) > 0):
        resp = requests.get(f"{DOCKER_REPO}/{release.get('ID', '')}/gpg", timeout=30)
        resp.raise_for_status()
        subprocess.run(["gpg", "--dearmor", "-o", APT_KEYRING], input=resp.content, check=True)
        os.chmod(APT_KEYRING, 0o644)
    arch = subprocess.run(
        ["dpkg", "--print-architecture"], check=True, capture_output=True, text=True
    ).stdout.strip()
    with open(APT_SOURCE, "w", encoding="utf-8") as f:
        f.write(apt_source_line(release, arch))


def install_docker(pm: str | None = None, runner: Callable[[Command], None] = run) -> None:
    """Install Docker Engine and the compose plugin from download.docker.com.

    Any failing step aborts the run (CalledProcessError propagates).
    """
    pm = pm or detect_package_manager()
    release = os_release()
    log_event("INFO", f"Installing Docker Engine from official repositories using: {pm}", step="packages")
    if pm == "apt":
        prepare_apt_repo(release, runner)
    for cmd in install_commands(pm, release):
        runner(cmd)
