import subprocess

import pytest

from jmr import packages
from jmr.errors import UnsupportedHostError
from jmr.packages import Command, apt_source_line, detect_package_manager, install_commands, install_docker


def _which(*available):
    return lambda name: f"/usr/bin/{name}" if name in available else None


def test_detect_package_manager_order():
    assert detect_package_manager(_which("apt-get", "dnf")) == "apt"
    assert detect_package_manager(_which("yum", "pacman")) == "yum"
    assert detect_package_manager(_which("pacman")) == "pacman"


def test_detect_package_manager_none():
    with pytest.raises(UnsupportedHostError):
        detect_package_manager(_which())


@pytest.mark.parametrize("distro,repo", [("fedora", "fedora"), ("rocky", "centos"), ("", "centos")])
def test_dnf_repo_depends_on_distro(distro, repo):
    cmds = install_commands("dnf", {"ID": distro})
    assert cmds[1].argv[-1] == f"https://download.docker.com/linux/{repo}/docker-ce.repo"
    assert cmds[-1].argv == ["systemctl", "enable", "--now", "docker"]


def test_zypper_falls_back_to_distro_packages():
    cmds = install_commands("zypper", {"ID": "opensuse-leap"})
    addrepo = next(c for c in cmds if "addrepo" in c.argv)
    assert addrepo.check is False
    install = next(c for c in cmds if c.fallback)
    assert install.fallback == ["zypper", "-n", "install", "docker", "docker-compose"]


def test_unknown_package_manager():
    with pytest.raises(UnsupportedHostError):
        install_commands("apk", {})


def test_apt_source_line():
    line = apt_source_line({"ID": "debian", "VERSION_CODENAME": "bookworm"}, "amd64")
    assert line == (
        "deb [arch=amd64 signed-by=/etc/apt/keyrings/docker.gpg] "
        "https://download.docker.com/linux/debian bookworm stable\n"
    )


def test_install_docker_runs_every_step(monkeypatch):
    monkeypatch.setattr(packages, "os_release", lambda: {"ID": "arch"})
    ran = []
    install_docker("pacman", runner=ran.append)
    assert [c.argv[0] for c in ran] == ["pacman", "systemctl"]


def test_run_uses_fallback_on_failure(monkeypatch):
    seen = []

    def fake_run(argv, check=True):
        seen.append(argv)
        if argv[0] == "bad":
            raise subprocess.CalledProcessError(1, argv)

    monkeypatch.setattr(packages.subprocess, "run", fake_run)
    packages.run(Command(["bad"], fallback=["good"]))
    assert seen == [["bad"], ["good"]]


def test_run_without_fallback_propagates(monkeypatch):
    def fake_run(argv, check=True):
        raise subprocess.CalledProcessError(100, argv)

    monkeypatch.setattr(packages.subprocess, "run", fake_run)
    with pytest.raises(subprocess.CalledProcessError):
        packages.run(Command(["apt-get", "update"]))
