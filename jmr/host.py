from __future__ import annotations

import os
import shutil
import subprocess
import sys

from .db import log_event
from .errors import PrivilegeError


def require_root(argv: list[str]) -> None:
    """Re-exec through `sudo -E` when not root; fatal if sudo is missing."""
    if os.geteuid() == 0:
        return
    sudo = shutil.which("sudo")
    if not sudo:
        raise PrivilegeError("Must be run as root or with sudo.")
    os.execv(sudo, [sudo, "-E", "--", sys.executable, *argv])


def module_loaded(name: str, proc_modules: str = "/proc/modules") -> bool:
    try:
        with open(proc_modules, encoding="utf-8") as f:
            return any(line.split(" ", 1)[0] == name for line in f)
    except OSError:
        return False


def ensure_snd_aloop(modules_load_dir: str = "/etc/modules-load.d", proc_modules: str = "/proc/modules") -> bool:
    """Jibri needs the ALSA loopback device. Failures only warn."""
    if module_loaded("snd_aloop", proc_modules):
        log_event("INFO", "snd-aloop module is loaded.", step="prereqs")
        return True

    log_event("WARN", "ALSA loopback module (snd-aloop) not loaded; attempting to load it.", step="prereqs")
    loaded = False
    try:
        loaded = subprocess.run(["modprobe", "snd-aloop"], check=False).returncode == 0
    except OSError:
        loaded = False
    if not loaded:
        log_event("WARN", "Could not load snd-aloop. Recording may not work.", step="prereqs")

    if os.path.isdir(modules_load_dir):
        conf = os.path.join(modules_load_dir, "jibri.conf")
        try:
            with open(conf, "w", encoding="utf-8") as f:
                f.write("snd-aloop\n")
            log_event("INFO", f"Added snd-aloop to {conf}", step="prereqs")
        except OSError as e:
            log_event("WARN", f"Could not write {conf}: {e}", step="prereqs")
    return loaded


def prepare_recordings_dir(data_dir: str) -> str:
    path = os.path.join(data_dir, "recordings")
    os.makedirs(path, exist_ok=True)
    # Jibri runs as an unprivileged uid inside its container.
    os.chmod(path, 0o777)
    return path
