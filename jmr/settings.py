from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    base_dir: str = os.getenv("JITSI_BASE_DIR", "/opt/jitsi")
    prosody_container: str = "jitsi-prosody"
    prosody_config: str = "/config/prosody.cfg.lua"

    # Readiness polling
    ready_attempts: int = _env_int("JMR_READY_ATTEMPTS", 30)
    ready_delay_s: int = _env_int("JMR_READY_DELAY_S", 2)
    ready_deadline_s: int = _env_int("JMR_READY_DEADLINE_S", 0)  # 0 = attempts only

    # Event journal under the install dir
    journal: bool = _env_bool("JMR_JOURNAL", True)
    web_check_timeout_s: int = _env_int("JMR_WEB_CHECK_TIMEOUT_S", 3)

    @property
    def env_file(self) -> str:
        return os.path.join(self.base_dir, ".env")

    @property
    def compose_file(self) -> str:
        return os.path.join(self.base_dir, "docker-compose.yml")

    @property
    def data_dir(self) -> str:
        return os.path.join(self.base_dir, "rootfs", "data")

    @property
    def config_dir(self) -> str:
        return os.path.join(self.base_dir, "rootfs", "config")

    @property
    def credentials_file(self) -> str:
        return os.path.join(self.base_dir, "credentials.txt")

    @property
    def backup_dir(self) -> str:
        return os.path.join(self.base_dir, "backup")

    @property
    def lock_file(self) -> str:
        return os.path.join(self.base_dir, ".reconcile.lock")

    @property
    def journal_path(self) -> str:
        return os.path.join(self.base_dir, ".jmr", "events.db")

    @property
    def project_name(self) -> str:
        # Same default docker compose derives from the directory holding the file.
        return os.path.basename(os.path.normpath(self.base_dir)).lower()

