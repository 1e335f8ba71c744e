from __future__ import annotations

import fcntl
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Mapping

from . import db, envfile
from .compose import stack_containers, write_stack
from .config import SECTIONS, AdminIdentity, DesiredConfig, HostFacts, resolve
from .credentials import CredentialRecord, load_record, resolve_admin_password, save_record
from .db import log_event
from .docker_ops import ContainerRuntime
from .envfile import EnvFile
from .errors import InstallationNotFound, LockBusyError
from .health import Readiness, wait_for_xmpp
from .host import ensure_snd_aloop, prepare_recordings_dir
from .identity import IdentityOutcome, IdentityStore, admin_domain, ensure_admin
from .passwords import fill_secrets
from .settings import Settings


ENV_HEADER = [
    "# Auto-generated by jitsi-meet-reconciler",
    "# Re-run the installer to safely update. Local edits are preserved.",
]


@dataclass
class ReconcileResult:
    """What one reconcile pass did to the files on disk."""

    env: EnvFile
    config: DesiredConfig
    created_env: bool = False
    appended_keys: list[str] = field(default_factory=list)
    filled_secrets: list[str] = field(default_factory=list)
    admin_user: str = ""
    admin_password: str = ""
    admin_password_source: str = ""
    archived_stack: str | None = None


@dataclass
class RunResult:
    reconcile: ReconcileResult
    readiness: Readiness
    readiness_detail: str
    identity: IdentityOutcome
    credentials_file: str


def render_initial_env(config: DesiredConfig) -> EnvFile:
    values = config.env_values()
    lines = list(ENV_HEADER)
    for title, keys in SECTIONS:
        lines.append(f"# {title}")
        lines.extend(envfile.format_line(k, values[k]) for k in keys)
        lines.append("")
    return EnvFile(lines=tuple(lines[:-1]))


class Reconciler:
    """Converges an installation directory onto the desired configuration."""

    def __init__(
        self,
        settings: Settings,
        runtime: ContainerRuntime,
        identity: IdentityStore,
        environ: Mapping[str, str],
        host: HostFacts,
    ):
        self.settings = settings
        self.runtime = runtime
        self.identity = identity
        self.environ = environ
        self.host = host

    # -- configuration -----------------------------------------------------

    def init_dirs(self) -> None:
        s = self.settings
        for d in (s.base_dir, s.backup_dir):
            os.makedirs(d, exist_ok=True)
        if s.journal:
            db.init_db(s.journal_path)

    def prepare_volume_dirs(self, config: DesiredConfig) -> None:
        """Data and config dirs as configured in .env; they may live outside the base dir."""
        for d in (config.jitsi_data_dir, config.jitsi_config_dir):
            os.makedirs(d, exist_ok=True)

    def current_config(self) -> DesiredConfig:
        """The validated configuration of the installation as it stands."""
        return resolve(self.environ, envfile.load(self.settings.env_file), self.host, self.settings).config

    def materialize(self, config: DesiredConfig) -> tuple[EnvFile, bool]:
        """Write .env from `config` unless it already exists."""
        path = self.settings.env_file
        if os.path.exists(path):
            log_event("INFO", "Found existing .env (preserving).", step="materialize")
            return envfile.load(path), False
        log_event("INFO", "Creating default .env", step="materialize")
        env = render_initial_env(config)
        envfile.save(path, env)
        return env, True

    def reconcile_config(self) -> ReconcileResult:
        """Everything that touches files: .env, secrets, admin password, compose."""
        s = self.settings
        persisted = envfile.load(s.env_file)
        resolution = resolve(self.environ, persisted, self.host, s)
        for name in resolution.ignored_overrides:
            log_event("WARN", f"{name} is already set in {s.env_file}; environment value ignored.", step="load")
        config = resolution.config

        env, created = self.materialize(config)
        before = env

        env, appended = env.ensure_keys(config.env_values().items())
        for key in appended:
            log_event("INFO", f"Added missing setting {key} to .env", step="keys")

        env, filled = fill_secrets(env, recorder=config.enable_jibri)
        if filled:
            log_event("INFO", "Filled missing component credentials: " + ", ".join(filled), step="secrets")

        if env != before:
            envfile.save(s.env_file, env)

        admin = AdminIdentity.from_env(self.environ)
        password, source = resolve_admin_password(admin.user, admin.password, load_record(s.credentials_file))

        log_event("INFO", "Writing docker-compose.yml", step="stack")
        archived = write_stack(s.compose_file, config.enable_jibri, s.backup_dir)
        if archived:
            log_event("INFO", f"Archived previous compose file to {archived}", step="stack")
        if config.enable_jibri:
            log_event("INFO", "Added Jibri (recording/streaming) to compose.", step="stack")

        return ReconcileResult(
            env=env,
            config=config,
            created_env=created,
            appended_keys=appended,
            filled_secrets=filled,
            admin_user=admin.user,
            admin_password=password,
            admin_password_source=source,
            archived_stack=archived,
        )

    # -- deployment --------------------------------------------------------

    def check_recording_prereqs(self, config: DesiredConfig) -> None:
        """snd-aloop and the recordings dir, only when Jibri is enabled."""
        if not config.enable_jibri:
            return
        log_event("INFO", "Checking Jibri prerequisites...", step="prereqs")
        ensure_snd_aloop()
        prepare_recordings_dir(config.jitsi_data_dir)

    def wait_ready(self) -> tuple[Readiness, str]:
        s = self.settings
        log_event("INFO", "Waiting for Prosody to become ready...", step="ready")
        state, detail = wait_for_xmpp(
            self.runtime,
            s.prosody_container,
            attempts=s.ready_attempts,
            delay_s=s.ready_delay_s,
            deadline_s=s.ready_deadline_s or None,
        )
        if state is Readiness.READY:
            log_event("INFO", f"Prosody is {detail}.", step="ready")
        elif state is Readiness.TIMED_OUT:
            log_event("WARN", f"Prosody readiness not confirmed in time ({detail}); continuing.", step="ready")
        else:
            log_event("WARN", f"Prosody readiness probe failed ({detail}); continuing.", step="ready")
        return state, detail

    def provision_admin(self, result: ReconcileResult) -> IdentityOutcome:
        config = result.config
        domain = admin_domain(config.enable_auth)
        public_domain = config.public_domain
        log_event("INFO", f"Ensuring admin user '{result.admin_user}@{public_domain}' exists...", step="identity")

        outcome = ensure_admin(self.identity, result.admin_user, domain, result.admin_password)
        if outcome.action == "updated":
            log_event("INFO", f"Updated password for {outcome.user}@{domain}", step="identity")
        elif outcome.action == "registered":
            log_event("INFO", f"Registered {outcome.user}@{domain}", step="identity")
        else:
            log_event("WARN", "Could not register admin user; verify Prosody is healthy.", step="identity")

        save_record(
            self.settings.credentials_file,
            CredentialRecord(user=result.admin_user, domain=public_domain, password=result.admin_password),
        )
        log_event("INFO", f"Admin credentials saved at: {self.settings.credentials_file}", step="identity")
        return outcome

    def run(self) -> RunResult:
        """The full install/update: runtime, config, stack, admin identity."""
        db.new_run()
        self.init_dirs()
        with run_lock(self.settings.lock_file):
            self.runtime.ensure_runtime()
            result = self.reconcile_config()
            self.prepare_volume_dirs(result.config)
            self.check_recording_prereqs(result.config)
            self.runtime.start_stack()
            readiness, detail = self.wait_ready()
            outcome = self.provision_admin(result)
        return RunResult(
            reconcile=result,
            readiness=readiness,
            readiness_detail=detail,
            identity=outcome,
            credentials_file=self.settings.credentials_file,
        )

    def remove(self) -> None:
        """Tear the stack down and delete the installation directory."""
        s = self.settings
        if not os.path.isdir(s.base_dir):
            raise InstallationNotFound(f"Installation directory not found: {s.base_dir}")
        log_event("INFO", "Stopping and removing Jitsi containers...", step="remove")
        if os.path.isfile(s.compose_file):
            containers = stack_containers(s.compose_file)
            self.runtime.stop_stack()
            left = [c for c in containers if self.runtime.container_running(c)]
            if left:
                log_event("WARN", "Still running after teardown: " + ", ".join(left), step="remove")
        db.close_db()
        log_event("INFO", f"Removing installation directory: {s.base_dir}", step="remove")
        shutil.rmtree(s.base_dir)
        log_event("INFO", "Jitsi Meet has been removed.", step="remove")


@contextmanager
def run_lock(path: str) -> Iterator[None]:
    """Exclusive per-installation lock; a second concurrent run aborts."""
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise LockBusyError(f"Another run is in progress for {os.path.dirname(path)}") from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        yield
    finally:
        os.close(fd)
