from __future__ import annotations

import argparse
import json
import os
import sys

from jmr import __version__, db
from jmr.config import DesiredConfig, detect_host
from jmr.docker_ops import DockerRuntime
from jmr.errors import FatalError
from jmr.health import check_web
from jmr.host import require_root
from jmr.identity import ProsodyIdentityStore, admin_domain
from jmr.reconciler import Reconciler, RunResult
from jmr.settings import Settings


ENV_HELP = """\
Core environment variables:
  JITSI_BASE_DIR        Installation directory (default: /opt/jitsi)
  PUBLIC_URL            Public URL for Jitsi Meet (default: http://<fqdn>)
  ENABLE_AUTH           0 = anyone can create rooms, 1 = auth required
  ADMIN_USER            Admin username (default: administrator)
  ADMIN_PASS            Admin password (generated if not set)
  HTTP_PORT             HTTP port (default: 64453)
  JITSI_TAG             Docker image tag (default: unstable)
  TZ                    Timezone (default: host TZ or America/New_York)

Branding:
  APP_NAME, PROVIDER_NAME, NATIVE_APP_NAME, DEFAULT_LANGUAGE

Features (true/false):
  ENABLE_REGISTRATION, ENABLE_WELCOME_PAGE, ENABLE_PREJOIN_PAGE, ENABLE_LOBBY,
  ENABLE_BREAKOUT_ROOMS, ENABLE_CLOSE_PAGE, DISABLE_AUDIO_LEVELS,
  ENABLE_NOISY_MIC_DETECTION

Recording (requires Jibri):
  ENABLE_JIBRI          0/1 (default: 0); when 1, recording features default on

Video quality:
  RESOLUTION, RESOLUTION_MIN, RESOLUTION_WIDTH, RESOLUTION_WIDTH_MIN

Watermark:
  SHOW_JITSI_WATERMARK, JITSI_WATERMARK_LINK, SHOW_BRAND_WATERMARK, BRAND_WATERMARK_LINK

Settings already stored in $JITSI_BASE_DIR/.env win over the environment.

Examples:
  sudo jitsi-install
  PUBLIC_URL=https://meet.example.com sudo -E jitsi-install
  ENABLE_JIBRI=1 PUBLIC_URL=https://meet.example.com sudo -E jitsi-install
  sudo jitsi-install --remove
"""


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def summary(settings: Settings, result: RunResult, web: tuple[bool, str]) -> str:
    env = result.reconcile.env.as_dict()
    config = result.reconcile.config
    web_ok, web_msg = web
    return f"""
------------------------------------------------------------
Jitsi Meet is up.
Reverse proxy target (HTTP): 127.0.0.1:{env.get('HTTP_PORT', '')} ({'reachable' if web_ok else 'not reachable'}: {web_msg})
Public URL (for clients):   {env.get('PUBLIC_URL', '')}
Auth enabled:               {int(config.enable_auth)} (0=anyone can create rooms)
Admin user:                 {result.identity.user}@{env.get('PUBLIC_DOMAIN', '')} ({result.identity.action})
Admin password:             (stored in {result.credentials_file})
Prosody readiness:          {result.readiness.value}
SMTP relay:                 {env.get('SMTP_SERVER', '')}:{env.get('SMTP_PORT', '')} (from {env.get('SMTP_FROM', '')})
Jibri (recording):          {int(config.enable_jibri)} (0=disabled, 1=enabled)
Images tag:                 {env.get('JITSI_IMAGE_TAG', '')}
Data dir:                   {env.get('JITSI_DATA_DIR', '')}
Compose file:               {settings.compose_file}
Env file:                   {settings.env_file}
------------------------------------------------------------

If using a reverse proxy (recommended), forward your TLS vhost to:
  http://127.0.0.1:{env.get('HTTP_PORT', '')}

For updates later, just re-run this installer.
------------------------------------------------------------"""


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    p = argparse.ArgumentParser(
        prog="jitsi-install",
        description="Jitsi Meet Installer - deploy and update Jitsi Meet via Docker",
        epilog=ENV_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("-v", "--version", action="version", version=f"Jitsi Meet Installer v{__version__}")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-r", "--remove", action="store_true", help="Stop containers, remove images, and delete install directory")
    mode.add_argument("--events", type=int, nargs="?", const=20, metavar="N", help="Show the last N journal events")
    mode.add_argument("--list-users", action="store_true", help="List accounts in the admin domain")
    mode.add_argument("--delete-user", metavar="USER", help="Delete an account from the admin domain")

    args = p.parse_args(argv)
    settings = Settings()

    if args.events is not None:
        _print(db.latest_events(settings.journal_path, limit=args.events))
        return 0

    try:
        require_root([sys.argv[0], *argv])
        runtime = DockerRuntime(settings)
        identity = ProsodyIdentityStore(runtime, settings.prosody_container, settings.prosody_config)
        reconciler = Reconciler(settings, runtime, identity, dict(os.environ), detect_host())

        if args.remove:
            reconciler.remove()
            return 0

        if args.list_users or args.delete_user:
            return _manage_users(reconciler.current_config(), identity, args)

        result = reconciler.run()
        web = check_web(f"http://127.0.0.1:{result.reconcile.env.get('HTTP_PORT')}/", settings.web_check_timeout_s)
        print(summary(settings, result, web))
        return 0
    except FatalError as e:
        db.log_event("ERROR", str(e))
        return 1


def _manage_users(config: DesiredConfig, identity: ProsodyIdentityStore, args: argparse.Namespace) -> int:
    domain = admin_domain(config.enable_auth)
    if args.list_users:
        _print(identity.list_users(domain))
        return 0
    user = args.delete_user.split("@", 1)[0]
    if identity.delete_user(user, domain):
        db.log_event("INFO", f"Deleted {user}@{domain}")
        return 0
    db.log_event("ERROR", f"Could not delete {user}@{domain}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
