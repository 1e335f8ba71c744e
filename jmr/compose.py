from __future__ import annotations

import os
import shutil
from datetime import datetime
from typing import Any

import yaml



XMPP_DOMAIN = "meet.jitsi"
XMPP_AUTH_DOMAIN = "auth.meet.jitsi"
XMPP_GUEST_DOMAIN = "guest.meet.jitsi"
XMPP_MUC_DOMAIN = "muc.meet.jitsi"
XMPP_INTERNAL_MUC_DOMAIN = "internal-muc.meet.jitsi"
XMPP_RECORDER_DOMAIN = "recorder.meet.jitsi"
XMPP_SERVER = "xmpp.meet.jitsi"

PROSODY_IMAGE = "casjaysdevdocker/prosody:latest"
WEB_IMAGE = "casjaysdevdocker/jitsi-web:latest"

HEADER = (
    "# Generated by jitsi-meet-reconciler on every run; previous versions are kept in backup/.\n"
    "# Edit .env instead of this file.\n"
)


def timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def _ref(*keys: str) -> list[str]:
    """KEY=${KEY} entries, resolved by compose from .env at start time."""
    return [f"{k}=${{{k}}}" for k in keys]


def _common(name: str, image: str, config_dir: str, depends_on: list[str] | None = None) -> dict[str, Any]:
    svc: dict[str, Any] = {
        "container_name": f"jitsi-{name}",
        "image": image,
        "restart": "unless-stopped",
        "pull_policy": "always",
    }
    if depends_on:
        svc["depends_on"] = depends_on
    svc["volumes"] = [f"${{{config_dir}}}/{name}:/config:Z"]
    return svc


def prosody_service() -> dict[str, Any]:
    svc = _common("prosody", PROSODY_IMAGE, "JITSI_CONFIG_DIR")
    svc["ports"] = ["5222:5222", "5347:5347", "5280:5280"]
    svc["environment"] = [
        f"XMPP_DOMAIN={XMPP_DOMAIN}",
        f"XMPP_AUTH_DOMAIN={XMPP_AUTH_DOMAIN}",
        f"XMPP_GUEST_DOMAIN={XMPP_GUEST_DOMAIN}",
        *_ref("ENABLE_AUTH", "AUTH_TYPE", "ENABLE_GUESTS", "PUBLIC_URL"),
        *_ref("JICOFO_AUTH_USER", "JICOFO_AUTH_PASSWORD", "JVB_AUTH_USER", "JVB_AUTH_PASSWORD"),
        *_ref("ENABLE_REGISTRATION"),
        *_ref("JIBRI_XMPP_USER", "JIBRI_XMPP_PASSWORD", "JIBRI_RECORDER_USER", "JIBRI_RECORDER_PASSWORD"),
        f"XMPP_RECORDER_DOMAIN={XMPP_RECORDER_DOMAIN}",
        f"XMPP_MUC_DOMAIN={XMPP_MUC_DOMAIN}",
        f"XMPP_INTERNAL_MUC_DOMAIN={XMPP_INTERNAL_MUC_DOMAIN}",
    ]
    svc["networks"] = {"meet": {"aliases": [XMPP_SERVER]}}
    return svc


def jicofo_service() -> dict[str, Any]:
    svc = _common("jicofo", "jitsi/jicofo:${JITSI_IMAGE_TAG}", "JITSI_CONFIG_DIR", ["prosody"])
    svc["environment"] = [
        f"XMPP_DOMAIN={XMPP_DOMAIN}",
        f"XMPP_AUTH_DOMAIN={XMPP_AUTH_DOMAIN}",
        f"XMPP_MUC_DOMAIN={XMPP_MUC_DOMAIN}",
        f"XMPP_INTERNAL_MUC_DOMAIN={XMPP_INTERNAL_MUC_DOMAIN}",
        *_ref("JICOFO_AUTH_USER", "JICOFO_AUTH_PASSWORD"),
        "JIBRI_BREWERY_MUC=jibribrewery",
        "JIBRI_PENDING_TIMEOUT=90",
        *_ref("ENABLE_AUTH"),
        f"XMPP_SERVER={XMPP_SERVER}",
    ]
    svc["networks"] = ["meet"]
    return svc


def jvb_service() -> dict[str, Any]:
    svc = _common("jvb", "jitsi/jvb:${JITSI_IMAGE_TAG}", "JITSI_CONFIG_DIR", ["prosody"])
    svc["ports"] = ["${JVB_UDP_PORT:-10000}:${JVB_UDP_PORT:-10000}/udp"]
    svc["environment"] = [
        f"XMPP_AUTH_DOMAIN={XMPP_AUTH_DOMAIN}",
        *_ref("JVB_AUTH_USER", "JVB_AUTH_PASSWORD", "JVB_UDP_PORT", "JVB_TCP_HARVESTER_DISABLED"),
        f"XMPP_SERVER={XMPP_SERVER}",
    ]
    svc["networks"] = ["meet"]
    return svc


def web_service() -> dict[str, Any]:
    # No TLS here; the reverse proxy in front terminates it.
    svc = _common("web", WEB_IMAGE, "JITSI_DATA_DIR", ["prosody", "jicofo"])
    svc["ports"] = ["${HTTP_PORT:-64453}:80"]
    svc["environment"] = [
        "ENABLE_LETSENCRYPT=0",
        "ENABLE_HTTP_REDIRECT=0",
        *_ref("PUBLIC_URL"),
        f"XMPP_DOMAIN={XMPP_DOMAIN}",
        f"XMPP_AUTH_DOMAIN={XMPP_AUTH_DOMAIN}",
        f"XMPP_GUEST_DOMAIN={XMPP_GUEST_DOMAIN}",
        *_ref("ENABLE_AUTH", "ENABLE_GUESTS"),
        *_ref("SMTP_SERVER", "SMTP_PORT", "SMTP_FROM", "SMTP_USERNAME", "SMTP_PASSWORD", "SMTP_TLS", "SMTP_STARTTLS"),
        f"XMPP_SERVER={XMPP_SERVER}",
        *_ref("APP_NAME", "NATIVE_APP_NAME", "PROVIDER_NAME", "DEFAULT_LANGUAGE"),
        *_ref(
            "ENABLE_WELCOME_PAGE",
            "ENABLE_PREJOIN_PAGE",
            "ENABLE_LOBBY",
            "ENABLE_CLOSE_PAGE",
            "DISABLE_AUDIO_LEVELS",
            "ENABLE_NOISY_MIC_DETECTION",
            "ENABLE_BREAKOUT_ROOMS",
        ),
        *_ref("ENABLE_RECORDING", "ENABLE_LIVESTREAMING", "ENABLE_FILE_RECORDING_SERVICE"),
        *_ref("RESOLUTION", "RESOLUTION_MIN", "RESOLUTION_WIDTH", "RESOLUTION_WIDTH_MIN"),
        *_ref("SHOW_JITSI_WATERMARK", "JITSI_WATERMARK_LINK", "SHOW_BRAND_WATERMARK", "BRAND_WATERMARK_LINK"),
    ]
    svc["networks"] = ["meet"]
    return svc


def jibri_service() -> dict[str, Any]:
    """Recording agent. The only service with elevated privileges."""
    svc = _common("jibri", "jitsi/jibri:${JITSI_IMAGE_TAG}", "JITSI_CONFIG_DIR", ["prosody", "jicofo"])
    svc["privileged"] = True
    svc["volumes"] = [
        "/dev/shm:/dev/shm",
        "${JITSI_CONFIG_DIR}/jibri:/config:Z",
        "${JITSI_DATA_DIR}/recordings:/recordings:Z",
    ]
    svc["environment"] = [
        f"XMPP_DOMAIN={XMPP_DOMAIN}",
        f"XMPP_AUTH_DOMAIN={XMPP_AUTH_DOMAIN}",
        f"XMPP_INTERNAL_MUC_DOMAIN={XMPP_INTERNAL_MUC_DOMAIN}",
        f"XMPP_MUC_DOMAIN={XMPP_MUC_DOMAIN}",
        f"XMPP_RECORDER_DOMAIN={XMPP_RECORDER_DOMAIN}",
        f"XMPP_SERVER={XMPP_SERVER}",
        *_ref("JIBRI_XMPP_USER", "JIBRI_XMPP_PASSWORD", "JIBRI_RECORDER_USER", "JIBRI_RECORDER_PASSWORD"),
        "JIBRI_RECORDING_DIR=/recordings",
        "JIBRI_FINALIZE_RECORDING_SCRIPT_PATH=/config/finalize.sh",
        "JIBRI_STRIP_DOMAIN_JID=muc",
        "DISPLAY=:0",
        *_ref("TZ"),
    ]
    svc["cap_add"] = ["SYS_ADMIN", "NET_BIND_SERVICE"]
    svc["devices"] = ["/dev/snd:/dev/snd"]
    svc["shm_size"] = "2gb"
    svc["networks"] = ["meet"]
    return svc


def build_stack(jibri: bool = False) -> dict[str, Any]:
    services: dict[str, Any] = {
        "prosody": prosody_service(),
        "jicofo": jicofo_service(),
        "jvb": jvb_service(),
        "web": web_service(),
    }
    if jibri:
        services["jibri"] = jibri_service()
    return {"services": services, "networks": {"meet": {"driver": "bridge"}}}


def render_stack(jibri: bool = False) -> str:
    body = yaml.safe_dump(build_stack(jibri), default_flow_style=False, sort_keys=False, width=1000)
    return HEADER + body


def stack_containers(path: str) -> list[str]:
    """container_name of every service in the compose file at `path`."""
    with open(path, encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    return [svc["container_name"] for svc in doc.get("services", {}).values() if "container_name" in svc]


def archive(path: str, backup_dir: str) -> str | None:
    """Copy `path` into `backup_dir` with a timestamp suffix."""
    if not os.path.isfile(path):
        return None
    os.makedirs(backup_dir, exist_ok=True)
    dest = os.path.join(backup_dir, f"{os.path.basename(path)}.{timestamp()}")
    n = 1
    while os.path.exists(dest):
        dest = os.path.join(backup_dir, f"{os.path.basename(path)}.{timestamp()}.{n}")
        n += 1
    shutil.copy2(path, dest)
    return dest


def write_stack(path: str, jibri: bool, backup_dir: str) -> str | None:
    """Archive the previous definition, then write a fresh one.

    Returns the archive path, if anything was archived.
    """
    archived = archive(path, backup_dir)
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(render_stack(jibri))
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return archived
