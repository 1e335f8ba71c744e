from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass
from typing import Annotated, Any, Mapping, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, ValidationError, model_validator

from .envfile import EnvFile
from .errors import ConfigError
from .settings import Settings


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off", ""}


def _parse_bool(value: Any) -> Any:
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
        raise ValueError(f"expected a boolean (0/1, true/false), got {value!r}")
    return value


# Both encode a boolean; they differ only in how the images expect them in .env.
Switch = Annotated[bool, BeforeValidator(_parse_bool), PlainSerializer(lambda v: "1" if v else "0", return_type=str)]
Toggle = Annotated[bool, BeforeValidator(_parse_bool), PlainSerializer(lambda v: "true" if v else "false", return_type=str)]
Port = Annotated[int, Field(ge=0, le=65535)]
Pixels = Annotated[int, Field(ge=1, le=8192)]


class DesiredConfig(BaseModel):
    """Every setting persisted in .env, in the order it is written.

    The env key of a field is its upper-cased name.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Core
    jitsi_data_dir: str
    jitsi_config_dir: str
    http_port: Port = 64453
    https_port: Port = 0
    enable_http_redirect: Switch = False
    enable_letsencrypt: Switch = False
    public_url: str
    tz: str = "America/New_York"

    # Auth
    enable_auth: Switch = False
    enable_guests: Switch = True
    auth_type: str = "internal"
    public_domain: str

    # Component creds
    jicofo_auth_user: str = "focus"
    jicofo_auth_password: str = ""
    jvb_auth_user: str = "jvb"
    jvb_auth_password: str = ""

    # Videobridge / RTP
    jvb_udp_port: Port = 10000
    jvb_tcp_harvester_disabled: Toggle = True

    # SMTP via host
    smtp_server: str = "host.docker.internal"
    smtp_port: Port = 25
    smtp_from: str
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_tls: Switch = False
    smtp_starttls: Switch = False

    # Image tag
    jitsi_image_tag: str = "unstable"

    # Branding
    app_name: str = "CasjaysDev Meet"
    provider_name: str = "CasjaysDev"
    native_app_name: str
    default_language: str = "en"

    # Features
    enable_welcome_page: Toggle = True
    enable_prejoin_page: Toggle = True
    enable_lobby: Toggle = True
    enable_close_page: Toggle = False
    disable_audio_levels: Toggle = False
    enable_noisy_mic_detection: Toggle = True
    enable_breakout_rooms: Toggle = True
    enable_registration: Toggle = True

    # Jibri (recording/streaming)
    enable_jibri: Switch = False
    jibri_recorder_user: str = "recorder"
    jibri_recorder_password: str = ""
    jibri_xmpp_user: str = "jibri"
    jibri_xmpp_password: str = ""

    # Recording/streaming, follow enable_jibri unless set
    enable_recording: Optional[Toggle] = None
    enable_livestreaming: Optional[Toggle] = None
    enable_file_recording_service: Optional[Toggle] = None

    # Video quality
    resolution: Pixels = 720
    resolution_min: Pixels = 180
    resolution_width: Pixels = 1280
    resolution_width_min: Pixels = 320

    # Watermark
    jitsi_watermark_link: str = ""
    show_jitsi_watermark: Toggle = False
    brand_watermark_link: str = ""
    show_brand_watermark: Toggle = False

    @model_validator(mode="before")
    @classmethod
    def _recording_follows_jibri(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        jibri = _parse_bool(data.get("enable_jibri", False))
        out = dict(data)
        for name in ("enable_recording", "enable_livestreaming", "enable_file_recording_service"):
            if out.get(name) is None:
                out[name] = jibri
        return out

    @model_validator(mode="after")
    def _check_bounds(self) -> "DesiredConfig":
        if self.resolution_min > self.resolution:
            raise ValueError(f"RESOLUTION_MIN ({self.resolution_min}) exceeds RESOLUTION ({self.resolution})")
        if self.resolution_width_min > self.resolution_width:
            raise ValueError(
                f"RESOLUTION_WIDTH_MIN ({self.resolution_width_min}) exceeds RESOLUTION_WIDTH ({self.resolution_width})"
            )
        if not re.match(r"^https?://[^/\s]+", self.public_url):
            raise ValueError(f"PUBLIC_URL must be an http(s) URL, got {self.public_url!r}")
        return self

    @classmethod
    def env_keys(cls) -> list[str]:
        return [name.upper() for name in cls.model_fields]

    def env_values(self) -> dict[str, str]:
        """Values exactly as written to .env, keyed by env name."""
        out: dict[str, str] = {}
        for name, value in self.model_dump().items():
            out[name.upper()] = "" if value is None else str(value)
        return out


# Comment headers of the generated .env; keys are written in schema order.
SECTIONS: list[tuple[str, list[str]]] = [
    ("Core", ["JITSI_DATA_DIR", "JITSI_CONFIG_DIR", "HTTP_PORT", "HTTPS_PORT", "ENABLE_HTTP_REDIRECT",
              "ENABLE_LETSENCRYPT", "PUBLIC_URL", "TZ"]),
    ("Auth (optional)", ["ENABLE_AUTH", "ENABLE_GUESTS", "AUTH_TYPE", "PUBLIC_DOMAIN"]),
    ("Component creds (autofilled if empty)", ["JICOFO_AUTH_USER", "JICOFO_AUTH_PASSWORD", "JVB_AUTH_USER",
                                               "JVB_AUTH_PASSWORD"]),
    ("Videobridge / RTP", ["JVB_UDP_PORT", "JVB_TCP_HARVESTER_DISABLED"]),
    ("SMTP via host", ["SMTP_SERVER", "SMTP_PORT", "SMTP_FROM", "SMTP_USERNAME", "SMTP_PASSWORD", "SMTP_TLS",
                       "SMTP_STARTTLS"]),
    ("Image tag", ["JITSI_IMAGE_TAG"]),
    ("Branding (customize these)", ["APP_NAME", "PROVIDER_NAME", "NATIVE_APP_NAME", "DEFAULT_LANGUAGE"]),
    ("Features", ["ENABLE_WELCOME_PAGE", "ENABLE_PREJOIN_PAGE", "ENABLE_LOBBY", "ENABLE_CLOSE_PAGE",
                  "DISABLE_AUDIO_LEVELS", "ENABLE_NOISY_MIC_DETECTION", "ENABLE_BREAKOUT_ROOMS",
                  "ENABLE_REGISTRATION"]),
    ("Jibri (recording/streaming)", ["ENABLE_JIBRI", "JIBRI_RECORDER_USER", "JIBRI_RECORDER_PASSWORD",
                                     "JIBRI_XMPP_USER", "JIBRI_XMPP_PASSWORD"]),
    ("Recording/Streaming (auto-enabled if Jibri is enabled)", ["ENABLE_RECORDING", "ENABLE_LIVESTREAMING",
                                                                "ENABLE_FILE_RECORDING_SERVICE"]),
    ("Video Quality", ["RESOLUTION", "RESOLUTION_MIN", "RESOLUTION_WIDTH", "RESOLUTION_WIDTH_MIN"]),
    ("Watermark", ["JITSI_WATERMARK_LINK", "SHOW_JITSI_WATERMARK", "BRAND_WATERMARK_LINK", "SHOW_BRAND_WATERMARK"]),
]

# Environment names that differ from the persisted key.
ENV_ALIASES = {"JITSI_IMAGE_TAG": "JITSI_TAG"}


@dataclass(frozen=True)
class HostFacts:
    fqdn: str
    timezone: str | None


def detect_timezone(etc: str = "/etc") -> str | None:
    tz_file = os.path.join(etc, "timezone")
    if os.path.isfile(tz_file):
        with open(tz_file, encoding="utf-8") as f:
            tz = f.read().strip()
        if tz:
            return tz
    localtime = os.path.join(etc, "localtime")
    if os.path.islink(localtime):
        target = os.readlink(localtime)
        if "zoneinfo/" in target:
            return target.split("zoneinfo/", 1)[1]
    return None


def detect_host() -> HostFacts:
    return HostFacts(fqdn=socket.getfqdn() or socket.gethostname(), timezone=detect_timezone())


def domain_of(url: str) -> str:
    """https://meet.example.com:8443/x -> meet.example.com"""
    rest = re.sub(r"^https?://", "", url.strip())
    return rest.split("/", 1)[0].split(":", 1)[0]


@dataclass(frozen=True)
class AdminIdentity:
    user: str
    password: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "AdminIdentity":
        user = environ.get("ADMIN_USER") or "administrator"
        # admin@domain.com -> admin
        user = user.split("@", 1)[0]
        if not user:
            raise ConfigError("ADMIN_USER must not be empty")
        return cls(user=user, password=environ.get("ADMIN_PASS") or None)


@dataclass(frozen=True)
class Resolution:
    config: DesiredConfig
    # Env overrides ignored because .env already holds a different value.
    ignored_overrides: tuple[str, ...] = ()


def resolve(environ: Mapping[str, str], persisted: EnvFile, host: HostFacts, settings: Settings) -> Resolution:
    """Build the typed snapshot for this run.

    Precedence per key: persisted .env, then the environment, then the
    built-in (possibly host-derived) default.
    """
    stored = persisted.as_dict()
    raw: dict[str, Any] = {}
    ignored: list[str] = []
    for key in DesiredConfig.env_keys():
        env_name = ENV_ALIASES.get(key, key)
        if key in stored:
            override = environ.get(env_name)
            if override is not None and override != stored[key]:
                ignored.append(env_name)
            raw[key.lower()] = stored[key]
        elif env_name in environ:
            raw[key.lower()] = environ[env_name]

    raw.setdefault("jitsi_data_dir", settings.data_dir)
    raw.setdefault("jitsi_config_dir", settings.config_dir)
    raw.setdefault("public_url", f"http://{host.fqdn}")
    if host.timezone:
        raw.setdefault("tz", host.timezone)
    raw.setdefault("public_domain", domain_of(raw["public_url"]))
    raw.setdefault("smtp_from", f"no-reply@{raw['public_domain']}")
    raw.setdefault("native_app_name", raw.get("app_name") or DesiredConfig.model_fields["app_name"].default)
    for name in ("enable_recording", "enable_livestreaming", "enable_file_recording_service"):
        if raw.get(name) == "":
            raw[name] = None

    try:
        config = DesiredConfig(**raw)
    except ValidationError as e:
        raise ConfigError(_describe(e)) from e
    return Resolution(config=config, ignored_overrides=tuple(ignored))


def _describe(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(x).upper() for x in item.get("loc", ())) or "config"
        parts.append(f"{loc}: {item.get('msg')}")
    return "Invalid configuration: " + "; ".join(parts)
