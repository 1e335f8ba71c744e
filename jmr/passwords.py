from __future__ import annotations

import os
import random
import secrets
import string
import time

from .db import log_event
from .envfile import EnvFile


ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 24

COMPONENT_SECRETS = ("JICOFO_AUTH_PASSWORD", "JVB_AUTH_PASSWORD")
RECORDER_SECRETS = ("JIBRI_RECORDER_PASSWORD", "JIBRI_XMPP_PASSWORD")


def random_password(length: int = PASSWORD_LENGTH) -> str:
    """Alphanumeric shared secret for inter-container auth."""
    try:
        return "".join(secrets.choice(ALPHABET) for _ in range(length))
    except NotImplementedError:
        # No OS entropy source; these secrets never leave the docker network.
        log_event("WARN", "System entropy source unavailable; using a weaker generator for component secrets.")
        rng = random.Random(f"{time.time_ns()}-{os.getpid()}")
        return "".join(rng.choice(ALPHABET) for _ in range(length))


def required_secrets(recorder: bool) -> tuple[str, ...]:
    if recorder:
        return COMPONENT_SECRETS + RECORDER_SECRETS
    return COMPONENT_SECRETS


def fill_secrets(env: EnvFile, recorder: bool = False, generate=random_password) -> tuple[EnvFile, list[str]]:
    """Generate a value for every required secret that is empty in `env`.

    `recorder` adds the Jibri secrets.

    Only the affected lines are rewritten. Returns the new file and the keys
    that were filled.
    """
    filled: list[str] = []
    for key in required_secrets(recorder):
        if env.get(key):
            continue
        env = env.with_value(key, generate())
        filled.append(key)
    return env, filled
