from __future__ import annotations

import os
from dataclasses import dataclass, field

from .db import utc_now
from .envfile import format_line, load
from .passwords import random_password


@dataclass(frozen=True)
class CredentialRecord:
    user: str
    domain: str
    password: str
    updated_at: str = field(default_factory=utc_now)

    def render(self) -> str:
        lines = [
            format_line("ADMIN_USER", self.user),
            format_line("ADMIN_DOMAIN", self.domain),
            format_line("ADMIN_PASS", self.password),
            format_line("UPDATED_AT", self.updated_at),
        ]
        return "\n".join(lines) + "\n"


def load_record(path: str) -> CredentialRecord | None:
    values = load(path).as_dict()
    if not values.get("ADMIN_USER") or not values.get("ADMIN_PASS"):
        return None
    return CredentialRecord(
        user=values["ADMIN_USER"],
        domain=values.get("ADMIN_DOMAIN", ""),
        password=values["ADMIN_PASS"],
        updated_at=values.get("UPDATED_AT", ""),
    )


def save_record(path: str, record: CredentialRecord) -> None:
    """Overwrite the record, readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(record.render())
    # O_CREAT's mode does not apply to a file that already existed.
    os.chmod(path, 0o600)


def resolve_admin_password(user: str, override: str | None, record: CredentialRecord | None) -> tuple[str, str]:
    """Return (password, source) where source is override|record|generated."""
    if override:
        return override, "override"
    if record is not None and record.user == user:
        return record.password, "record"
    return random_password(), "generated"
