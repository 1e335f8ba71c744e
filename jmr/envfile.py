from __future__ import annotations

import os
import re
import shlex
import stat
import tempfile
from dataclasses import dataclass
from typing import Iterable


KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Anything outside this set makes a value need quoting in .env.
_SAFE_VALUE_RE = re.compile(r"^[A-Za-z0-9_@%+=:,./\-]*$")
# Characters that stay special inside double quotes.
_DQ_ESCAPE_RE = re.compile(r'[\\"$`]')


def quote_value(value: str) -> str:
    """Quote for both `sh` and docker compose's .env reader.

    Single quotes where possible; a value holding one is double-quoted with
    backslash escapes.
    """
    if _SAFE_VALUE_RE.match(value):
        return value
    if "'" not in value:
        return f"'{value}'"
    return '"' + _DQ_ESCAPE_RE.sub(r"\\\g<0>", value) + '"'


def unquote_value(raw: str) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in {"'", '"'}:
        try:
            parts = shlex.split(raw)
        except ValueError:
            return raw[1:-1]
        if len(parts) == 1:
            return parts[0]
        return raw[1:-1]
    return raw


def parse_line(line: str) -> tuple[str, str] | None:
    """Return (key, value) for a KEY=VALUE line, None for anything else."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    if "=" not in stripped:
        return None
    key, _, raw = stripped.partition("=")
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export "):].strip()
    if not KEY_RE.match(key):
        return None
    return key, unquote_value(raw)


def format_line(key: str, value: str) -> str:
    return f"{key}={quote_value(value)}"


@dataclass(frozen=True)
class EnvFile:
    """Ordered, immutable view of a KEY=VALUE file.

    `lines` holds the file verbatim (comments included) so rewriting a
    single key leaves every other byte untouched.
    """

    lines: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "EnvFile":
        return cls(lines=tuple(text.splitlines()))

    def render(self) -> str:
        if not self.lines:
            return ""
        return "\n".join(self.lines) + "\n"

    def items(self) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        for line in self.lines:
            kv = parse_line(line)
            if kv is not None:
                out.append(kv)
        return out

    def as_dict(self) -> dict[str, str]:
        # First occurrence wins, matching `grep -E "^KEY=" | head -1` semantics.
        out: dict[str, str] = {}
        for k, v in self.items():
            out.setdefault(k, v)
        return out

    def has(self, key: str) -> bool:
        return any(k == key for k, _ in self.items())

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.as_dict().get(key, default)

    def with_appended(self, key: str, value: str) -> "EnvFile":
        return EnvFile(lines=self.lines + (format_line(key, value),))

    def with_value(self, key: str, value: str) -> "EnvFile":
        """Rewrite the first KEY= line in place; append if the key is absent."""
        lines = list(self.lines)
        for i, line in enumerate(lines):
            kv = parse_line(line)
            if kv is not None and kv[0] == key:
                lines[i] = format_line(key, value)
                return EnvFile(lines=tuple(lines))
        return self.with_appended(key, value)

    def ensure_keys(self, pairs: Iterable[tuple[str, str]]) -> tuple["EnvFile", list[str]]:
        """Append KEY=DEFAULT for every key not yet present.

        Existing keys are never touched. Returns the new file and the keys
        that were appended, in order.
        """
        present = set(self.as_dict())
        out = self
        added: list[str] = []
        for key, default in pairs:
            if key in present:
                continue
            out = out.with_appended(key, default)
            present.add(key)
            added.append(key)
        return out, added


def load(path: str) -> EnvFile:
    """Read `path`; a missing file is an empty EnvFile."""
    if not os.path.exists(path):
        return EnvFile()
    with open(path, encoding="utf-8", errors="replace") as f:
        return EnvFile.parse(f.read())


def save(path: str, env: EnvFile, mode: int | None = None) -> None:
    """Write atomically: temp file in the same dir, then os.replace.

    An existing file keeps its permission bits.
    """
    if mode is None:
        mode = stat.S_IMODE(os.stat(path).st_mode) if os.path.exists(path) else 0o644
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".env.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(env.render())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
