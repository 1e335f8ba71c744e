from __future__ import annotations

import re
import time
from enum import Enum
from typing import Callable

import httpx
from docker.errors import DockerException

from .docker_ops import ContainerRuntime


READY_LOG_RE = re.compile(r"(Prosody is ready|Started|prosody started|Activated service)")


class Readiness(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed-out"
    ERROR = "error"


def probe_xmpp(runtime: ContainerRuntime, container: str) -> bool:
    """One readiness probe: log markers first, then `prosodyctl status`."""
    if READY_LOG_RE.search(runtime.logs(container)):
        return True
    code, _ = runtime.exec_in(container, ["prosodyctl", "status"])
    return code == 0


def wait_for_xmpp(
    runtime: ContainerRuntime,
    container: str,
    attempts: int = 30,
    delay_s: float = 2.0,
    deadline_s: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[Readiness, str]:
    """Poll until the XMPP server looks ready.

    Bounded by `attempts` (fixed `delay_s` between them) and, if given, an
    overall `deadline_s`. Returns (state, detail). ERROR means every probe
    failed with a runtime error rather than a negative answer.
    """
    attempts = max(1, int(attempts))
    start = clock()
    errors = 0
    last_error = ""
    tried = 0
    for i in range(attempts):
        tried += 1
        try:
            if probe_xmpp(runtime, container):
                return Readiness.READY, f"ready after {tried} probe(s)"
        except (DockerException, OSError) as e:
            errors += 1
            last_error = f"{type(e).__name__}: {e}"
        if i == attempts - 1:
            break
        if deadline_s is not None and clock() - start + delay_s > deadline_s:
            break
        sleep(delay_s)

    if errors == tried:
        return Readiness.ERROR, last_error
    return Readiness.TIMED_OUT, f"not confirmed after {tried} probe(s)"


def check_web(url: str, timeout_s: float = 3.0, transport: httpx.BaseTransport | None = None) -> tuple[bool, str]:
    """Reachability of the web frontend. Any non-5xx answer counts as up."""
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        if resp.status_code >= 500:
            return False, f"HTTP {resp.status_code}"
        return True, f"HTTP {resp.status_code}"
    except (httpx.ConnectError, httpx.TimeoutException):
        return False, "No response"
    except httpx.HTTPError as e:
        return False, f"Error: {type(e).__name__}: {e}"
