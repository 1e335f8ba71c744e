from __future__ import annotations


class FatalError(Exception):
    """Aborts the whole run. The CLI prints it and exits non-zero."""


class ConfigError(FatalError, ValueError):
    pass


class UnsupportedHostError(FatalError):
    pass


class StackError(FatalError):
    pass


class InstallationNotFound(FatalError):
    pass


class PrivilegeError(FatalError):
    pass


class LockBusyError(FatalError):
    pass
