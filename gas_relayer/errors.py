"""Startup failure types.

Anything that prevents the service from serving is raised as a StartupError;
the entry point logs it and exits with a non-zero status.
"""

from enum import Enum


class StartupErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    METRICS_REGISTRATION = "metrics_registration"
    DATABASE = "database"
    SERVER = "server"


class StartupError(Exception):
    def __init__(self, kind: StartupErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
