"""Custom exception hierarchy for GBA."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Stats


class GbaError(Exception):
    """Base exception for GBA."""


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    CANCELLED = "cancelled"
    SHUTDOWN = "shutdown"
    OTHER = "other"


class ExecError(GbaError):
    """An agent invocation failed.

    Carries whatever usage the invocation reported before failing so that
    partial stats are never lost.
    """

    def __init__(self, kind: ErrorKind, message: str, stats: Stats | None = None):
        self.kind = kind
        self.message = message
        self.stats = stats
        super().__init__(f"{kind.value}: {message}")


class ConfigError(GbaError):
    """Invalid configuration or user input."""


class FeatureNotFoundError(GbaError):
    """No feature directory matches the given reference."""


class StateNotFoundError(GbaError):
    """state.yml does not exist for the feature."""


class StateCorruptionError(GbaError):
    """state.yml exists but cannot be parsed or validated."""


class PersistenceError(GbaError):
    """Writing state failed. Always fatal to the current run."""


class ConcurrentModificationError(PersistenceError):
    """state.yml was changed by someone else since it was loaded."""


class FeatureLockedError(GbaError):
    """Another process holds the feature's run lock."""

    def __init__(self, key: str, pid: int):
        self.key = key
        self.pid = pid
        holder = f" (pid {pid})" if pid else ""
        super().__init__(f"Feature {key} is being run by another process{holder}")


class TemplateNotFoundError(GbaError):
    """Prompt template does not exist."""


class RenderError(GbaError):
    """Prompt template failed to render."""
