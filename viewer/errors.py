"""
Error taxonomy for a viewer session.

Every error below is terminal for the session that raised it: the controller
moves to ``FAILED`` and the status text carries the error detail verbatim.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ViewerError(RuntimeError):
    """Base class for viewer session errors."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail


class ConfigError(ValueError):
    """Raised when the viewer configuration is invalid."""


class ConnectErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    PROTOCOL_INIT_FAILED = "protocol_init_failed"


class AttachErrorKind(str, Enum):
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    SESSION_LOST = "session_lost"


class NegotiationErrorKind(str, Enum):
    ANSWER_GENERATION_FAILED = "answer_generation_failed"


class ConnectError(ViewerError):
    """The gateway could not be reached or refused to create a session."""

    def __init__(self, kind: ConnectErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind


class AttachError(ViewerError):
    """The plugin handle could not be attached or the session went away."""

    def __init__(self, kind: AttachErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind


class GatewayError(ViewerError):
    """Error reported by the gateway, either at protocol or plugin level."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(message or f"error {code}")
        self.code = int(code)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}" if self.message else str(self.code)


class NegotiationError(ViewerError):
    """The media engine could not answer the gateway offer."""

    def __init__(self, kind: NegotiationErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind


class PluginError(ViewerError):
    """Asynchronous error raised against an attached plugin handle."""


def describe(error: Optional[BaseException]) -> str:
    """Return a short, single-line description of ``error``."""

    if error is None:
        return ""
    if isinstance(error, GatewayError):
        return error.message or str(error)
    if isinstance(error, ViewerError):
        return error.detail
    return str(error) or type(error).__name__


__all__ = [
    "AttachError",
    "AttachErrorKind",
    "ConfigError",
    "ConnectError",
    "ConnectErrorKind",
    "GatewayError",
    "NegotiationError",
    "NegotiationErrorKind",
    "PluginError",
    "ViewerError",
    "describe",
]
