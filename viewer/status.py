"""
Status projection for a viewer session.

:func:`project` maps the controller state onto exactly one user-facing status.
:class:`StatusBoard` keeps the last published snapshot and fans it out to
subscribers (the CLI printer, API websockets, tests).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .errors import (
    AttachError,
    ConnectError,
    ConnectErrorKind,
    GatewayError,
    NegotiationError,
    PluginError,
    describe,
)

LOG = logging.getLogger(__name__)


class Phase(str, Enum):
    """Negotiation phase. ``CONNECTING`` and ``ATTACHING`` are stages of idle."""

    IDLE = "idle"
    CONNECTING = "connecting"
    ATTACHING = "attaching"
    WATCHING = "watching"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"
    ACTIVE = "active"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.FAILED


class StatusCode(str, Enum):
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    ATTACHING = "attaching"
    REQUESTING = "requesting"
    NEGOTIATING = "negotiating"
    STARTING = "starting"
    RECEIVING = "receiving"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class Status:
    code: StatusCode
    text: str

    def to_dict(self) -> dict:
        return {"code": self.code.value, "text": self.text}


PHASE_STATUS: Dict[Phase, Status] = {
    Phase.IDLE: Status(StatusCode.INITIALIZING, "Initializing..."),
    Phase.CONNECTING: Status(StatusCode.CONNECTING, "Connecting to server..."),
    Phase.ATTACHING: Status(StatusCode.ATTACHING, "Attaching to streaming plugin..."),
    Phase.WATCHING: Status(StatusCode.REQUESTING, "Requesting video stream..."),
    Phase.OFFER_RECEIVED: Status(StatusCode.NEGOTIATING, "Processing video offer..."),
    Phase.ANSWER_SENT: Status(StatusCode.STARTING, "Starting video playback..."),
    Phase.ACTIVE: Status(StatusCode.CONNECTED, "Stream active"),
    Phase.FAILED: Status(StatusCode.FAILED, "Session failed"),
}

CONNECTED_STATUS = Status(StatusCode.CONNECTED, "WebRTC connected")
DISCONNECTED_STATUS = Status(StatusCode.DISCONNECTED, "WebRTC disconnected")
RECEIVING_TEMPLATE = "Receiving {kind} stream"


def _with_detail(prefix: str, detail: str) -> str:
    return f"{prefix}: {detail}" if detail else prefix


def _error_text(error: BaseException) -> str:
    detail = describe(error)
    if isinstance(error, GatewayError):
        return _with_detail("Stream error", detail)
    if isinstance(error, ConnectError):
        if error.kind is ConnectErrorKind.PROTOCOL_INIT_FAILED:
            return _with_detail("Failed to initialize", detail)
        return _with_detail("Cannot connect to server", detail)
    if isinstance(error, AttachError):
        return _with_detail("Cannot connect to stream", detail)
    if isinstance(error, NegotiationError):
        return _with_detail("WebRTC connection failed", detail)
    if isinstance(error, PluginError):
        return _with_detail("Streaming plugin error", detail)
    return _with_detail(PHASE_STATUS[Phase.FAILED].text, detail)


def project(
    phase: Phase,
    connectivity: Optional[bool],
    last_error: Optional[BaseException],
    media: Optional[str] = None,
) -> Status:
    """
    Map ``(phase, connectivity, last_error, media)`` onto one status.

    ``media`` is the kind of the most recent track attached since the last
    connectivity change, so whichever of the two arrived last wins.
    Precedence: error, receiving, disconnected, connected (``Stream active``
    once the phase is active), then the phase label.
    """

    if last_error is not None:
        return Status(StatusCode.FAILED, _error_text(last_error))
    if phase is Phase.FAILED:
        return PHASE_STATUS[Phase.FAILED]
    if media:
        return Status(StatusCode.RECEIVING, RECEIVING_TEMPLATE.format(kind=media))
    if connectivity is False:
        return DISCONNECTED_STATUS
    if connectivity is True:
        return PHASE_STATUS[Phase.ACTIVE] if phase is Phase.ACTIVE else CONNECTED_STATUS
    return PHASE_STATUS[phase]


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Last-known projection of one session, plus the inputs that produced it.
    """

    status: Status = PHASE_STATUS[Phase.IDLE]
    phase: Phase = Phase.IDLE
    connected: Optional[bool] = None
    error: str = ""
    tracks: Tuple[str, ...] = field(default_factory=tuple)
    rev: int = 0

    def to_dict(self) -> dict:
        return {
            "rev": int(self.rev),
            "status": self.status.to_dict(),
            "phase": self.phase.value,
            "connected": self.connected,
            "error": self.error,
            "tracks": list(self.tracks),
        }


StatusObserver = Callable[[StatusSnapshot], None]


class StatusBoard:
    """
    Holds the current :class:`StatusSnapshot` and notifies observers on change.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._snapshot = StatusSnapshot()
        self._observer_counter = 0
        self._observers: Dict[int, StatusObserver] = {}
        self._log = logger or LOG

    def snapshot(self) -> StatusSnapshot:
        return self._snapshot

    def subscribe(self, callback: StatusObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self._snapshot)
        except Exception:  # pragma: no cover - observer failures should not kill the session
            self._log.exception("Status observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def publish(
        self,
        status: Status,
        *,
        phase: Phase,
        connected: Optional[bool],
        error: str = "",
        tracks: Tuple[str, ...] = (),
    ) -> Optional[StatusSnapshot]:
        """
        Publish a new snapshot. Returns ``None`` when nothing changed.
        """

        current = self._snapshot
        if (
            status == current.status
            and phase is current.phase
            and connected == current.connected
            and error == current.error
            and tuple(tracks) == current.tracks
        ):
            return None

        if status != current.status:
            self._log.info("STATUS: %s", status.text)

        snapshot = StatusSnapshot(
            status=status,
            phase=phase,
            connected=connected,
            error=error,
            tracks=tuple(tracks),
            rev=current.rev + 1,
        )
        self._snapshot = snapshot
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the session
                self._log.exception("Status observer %s failed.", token)
        return snapshot


__all__ = [
    "PHASE_STATUS",
    "Phase",
    "Status",
    "StatusBoard",
    "StatusCode",
    "StatusSnapshot",
    "project",
]
