"""
Relay from media engine callbacks to negotiation controller events.
"""

from __future__ import annotations

from typing import Any, Callable

from ..negotiation import ConnectivityChanged, Event, RemoteTrack


class MediaSinkAdapter:
    """
    Normalises engine callbacks into controller events, in delivery order.
    """

    def __init__(self, dispatch: Callable[[Event], None]) -> None:
        self._dispatch = dispatch
        self.forwarded = 0

    def bind(self, engine: Any) -> None:
        engine.on_remote_track(self.on_remote_track)
        engine.on_connectivity_change(self.on_connectivity_change)

    def on_remote_track(self, track: Any, mid: Any, enabled: bool) -> None:
        kind = str(getattr(track, "kind", "") or "unknown").lower()
        mid = "" if mid is None else str(mid)
        self._forward(RemoteTrack(track=track, kind=kind, mid=mid, enabled=bool(enabled)))

    def on_connectivity_change(self, connected: bool) -> None:
        self._forward(ConnectivityChanged(bool(connected)))

    def _forward(self, event: Event) -> None:
        self.forwarded += 1
        self._dispatch(event)


__all__ = ["MediaSinkAdapter"]
