"""
Receive-only WebRTC engine backed by aiortc.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

LOG = logging.getLogger(__name__)

Jsep = Dict[str, Any]
TrackListener = Callable[[MediaStreamTrack, str, bool], None]
ConnectivityListener = Callable[[bool], None]

CONNECTED_STATES = frozenset({"connected"})
DISCONNECTED_STATES = frozenset({"disconnected", "failed", "closed"})


class RtcEngine:
    """
    Wraps one :class:`RTCPeerConnection` for a viewer session.

    The gateway always offers; the engine answers and reports remote tracks
    (``enabled=True`` on arrival, ``False`` when they end) and connectivity.
    """

    def __init__(self, ice_servers: Iterable[str] = (), *, logger: Optional[logging.Logger] = None) -> None:
        self.ice_servers = [str(url) for url in ice_servers]
        self.pc: Optional[RTCPeerConnection] = None
        self.offer: Optional[str] = None
        self.answer: Optional[str] = None
        self.logger = logger or LOG
        self._connected: Optional[bool] = None
        self._track_listeners: List[TrackListener] = []
        self._connectivity_listeners: List[ConnectivityListener] = []

    def on_remote_track(self, callback: TrackListener) -> None:
        self._track_listeners.append(callback)

    def on_connectivity_change(self, callback: ConnectivityListener) -> None:
        self._connectivity_listeners.append(callback)

    def _ensure_peer(self) -> RTCPeerConnection:
        if self.pc is None:
            configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
            pc = RTCPeerConnection(configuration=configuration)
            pc.on("track", self._handle_track)
            pc.on("connectionstatechange", self._handle_connection_state)
            self.pc = pc
        return self.pc

    async def create_answer(
        self,
        offer: Jsep,
        *,
        send_audio: bool = False,
        send_video: bool = False,
    ) -> Jsep:
        if not isinstance(offer, dict) or offer.get("type") != "offer" or not offer.get("sdp"):
            raise ValueError("expected an SDP offer")

        pc = self._ensure_peer()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type="offer"))
        for transceiver in pc.getTransceivers():
            sending = send_audio if transceiver.kind == "audio" else send_video
            if not sending:
                transceiver.direction = "recvonly"
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)

        local = pc.localDescription
        self.offer = offer["sdp"]
        self.answer = local.sdp
        self.logger.debug("Created %s answer for %d transceiver(s)", local.type, len(pc.getTransceivers()))
        return {"type": local.type, "sdp": local.sdp}

    def _mid_of(self, track: MediaStreamTrack) -> str:
        if self.pc is not None:
            for transceiver in self.pc.getTransceivers():
                if transceiver.receiver.track is track:
                    return str(transceiver.mid or "")
        return ""

    def _emit_track(self, track: MediaStreamTrack, mid: str, enabled: bool) -> None:
        for callback in list(self._track_listeners):
            callback(track, mid, enabled)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        mid = self._mid_of(track)

        @track.on("ended")
        def _on_ended() -> None:
            self._emit_track(track, mid, False)

        self._emit_track(track, mid, True)

    def _handle_connection_state(self) -> None:
        if self.pc is None:
            return
        state = self.pc.connectionState
        self.logger.debug("Peer connection state: %s", state)
        if state in CONNECTED_STATES:
            connected = True
        elif state in DISCONNECTED_STATES:
            connected = False
        else:
            return
        if connected == self._connected:
            return
        self._connected = connected
        for callback in list(self._connectivity_listeners):
            callback(connected)

    async def close(self) -> None:
        self._track_listeners.clear()
        self._connectivity_listeners.clear()
        if self.pc is not None:
            await self.pc.close()
            self.pc = None


__all__ = ["RtcEngine"]
