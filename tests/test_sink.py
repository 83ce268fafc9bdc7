"""Tests for the render sink and the engine callback adapter."""

from __future__ import annotations

import asyncio

import pytest
from aiortc.mediastreams import AudioStreamTrack

from fakes import FakeEngine, FakeTrack
from viewer.negotiation import ConnectivityChanged, RemoteTrack
from viewer.rtc import MediaSinkAdapter, RenderSink


def test_sink_keeps_one_track_per_kind() -> None:
    sink = RenderSink()
    video, audio = FakeTrack("video"), FakeTrack("audio")

    assert sink.attach_track(video) is True
    assert sink.attach_track(audio) is True
    assert sink.attach_track(FakeTrack("video")) is False

    assert sink.kinds == ("video", "audio")
    assert sink.tracks["video"] is video
    assert len(sink) == 2


def test_closed_sink_rejects_tracks() -> None:
    async def scenario() -> None:
        sink = RenderSink()
        sink.attach_track(FakeTrack("video"))
        await sink.close()

        assert sink.closed
        assert len(sink) == 0
        with pytest.raises(RuntimeError):
            sink.attach_track(FakeTrack("audio"))
        await sink.close()

    asyncio.run(scenario())


def test_adapter_preserves_delivery_order() -> None:
    events = []
    engine = FakeEngine()
    adapter = MediaSinkAdapter(events.append)
    adapter.bind(engine)

    track = FakeTrack("VIDEO")
    engine.emit_track(track, 0, True)
    engine.emit_connectivity(True)
    engine.emit_track(FakeTrack("audio"), None, False)
    engine.emit_connectivity(False)

    assert events[0] == RemoteTrack(track=track, kind="video", mid="0", enabled=True)
    assert events[1] == ConnectivityChanged(True)
    assert isinstance(events[2], RemoteTrack)
    assert events[2].mid == "" and events[2].enabled is False
    assert events[3] == ConnectivityChanged(False)
    assert adapter.forwarded == 4


class CountingAudioTrack(AudioStreamTrack):
    """Silence generator that counts how often it was read."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    async def recv(self):
        self.reads += 1
        return await super().recv()


def test_draining_sink_reads_attached_tracks() -> None:
    async def scenario() -> None:
        sink = RenderSink(drain=True)
        track = CountingAudioTrack()

        assert sink.attach_track(track) is True
        assert sink.attach_track(CountingAudioTrack()) is False
        for _ in range(50):
            if track.reads:
                break
            await asyncio.sleep(0.01)
        assert track.reads >= 1

        await sink.close()
        assert sink.closed
        assert len(sink) == 0

    asyncio.run(scenario())
