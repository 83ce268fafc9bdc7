"""Tests for the negotiation state machine and its controller."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeEngine, FakeHandle, FakeTrack, offer
from viewer.errors import (
    AttachError,
    AttachErrorKind,
    GatewayError,
    NegotiationError,
    PluginError,
)
from viewer.negotiation import (
    AnswerFailed,
    AnswerProduced,
    Attached,
    AttachTrack,
    Connected,
    Connecting,
    ConnectivityChanged,
    CreateAnswer,
    GatewayMessage,
    NegotiationController,
    NegotiationState,
    PluginFault,
    RemoteTrack,
    SendStart,
    SendWatch,
    SessionFault,
    transition,
)
from viewer.rtc import RenderSink
from viewer.status import Phase, StatusCode

ANSWER = {"type": "answer", "sdp": "A1"}


def run_events(state, *events):
    effects = []
    for event in events:
        state, produced = transition(state, event)
        effects.extend(produced)
    return state, effects


def watching(mountpoint_id: int = 5) -> NegotiationState:
    state, _ = run_events(
        NegotiationState(mountpoint_id=mountpoint_id),
        Connecting("wss://gw.example"),
        Connected(1),
        Attached(7),
    )
    return state


def test_setup_phases_lead_to_one_watch() -> None:
    state = NegotiationState(mountpoint_id=5)

    state, effects = transition(state, Connecting("wss://gw.example"))
    assert state.phase is Phase.CONNECTING and effects == []

    state, effects = transition(state, Connected(1))
    assert state.phase is Phase.ATTACHING and effects == []

    state, effects = transition(state, Attached(7))
    assert state.phase is Phase.WATCHING
    assert effects == [SendWatch(5)]

    state, effects = transition(state, Attached(7))
    assert effects == []


def test_connectivity_never_resends_watch() -> None:
    state, effects = run_events(
        watching(),
        ConnectivityChanged(True),
        ConnectivityChanged(False),
        ConnectivityChanged(True),
        Attached(7),
    )

    assert not any(isinstance(effect, SendWatch) for effect in effects)
    assert state.watch_sent


def test_offer_before_watch_is_ignored() -> None:
    state = NegotiationState(mountpoint_id=5)
    state, effects = transition(state, GatewayMessage({"streaming": "event"}, offer()))

    assert effects == []
    assert state.offers_received == 0
    assert state.phase is Phase.IDLE


def test_offer_answer_cycle() -> None:
    state, effects = transition(watching(), GatewayMessage({"streaming": "event"}, offer("O1")))
    assert state.phase is Phase.OFFER_RECEIVED
    assert effects == [CreateAnswer(offer("O1"))]

    state, effects = transition(state, AnswerProduced(ANSWER))
    assert state.phase is Phase.ANSWER_SENT
    assert effects == [SendStart(ANSWER)]
    assert state.starts_sent == state.offers_received == 1

    state, _ = transition(state, ConnectivityChanged(True))
    assert state.phase is Phase.ACTIVE


def test_answer_after_connectivity_goes_straight_to_active() -> None:
    state, _ = run_events(
        watching(),
        GatewayMessage({}, offer()),
        ConnectivityChanged(True),
        AnswerProduced(ANSWER),
    )
    assert state.phase is Phase.ACTIVE


def test_second_offer_waits_for_the_first_start() -> None:
    state, effects = run_events(
        watching(),
        GatewayMessage({}, offer("O1")),
        GatewayMessage({}, offer("O2")),
    )
    assert [effect for effect in effects if isinstance(effect, CreateAnswer)] == [CreateAnswer(offer("O1"))]
    assert state.pending_offer == offer("O2")

    state, effects = transition(state, AnswerProduced({"type": "answer", "sdp": "A1"}))
    assert effects == [SendStart({"type": "answer", "sdp": "A1"}), CreateAnswer(offer("O2"))]
    assert state.phase is Phase.OFFER_RECEIVED
    assert state.answering

    state, effects = transition(state, AnswerProduced({"type": "answer", "sdp": "A2"}))
    assert effects == [SendStart({"type": "answer", "sdp": "A2"})]
    assert state.offers_received == state.starts_sent == 2


def test_gateway_error_fails_from_active() -> None:
    state, _ = run_events(
        watching(),
        GatewayMessage({}, offer()),
        AnswerProduced(ANSWER),
        ConnectivityChanged(True),
    )
    assert state.phase is Phase.ACTIVE

    state, effects = transition(state, GatewayMessage({"error_code": 455, "error": "No such mountpoint"}))
    assert state.phase is Phase.FAILED
    assert isinstance(state.error, GatewayError)
    assert state.error.code == 455
    assert effects == []


def test_failed_phase_is_absorbing() -> None:
    state, _ = transition(watching(), PluginFault("handle detached by the gateway"))
    assert state.phase is Phase.FAILED
    assert isinstance(state.error, PluginError)

    for event in (
        GatewayMessage({}, offer()),
        AnswerProduced(ANSWER),
        RemoteTrack(FakeTrack("video"), "video", "0", True),
        Attached(7),
    ):
        after, effects = transition(state, event)
        assert after.phase is Phase.FAILED
        assert effects == []

    after, _ = transition(state, ConnectivityChanged(True))
    assert after.phase is Phase.FAILED
    assert after.connected is True


def test_later_gateway_error_replaces_the_error() -> None:
    state, _ = transition(watching(), SessionFault(AttachError(AttachErrorKind.SESSION_LOST, "gone")))
    state, _ = transition(state, GatewayMessage({"error_code": 458, "error": "Recording not found"}))

    assert isinstance(state.error, GatewayError)
    assert state.error.message == "Recording not found"


def test_answer_failure_fails_without_start() -> None:
    state, effects = run_events(watching(), GatewayMessage({}, offer()), AnswerFailed("ICE gathering failed"))

    assert state.phase is Phase.FAILED
    assert isinstance(state.error, NegotiationError)
    assert not any(isinstance(effect, SendStart) for effect in effects)


def test_tracks_are_deduplicated_by_kind() -> None:
    video, audio, again = FakeTrack("video"), FakeTrack("audio"), FakeTrack("video")
    state, effects = run_events(
        watching(),
        RemoteTrack(video, "video", "0", True),
        RemoteTrack(audio, "audio", "1", True),
        RemoteTrack(again, "video", "2", True),
    )

    assert effects == [AttachTrack(video, "video"), AttachTrack(audio, "audio")]
    assert state.tracks == ("video", "audio")
    assert state.media == "video"


def test_disabled_track_is_only_noted() -> None:
    state, effects = transition(watching(), RemoteTrack(FakeTrack("audio"), "audio", "1", False))

    assert effects == []
    assert state.tracks == ()
    assert state.disabled_tracks == (("audio", "1"),)


def test_disconnect_keeps_tracks() -> None:
    state, _ = run_events(
        watching(),
        GatewayMessage({}, offer()),
        AnswerProduced(ANSWER),
        RemoteTrack(FakeTrack("video"), "video", "0", True),
        ConnectivityChanged(True),
        ConnectivityChanged(False),
    )

    assert state.phase is Phase.ACTIVE
    assert state.connected is False
    assert state.tracks == ("video",)


def test_unknown_event_is_rejected() -> None:
    with pytest.raises(TypeError):
        transition(NegotiationState(mountpoint_id=1), object())


def test_error_code_parsing() -> None:
    assert GatewayMessage({"error_code": 0}).error_code is None
    assert GatewayMessage({"error_code": "456"}).error_code == 456
    assert GatewayMessage({"error_code": "bad"}).error_code == -1


# ------------------------------------------------------------------ controller


def make_controller(engine: FakeEngine, handle: FakeHandle, mountpoint_id: int = 5) -> NegotiationController:
    controller = NegotiationController(
        mountpoint_id,
        engine=engine,
        sink_factory=lambda: RenderSink(drain=False),
    )
    controller.bind(handle)
    return controller


def test_controller_runs_one_start_per_offer(fake_engine: FakeEngine, fake_handle: FakeHandle) -> None:
    async def scenario() -> None:
        controller = make_controller(fake_engine, fake_handle)
        controller.start()
        for event in (Connecting(), Connected(1), Attached(7)):
            controller.dispatch(event)
        controller.dispatch(GatewayMessage({}, offer("O1")))
        controller.dispatch(GatewayMessage({}, offer("O2")))
        await controller.settle()

        assert fake_handle.requests("watch") == [({"request": "watch", "id": 5}, None)]
        starts = fake_handle.requests("start")
        assert [jsep["sdp"] for _, jsep in starts] == ["answer-to-O1", "answer-to-O2"]
        assert [call[0]["sdp"] for call in fake_engine.calls] == ["O1", "O2"]
        assert all(call[1:] == (False, False) for call in fake_engine.calls)
        await controller.close()

    asyncio.run(scenario())


def test_controller_answer_failure(fake_handle: FakeHandle) -> None:
    async def scenario() -> None:
        controller = make_controller(FakeEngine(fail=True), fake_handle)
        controller.start()
        for event in (Connecting(), Connected(1), Attached(7), GatewayMessage({}, offer())):
            controller.dispatch(event)
        await controller.settle()

        assert controller.state.phase is Phase.FAILED
        assert fake_handle.requests("start") == []
        status = controller.status.snapshot().status
        assert status.code is StatusCode.FAILED
        assert "ICE gathering failed" in status.text
        await controller.close()

    asyncio.run(scenario())


def test_controller_send_failure_fails_session(fake_engine: FakeEngine, fake_handle: FakeHandle) -> None:
    async def scenario() -> None:
        fake_handle.fail_with = GatewayError(455, "No such mountpoint")
        controller = make_controller(fake_engine, fake_handle)
        controller.start()
        for event in (Connecting(), Connected(1), Attached(7)):
            controller.dispatch(event)
        await controller.settle()

        assert controller.state.phase is Phase.FAILED
        assert controller.status.snapshot().status.text == "Stream error: No such mountpoint"
        await controller.close()

    asyncio.run(scenario())


def test_controller_attaches_tracks_to_one_sink(fake_engine: FakeEngine, fake_handle: FakeHandle) -> None:
    async def scenario() -> None:
        controller = make_controller(fake_engine, fake_handle)
        controller.start()
        video, audio = FakeTrack("video"), FakeTrack("audio")
        for event in (
            Connecting(),
            Connected(1),
            Attached(7),
            RemoteTrack(video, "video", "0", True),
            RemoteTrack(audio, "audio", "1", True),
            RemoteTrack(FakeTrack("video"), "video", "2", True),
        ):
            controller.dispatch(event)
        await controller.settle()

        sink = controller.sink
        assert sink is not None
        assert sink.tracks == {"video": video, "audio": audio}
        await controller.close()
        assert sink.closed

    asyncio.run(scenario())
