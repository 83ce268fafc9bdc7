"""
Negotiation state machine for one viewer session.

The protocol is expressed as a pure :func:`transition` from
``(state, event)`` to ``(state, effects)``.  :class:`NegotiationController`
is the actor around it: events are queued, handled one at a time, and the
resulting effects (gateway requests, answer generation, track attachment)
are executed before the next event is taken off the queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

from .errors import (
    GatewayError,
    NegotiationError,
    NegotiationErrorKind,
    PluginError,
    ViewerError,
    describe,
)
from .status import Phase, StatusBoard, project

LOG = logging.getLogger(__name__)

Jsep = Dict[str, Any]

PRE_WATCH_PHASES = frozenset({Phase.IDLE, Phase.CONNECTING, Phase.ATTACHING})


# --------------------------------------------------------------------- events


@dataclass(frozen=True)
class Connecting:
    server_url: str = ""


@dataclass(frozen=True)
class Connected:
    session_id: Optional[int] = None


@dataclass(frozen=True)
class ConnectFailed:
    error: ViewerError


@dataclass(frozen=True)
class Attached:
    handle_id: Optional[int] = None


@dataclass(frozen=True)
class AttachFailed:
    error: ViewerError


@dataclass(frozen=True)
class GatewayMessage:
    payload: Dict[str, Any]
    offer: Optional[Jsep] = None

    @property
    def error_code(self) -> Optional[int]:
        code = self.payload.get("error_code")
        if code in (None, "", 0):
            return None
        try:
            return int(code)
        except (TypeError, ValueError):
            return -1


@dataclass(frozen=True)
class AnswerProduced:
    answer: Jsep


@dataclass(frozen=True)
class AnswerFailed:
    detail: str = ""


@dataclass(frozen=True)
class RemoteTrack:
    track: Any
    kind: str
    mid: str
    enabled: bool


@dataclass(frozen=True)
class ConnectivityChanged:
    connected: bool


@dataclass(frozen=True)
class PluginFault:
    detail: str = ""


@dataclass(frozen=True)
class SessionFault:
    error: ViewerError


Event = Union[
    Connecting,
    Connected,
    ConnectFailed,
    Attached,
    AttachFailed,
    GatewayMessage,
    AnswerProduced,
    AnswerFailed,
    RemoteTrack,
    ConnectivityChanged,
    PluginFault,
    SessionFault,
]


# -------------------------------------------------------------------- effects


@dataclass(frozen=True)
class SendWatch:
    mountpoint_id: int


@dataclass(frozen=True)
class CreateAnswer:
    offer: Jsep


@dataclass(frozen=True)
class SendStart:
    answer: Jsep


@dataclass(frozen=True)
class AttachTrack:
    track: Any
    kind: str


Effect = Union[SendWatch, CreateAnswer, SendStart, AttachTrack]


# ---------------------------------------------------------------------- state


@dataclass(frozen=True)
class NegotiationState:
    """
    Everything the controller knows about one plugin attachment.

    ``connected`` is orthogonal to ``phase``: ``None`` until the media
    transport reports, then the last reported value.  ``answering`` is true
    while exactly one offer is waiting for its ``start``.
    """

    mountpoint_id: int
    phase: Phase = Phase.IDLE
    connected: Optional[bool] = None
    error: Optional[ViewerError] = None
    media: Optional[str] = None
    tracks: Tuple[str, ...] = ()
    disabled_tracks: Tuple[Tuple[str, str], ...] = ()
    watch_sent: bool = False
    offers_received: int = 0
    starts_sent: int = 0
    answering: bool = False
    pending_offer: Optional[Jsep] = None
    activated: bool = False

    def fail(self, error: ViewerError) -> "NegotiationState":
        return replace(
            self,
            phase=Phase.FAILED,
            error=error,
            answering=False,
            pending_offer=None,
        )


def _begin_answer(state: NegotiationState, offer: Jsep) -> Tuple[NegotiationState, List[Effect]]:
    return replace(state, phase=Phase.OFFER_RECEIVED, answering=True), [CreateAnswer(offer)]


def _on_message(state: NegotiationState, event: GatewayMessage) -> Tuple[NegotiationState, List[Effect]]:
    code = event.error_code
    if code is not None:
        message = str(event.payload.get("error") or "")
        return state.fail(GatewayError(code, message)), []

    if event.offer is None or state.phase.is_terminal or not state.watch_sent:
        return state, []

    state = replace(state, offers_received=state.offers_received + 1)
    if state.answering:
        # Only the most recent offer is worth answering once the cycle ends.
        return replace(state, pending_offer=event.offer), []
    return _begin_answer(state, event.offer)


def _on_answer(state: NegotiationState, event: AnswerProduced) -> Tuple[NegotiationState, List[Effect]]:
    if state.phase.is_terminal or not state.answering:
        return state, []

    phase = Phase.ACTIVE if state.connected is True else Phase.ANSWER_SENT
    state = replace(
        state,
        phase=phase,
        answering=False,
        starts_sent=state.starts_sent + 1,
        activated=state.activated or phase is Phase.ACTIVE,
    )
    effects: List[Effect] = [SendStart(event.answer)]
    if state.pending_offer is not None:
        offer = state.pending_offer
        state, more = _begin_answer(replace(state, pending_offer=None), offer)
        effects.extend(more)
    return state, effects


def _on_connectivity(
    state: NegotiationState, event: ConnectivityChanged
) -> Tuple[NegotiationState, List[Effect]]:
    if state.phase.is_terminal:
        return replace(state, connected=event.connected), []
    phase = state.phase
    activated = state.activated
    if event.connected and phase is Phase.ANSWER_SENT:
        phase = Phase.ACTIVE
        activated = True
    return replace(state, connected=event.connected, media=None, phase=phase, activated=activated), []


def _on_track(state: NegotiationState, event: RemoteTrack) -> Tuple[NegotiationState, List[Effect]]:
    if state.phase.is_terminal:
        return state, []
    if not event.enabled:
        # Disabled tracks are noted only; nothing is detached from the sink.
        return replace(state, disabled_tracks=state.disabled_tracks + ((event.kind, event.mid),)), []
    if event.kind in state.tracks:
        return replace(state, media=event.kind), []
    return (
        replace(state, media=event.kind, tracks=state.tracks + (event.kind,)),
        [AttachTrack(event.track, event.kind)],
    )


def transition(state: NegotiationState, event: Event) -> Tuple[NegotiationState, List[Effect]]:
    """
    Apply ``event`` to ``state``; returns the next state and the effects to run.
    """

    if isinstance(event, GatewayMessage):
        return _on_message(state, event)
    if isinstance(event, ConnectivityChanged):
        return _on_connectivity(state, event)
    if state.phase.is_terminal:
        return state, []

    if isinstance(event, Connecting):
        if state.phase is Phase.IDLE:
            return replace(state, phase=Phase.CONNECTING), []
        return state, []
    if isinstance(event, Connected):
        if state.phase in PRE_WATCH_PHASES:
            return replace(state, phase=Phase.ATTACHING), []
        return state, []
    if isinstance(event, Attached):
        if state.watch_sent or state.phase not in PRE_WATCH_PHASES:
            return state, []
        return replace(state, phase=Phase.WATCHING, watch_sent=True), [SendWatch(state.mountpoint_id)]
    if isinstance(event, AnswerProduced):
        return _on_answer(state, event)
    if isinstance(event, AnswerFailed):
        if not state.answering:
            return state, []
        return state.fail(NegotiationError(NegotiationErrorKind.ANSWER_GENERATION_FAILED, event.detail)), []
    if isinstance(event, RemoteTrack):
        return _on_track(state, event)
    if isinstance(event, (ConnectFailed, AttachFailed, SessionFault)):
        return state.fail(event.error), []
    if isinstance(event, PluginFault):
        return state.fail(PluginError(event.detail)), []
    raise TypeError(f"Unsupported event {event!r}")


# ----------------------------------------------------------------- controller


class RequestSender(Protocol):
    async def send(self, body: Dict[str, Any], jsep: Optional[Jsep] = None) -> Dict[str, Any]: ...


class AnswerEngine(Protocol):
    async def create_answer(
        self, offer: Jsep, *, send_audio: bool = False, send_video: bool = False
    ) -> Jsep: ...


class TrackSink(Protocol):
    def attach_track(self, track: Any) -> bool: ...

    async def close(self) -> None: ...


class NegotiationController:
    """
    Single-consumer actor that owns a :class:`NegotiationState`.

    Callbacks from the gateway handle and the media engine only ever call
    :meth:`dispatch`; nothing else mutates the state.
    """

    def __init__(
        self,
        mountpoint_id: int,
        *,
        engine: AnswerEngine,
        sink_factory: Callable[[], TrackSink],
        status: Optional[StatusBoard] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._state = NegotiationState(mountpoint_id=int(mountpoint_id))
        self._engine = engine
        self._sink_factory = sink_factory
        self._sink: Optional[TrackSink] = None
        self._handle: Optional[RequestSender] = None
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None
        self.logger = logger or LOG
        self.status = status or StatusBoard(logger=self.logger)

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def sink(self) -> Optional[TrackSink]:
        return self._sink

    def bind(self, handle: RequestSender) -> None:
        self._handle = handle

    def dispatch(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def start(self) -> asyncio.Task:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())
        return self._runner

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.exception("Failed to handle %s", type(event).__name__)
                self.dispatch(SessionFault(ViewerError(f"internal error: {exc}")))
            finally:
                self._queue.task_done()

    async def settle(self) -> None:
        """Wait until the queue is empty and no answer is being generated."""

        while True:
            await self._queue.join()
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def handle(self, event: Event) -> None:
        previous = self._state
        state, effects = transition(previous, event)
        self._state = state
        self._trace(previous, state, event)
        self._publish()
        for effect in effects:
            await self._apply(effect)

    async def close(self) -> None:
        tasks = list(self._tasks)
        if self._runner is not None:
            tasks.append(self._runner)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._runner = None
        if self._sink is not None:
            await self._sink.close()

    # ------------------------------------------------------------- internals

    def _trace(self, previous: NegotiationState, state: NegotiationState, event: Event) -> None:
        if isinstance(event, GatewayMessage):
            self.logger.debug("Message: %s", event.payload)
            if event.offer is None and event.error_code is None:
                return
        if isinstance(event, RemoteTrack):
            self.logger.info("Remote track: %s (mid=%s), enabled=%s", event.kind, event.mid, event.enabled)
        if previous.phase.is_terminal and state is previous:
            self.logger.debug("Ignoring %s after failure", type(event).__name__)
        elif state.phase is not previous.phase:
            self.logger.debug("%s: %s -> %s", type(event).__name__, previous.phase.value, state.phase.value)
        if state.error is not None and state.error is not previous.error:
            self.logger.warning("Session failed: %s", describe(state.error))

    def _publish(self) -> None:
        state = self._state
        self.status.publish(
            project(state.phase, state.connected, state.error, state.media),
            phase=state.phase,
            connected=state.connected,
            error=describe(state.error),
            tracks=state.tracks,
        )

    def _ensure_sink(self) -> TrackSink:
        if self._sink is None:
            self._sink = self._sink_factory()
            self.logger.debug("Created render sink")
        return self._sink

    async def _apply(self, effect: Effect) -> None:
        if isinstance(effect, SendWatch):
            await self._send({"request": "watch", "id": effect.mountpoint_id})
        elif isinstance(effect, SendStart):
            await self._send({"request": "start"}, jsep=effect.answer)
        elif isinstance(effect, CreateAnswer):
            task = asyncio.create_task(self._answer(effect.offer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif isinstance(effect, AttachTrack):
            self._ensure_sink().attach_track(effect.track)
        else:  # pragma: no cover - exhaustive
            raise TypeError(f"Unsupported effect {effect!r}")

    async def _send(self, body: Dict[str, Any], jsep: Optional[Jsep] = None) -> None:
        if self._handle is None:
            raise RuntimeError("No plugin handle bound to the controller")
        try:
            await self._handle.send(body, jsep=jsep)
        except ViewerError as exc:
            self.dispatch(SessionFault(exc))

    async def _answer(self, offer: Jsep) -> None:
        self.logger.info("Received WebRTC offer, creating answer...")
        try:
            answer = await self._engine.create_answer(offer, send_audio=False, send_video=False)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("WebRTC answer error: %s", exc)
            self.dispatch(AnswerFailed(str(exc) or type(exc).__name__))
            return
        self.dispatch(AnswerProduced(answer))


__all__ = [
    "AnswerFailed",
    "AnswerProduced",
    "Attached",
    "AttachFailed",
    "AttachTrack",
    "ConnectFailed",
    "Connected",
    "Connecting",
    "ConnectivityChanged",
    "CreateAnswer",
    "GatewayMessage",
    "NegotiationController",
    "NegotiationState",
    "PluginFault",
    "RemoteTrack",
    "SendStart",
    "SendWatch",
    "SessionFault",
    "transition",
]
