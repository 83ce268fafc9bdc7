"""
One viewer session: gateway connection, plugin handle, media engine, render
sink and negotiation controller, wired together and owned by one object.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from .config import ViewerConfig
from .errors import AttachError, ConnectError
from .negotiation import (
    Attached,
    AttachFailed,
    ConnectFailed,
    Connected,
    Connecting,
    ConnectivityChanged,
    GatewayMessage,
    NegotiationController,
    PluginFault,
    TrackSink,
)
from .rtc import MediaSinkAdapter, RenderSink, RtcEngine
from .signaling import GatewayClient, GatewaySession, HandleCallbacks, PluginHandle
from .status import StatusBoard, StatusSnapshot

LOG = logging.getLogger(__name__)

STREAMING_CAPABILITY = "streaming"
TEARDOWN_TIMEOUT = 5.0


class ViewerSession:
    """
    Session context for watching one mountpoint.

    Nothing here is shared between sessions, so several can run side by side
    on one event loop.
    """

    def __init__(
        self,
        config: ViewerConfig,
        *,
        session_id: Optional[str] = None,
        client: Optional[GatewayClient] = None,
        engine: Optional[Any] = None,
        sink_factory: Optional[Callable[[], TrackSink]] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.config = config
        self.logger = LOG.getChild(self.id[:8])
        self.status = StatusBoard(logger=self.logger)
        self.engine = engine or RtcEngine(config.ice_servers, logger=self.logger.getChild("rtc"))
        self.client = client or GatewayClient(
            request_timeout=config.request_timeout,
            keepalive_interval=config.keepalive_interval,
            max_events=config.long_poll_max_events,
            logger=self.logger.getChild("gateway"),
        )
        self.controller = NegotiationController(
            config.mountpoint_id,
            engine=self.engine,
            sink_factory=sink_factory or self._default_sink,
            status=self.status,
            logger=self.logger,
        )
        self.adapter = MediaSinkAdapter(self.controller.dispatch)
        self.adapter.bind(self.engine)
        self.gateway: Optional[GatewaySession] = None
        self.handle: Optional[PluginHandle] = None
        self._started = False
        self._closed = False

    def _default_sink(self) -> RenderSink:
        return RenderSink(drain=self.config.drain_tracks, logger=self.logger.getChild("sink"))

    @property
    def snapshot(self) -> StatusSnapshot:
        return self.status.snapshot()

    def _callbacks(self) -> HandleCallbacks:
        dispatch = self.controller.dispatch
        return HandleCallbacks(
            on_message=lambda payload, jsep: dispatch(GatewayMessage(payload, jsep)),
            on_connectivity=lambda connected: dispatch(ConnectivityChanged(connected)),
            on_error=lambda detail: dispatch(PluginFault(detail)),
        )

    async def start(self) -> None:
        """
        Connect, attach the streaming plugin and hand over to the controller.

        Failures are not raised; they end up as the ``FAILED`` phase.
        """

        if self._started:
            raise RuntimeError("viewer session already started")
        self._started = True
        self.controller.start()
        dispatch = self.controller.dispatch

        dispatch(Connecting(self.config.server_url))
        try:
            self.gateway = await self.client.connect(self.config.server_url)
        except ConnectError as exc:
            dispatch(ConnectFailed(exc))
            return
        dispatch(Connected(self.gateway.session_id))

        try:
            self.handle = await self.gateway.attach(STREAMING_CAPABILITY, self._callbacks())
        except AttachError as exc:
            dispatch(AttachFailed(exc))
            return
        self.controller.bind(self.handle)
        dispatch(Attached(self.handle.handle_id))

    async def settle(self) -> None:
        await self.controller.settle()

    async def close(self, timeout: float = TEARDOWN_TIMEOUT) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await asyncio.wait_for(self._teardown(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Teardown did not finish within %.1fs", timeout)

    async def _teardown(self) -> None:
        await self.controller.close()
        await self.engine.close()
        await self.client.close()
        self.logger.info("Viewer session closed")

    def describe(self) -> Dict[str, Any]:
        state = self.controller.state
        return {
            "id": self.id,
            "serverUrl": self.config.server_url,
            "mountpointId": self.config.mountpoint_id,
            "gatewaySession": self.gateway.session_id if self.gateway else None,
            "handle": self.handle.handle_id if self.handle else None,
            "offersReceived": state.offers_received,
            "startsSent": state.starts_sent,
            "closed": self._closed,
            **self.snapshot.to_dict(),
        }


__all__ = ["ViewerSession"]
