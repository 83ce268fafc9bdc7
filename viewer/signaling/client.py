"""
Gateway session and plugin handle management.

:class:`GatewayClient` creates exactly one :class:`GatewaySession`; the
session attaches :class:`PluginHandle` objects and pumps gateway events to
them by ``sender``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import (
    AttachError,
    AttachErrorKind,
    ConnectError,
    ConnectErrorKind,
    GatewayError,
)
from .transport import GatewayTransport, ProtocolError, TransportError, open_transport

LOG = logging.getLogger(__name__)

PLUGIN_NAMESPACE = "janus.plugin."
# Gateway error codes meaning the plugin itself is missing or refused the handle.
CAPABILITY_ERROR_CODES = frozenset({460, 461})
CLOSE_TIMEOUT = 2.0

TransportFactory = Callable[[str], GatewayTransport]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class AttachmentState(str, Enum):
    UNATTACHED = "unattached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    FAILED = "failed"


def new_transaction() -> str:
    return uuid.uuid4().hex[:12]


def plugin_name(capability: str) -> str:
    capability = str(capability or "").strip()
    if not capability:
        raise ValueError("capability is required")
    return capability if "." in capability else PLUGIN_NAMESPACE + capability


def _error_of(reply: Dict[str, Any]) -> GatewayError:
    error = reply.get("error") or {}
    try:
        code = int(error.get("code") or 0)
    except (TypeError, ValueError):
        code = 0
    return GatewayError(code, str(error.get("reason") or ""))


def _noop(*_args: Any) -> None:
    return None


@dataclass
class HandleCallbacks:
    """Inbound callback surface of a plugin handle."""

    on_message: Callable[[Dict[str, Any], Optional[Dict[str, Any]]], None] = _noop
    on_connectivity: Callable[[bool], None] = _noop
    on_error: Callable[[str], None] = _noop


class PluginHandle:
    """
    One attachment to a gateway plugin within a :class:`GatewaySession`.
    """

    def __init__(
        self,
        session: "GatewaySession",
        handle_id: int,
        plugin: str,
        callbacks: HandleCallbacks,
    ) -> None:
        self.session = session
        self.handle_id = handle_id
        self.plugin = plugin
        self.callbacks = callbacks
        self.state = AttachmentState.ATTACHED
        self.logger = session.logger.getChild(f"h{handle_id}")

    async def send(self, body: Dict[str, Any], jsep: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a plugin request.  Raises :class:`GatewayError` when the gateway
        rejects it and :class:`AttachError` when the session is gone.
        """

        payload: Dict[str, Any] = {"janus": "message", "body": dict(body)}
        if jsep is not None:
            payload["jsep"] = dict(jsep)
        self.logger.debug("Sending %s%s", body, " with jsep" if jsep else "")
        reply = await self.session._request(payload, handle_id=self.handle_id)
        if reply.get("janus") == "error":
            raise _error_of(reply)
        return reply

    def _deliver(self, event: Dict[str, Any]) -> None:
        kind = event.get("janus")
        if kind == "event":
            plugindata = event.get("plugindata") or {}
            data = plugindata.get("data") or {}
            self.callbacks.on_message(data, event.get("jsep"))
        elif kind == "webrtcup":
            self.callbacks.on_connectivity(True)
        elif kind == "hangup":
            self.logger.info("Hangup: %s", event.get("reason") or "no reason")
            self.callbacks.on_connectivity(False)
        elif kind == "detached":
            self.state = AttachmentState.UNATTACHED
            self.callbacks.on_error("handle detached by the gateway")
        elif kind == "error":
            self.callbacks.on_error(str(_error_of(event)))
        elif kind == "media":
            self.logger.info("Gateway %s receiving %s", "is" if event.get("receiving") else "stopped", event.get("type"))
        elif kind == "slowlink":
            self.logger.warning("Slow link reported (uplink=%s)", event.get("uplink"))
        else:
            self.logger.debug("Unhandled gateway event %s", kind)

    def _fail(self, detail: str) -> None:
        if self.state is AttachmentState.FAILED:
            return
        self.state = AttachmentState.FAILED
        self.callbacks.on_error(detail)


class GatewaySession:
    """
    A live session on the gateway with its keep-alive and event-pump tasks.
    """

    def __init__(
        self,
        transport: GatewayTransport,
        session_id: int,
        *,
        keepalive_interval: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.transport = transport
        self.session_id = session_id
        self.state = SessionState.CONNECTED
        self.keepalive_interval = float(keepalive_interval)
        self.logger = logger or LOG.getChild(f"s{session_id}")
        self._handles: Dict[int, PluginHandle] = {}
        self._tasks: List[asyncio.Task] = []

    @property
    def handles(self) -> Dict[int, PluginHandle]:
        return dict(self._handles)

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._event_loop()),
            asyncio.create_task(self._keepalive_loop()),
        ]

    async def _request(self, payload: Dict[str, Any], *, handle_id: Optional[int] = None) -> Dict[str, Any]:
        if self.state is not SessionState.CONNECTED:
            raise AttachError(AttachErrorKind.SESSION_LOST, f"session is {self.state.value}")
        body = dict(payload)
        body.setdefault("transaction", new_transaction())
        try:
            return await self.transport.request(body, session_id=self.session_id, handle_id=handle_id)
        except (TransportError, ProtocolError) as exc:
            raise AttachError(AttachErrorKind.SESSION_LOST, exc.detail) from exc

    async def attach(self, capability: str, callbacks: Optional[HandleCallbacks] = None) -> PluginHandle:
        plugin = plugin_name(capability)
        reply = await self._request({"janus": "attach", "plugin": plugin})
        if reply.get("janus") == "error":
            error = _error_of(reply)
            kind = (
                AttachErrorKind.CAPABILITY_UNAVAILABLE
                if error.code in CAPABILITY_ERROR_CODES
                else AttachErrorKind.SESSION_LOST
            )
            raise AttachError(kind, error.message or str(error))
        handle_id = (reply.get("data") or {}).get("id") if reply.get("janus") == "success" else None
        if handle_id is None:
            raise AttachError(AttachErrorKind.SESSION_LOST, f"unexpected attach reply: {reply.get('janus')}")

        handle = PluginHandle(self, int(handle_id), plugin, callbacks or HandleCallbacks())
        self._handles[handle.handle_id] = handle
        self.logger.info("Attached to %s (handle %s)", plugin, handle.handle_id)
        return handle

    def _route(self, event: Dict[str, Any]) -> None:
        kind = event.get("janus")
        if kind in ("keepalive", "ack", "success"):
            return
        if kind == "timeout":
            self._lost("session timed out on the gateway")
            return
        sender = event.get("sender")
        handle = self._handles.get(sender) if sender is not None else None
        if handle is None:
            self.logger.debug("Dropping %s event for unknown sender %s", kind, sender)
            return
        handle._deliver(event)

    def _lost(self, detail: str) -> None:
        if self.state is not SessionState.CONNECTED:
            return
        self.state = SessionState.FAILED
        self.logger.warning("Session lost: %s", detail)
        for handle in list(self._handles.values()):
            handle._fail(f"session lost: {detail}")

    async def _event_loop(self) -> None:
        while self.state is SessionState.CONNECTED:
            try:
                events = await self.transport.poll(self.session_id)
            except (TransportError, ProtocolError) as exc:
                self._lost(exc.detail)
                return
            for event in events:
                self._route(event)

    async def _keepalive_loop(self) -> None:
        while self.state is SessionState.CONNECTED:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self._request({"janus": "keepalive"})
            except AttachError as exc:
                self.logger.warning("Keep-alive failed: %s", exc.detail)

    async def close(self) -> None:
        """
        Destroy the gateway session and release the transport.
        """

        if self.state is SessionState.CONNECTED:
            with contextlib.suppress(AttachError, asyncio.TimeoutError):
                await asyncio.wait_for(self._request({"janus": "destroy"}), timeout=CLOSE_TIMEOUT)
        self.state = SessionState.DISCONNECTED
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._handles.clear()
        await self.transport.close()


class GatewayClient:
    """
    Owns the connection to the gateway.  :meth:`connect` may be called once.
    """

    def __init__(
        self,
        *,
        request_timeout: float = 10.0,
        keepalive_interval: float = 30.0,
        max_events: int = 10,
        transport_factory: Optional[TransportFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.request_timeout = float(request_timeout)
        self.keepalive_interval = float(keepalive_interval)
        self.max_events = int(max_events)
        self._transport_factory = transport_factory
        self.logger = logger or LOG
        self.state = SessionState.DISCONNECTED
        self.session: Optional[GatewaySession] = None
        self._connect_called = False

    def _open_transport(self, url: str) -> GatewayTransport:
        if self._transport_factory is not None:
            return self._transport_factory(url)
        return open_transport(url, request_timeout=self.request_timeout, max_events=self.max_events)

    async def connect(self, server_url: str) -> GatewaySession:
        if self._connect_called:
            raise RuntimeError("connect() may only be called once per client")
        self._connect_called = True
        self.state = SessionState.CONNECTING
        self.logger.info("Connecting to gateway at %s", server_url)
        try:
            session = await self._create_session(server_url)
        except ConnectError:
            self.state = SessionState.FAILED
            raise
        except asyncio.CancelledError:
            self.state = SessionState.DISCONNECTED
            raise
        self.session = session
        self.state = SessionState.CONNECTED
        session.start()
        self.logger.info("Connected to gateway (session %s)", session.session_id)
        return session

    async def _create_session(self, server_url: str) -> GatewaySession:
        try:
            transport = self._open_transport(server_url)
        except ProtocolError as exc:
            raise ConnectError(ConnectErrorKind.PROTOCOL_INIT_FAILED, exc.detail) from exc

        try:
            await transport.open()
            reply = await transport.request({"janus": "create", "transaction": new_transaction()})
        except TransportError as exc:
            await transport.close()
            raise ConnectError(ConnectErrorKind.UNREACHABLE, exc.detail) from exc
        except ProtocolError as exc:
            await transport.close()
            raise ConnectError(ConnectErrorKind.PROTOCOL_INIT_FAILED, exc.detail) from exc
        except asyncio.CancelledError:
            await transport.close()
            raise

        session_id = (reply.get("data") or {}).get("id") if reply.get("janus") == "success" else None
        if session_id is None:
            await transport.close()
            detail = str(_error_of(reply)) if reply.get("janus") == "error" else "failed to create gateway session"
            raise ConnectError(ConnectErrorKind.PROTOCOL_INIT_FAILED, detail)

        return GatewaySession(
            transport,
            int(session_id),
            keepalive_interval=self.keepalive_interval,
            logger=self.logger.getChild(f"s{session_id}"),
        )

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
        if self.state is SessionState.CONNECTED:
            self.state = SessionState.DISCONNECTED


__all__ = [
    "AttachmentState",
    "GatewayClient",
    "GatewaySession",
    "HandleCallbacks",
    "PluginHandle",
    "SessionState",
    "plugin_name",
]
