"""
Wire transports for the gateway signaling protocol.

Two flavours share one small surface: ``request`` sends a JSON request and
returns the immediate reply, ``poll`` returns the next batch of asynchronous
events for a session.  :class:`HttpTransport` uses REST plus long polling,
:class:`WebSocketTransport` multiplexes both over a single socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
import websockets
from websockets.exceptions import WebSocketException

from ..errors import ViewerError

LOG = logging.getLogger(__name__)

WS_SUBPROTOCOL = "janus-protocol"
DEFAULT_POLL_TIMEOUT = 60.0
IMMEDIATE_REPLIES = frozenset({"success", "error", "ack"})


class TransportError(ViewerError):
    """The gateway could not be reached or the connection dropped."""


class ProtocolError(ViewerError):
    """The gateway answered with something that is not a protocol reply."""


class GatewayTransport:
    """Interface shared by the signaling transports."""

    url: str

    async def open(self) -> None:
        raise NotImplementedError

    async def request(
        self,
        payload: Dict[str, Any],
        *,
        session_id: Optional[int] = None,
        handle_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def poll(self, session_id: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class HttpTransport(GatewayTransport):
    """
    REST transport: requests are POSTed to ``<url>[/<session>[/<handle>]]``
    and events are fetched with a long-poll GET on ``<url>/<session>``.
    """

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 10.0,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        max_events: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self._request_timeout = float(request_timeout)
        self._poll_timeout = float(poll_timeout)
        self._max_events = int(max_events)
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            timeout = httpx.Timeout(self._request_timeout, connect=self._request_timeout)
            self._client = httpx.AsyncClient(timeout=timeout)

    def _endpoint(self, session_id: Optional[int] = None, handle_id: Optional[int] = None) -> str:
        parts = [self.url]
        if session_id is not None:
            parts.append(str(session_id))
            if handle_id is not None:
                parts.append(str(handle_id))
        return "/".join(parts)

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise TransportError("transport is not open")
        return self._client

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(f"invalid JSON from {response.request.url}") from exc

    async def request(
        self,
        payload: Dict[str, Any],
        *,
        session_id: Optional[int] = None,
        handle_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        client = self._require_client()
        url = self._endpoint(session_id, handle_id)
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProtocolError(f"HTTP {exc.response.status_code} from {url}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        reply = self._decode(response)
        if not isinstance(reply, dict):
            raise ProtocolError(f"unexpected reply from {url}")
        return reply

    async def poll(self, session_id: int) -> List[Dict[str, Any]]:
        client = self._require_client()
        url = self._endpoint(session_id)
        timeout = httpx.Timeout(self._request_timeout, read=self._poll_timeout)
        try:
            response = await client.get(url, params={"maxev": self._max_events}, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(f"HTTP {exc.response.status_code} from {url}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        events = self._decode(response)
        if isinstance(events, dict):
            return [events]
        if isinstance(events, list):
            return [event for event in events if isinstance(event, dict)]
        raise ProtocolError(f"unexpected event payload from {url}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class WebSocketTransport(GatewayTransport):
    """
    WebSocket transport: replies are matched to requests by ``transaction``;
    everything else is queued as an event.
    """

    def __init__(self, url: str, *, request_timeout: float = 10.0) -> None:
        self.url = url
        self._request_timeout = float(request_timeout)
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._events: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._closed_reason = ""

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.url,
                subprotocols=[WS_SUBPROTOCOL],
                open_timeout=self._request_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    LOG.warning("Discarding non-JSON frame from %s", self.url)
                    continue
                if isinstance(message, dict):
                    self._route(message)
        except WebSocketException as exc:
            self._closed_reason = str(exc)
        finally:
            reason = self._closed_reason or "websocket closed"
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportError(reason))
            self._pending.clear()
            self._events.put_nowait(None)

    def _route(self, message: Dict[str, Any]) -> None:
        transaction = message.get("transaction")
        future = self._pending.get(transaction) if transaction else None
        if future is not None and message.get("janus") in IMMEDIATE_REPLIES:
            del self._pending[transaction]
            if not future.done():
                future.set_result(message)
            return
        self._events.put_nowait(message)

    async def request(
        self,
        payload: Dict[str, Any],
        *,
        session_id: Optional[int] = None,
        handle_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if self._ws is None or self._reader is None or self._reader.done():
            raise TransportError(self._closed_reason or "websocket is not open")
        body = dict(payload)
        if session_id is not None:
            body["session_id"] = session_id
        if handle_id is not None:
            body["handle_id"] = handle_id
        transaction = str(body.get("transaction") or "")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[transaction] = future
        try:
            await self._ws.send(json.dumps(body))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"no reply to {body.get('janus')} within {self._request_timeout}s") from exc
        except WebSocketException as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        finally:
            self._pending.pop(transaction, None)

    async def poll(self, session_id: int) -> List[Dict[str, Any]]:
        message = await self._events.get()
        if message is None:
            self._events.put_nowait(None)
            raise TransportError(self._closed_reason or "websocket closed")
        return [message]

    async def close(self) -> None:
        if self._ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._ws = None
        self._reader = None


def open_transport(
    url: str,
    *,
    request_timeout: float = 10.0,
    max_events: int = 10,
) -> GatewayTransport:
    """
    Pick a transport for ``url`` by scheme.
    """

    scheme = urlsplit(url).scheme.lower()
    if scheme in ("http", "https"):
        return HttpTransport(url, request_timeout=request_timeout, max_events=max_events)
    if scheme in ("ws", "wss"):
        return WebSocketTransport(url, request_timeout=request_timeout)
    raise ProtocolError(f"unsupported gateway URL scheme '{scheme}'")


__all__ = [
    "GatewayTransport",
    "HttpTransport",
    "ProtocolError",
    "TransportError",
    "WebSocketTransport",
    "open_transport",
]
