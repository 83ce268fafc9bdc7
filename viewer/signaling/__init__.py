"""
Gateway signaling: transports, sessions and plugin handles.
"""

from __future__ import annotations

from .client import (
    AttachmentState,
    GatewayClient,
    GatewaySession,
    HandleCallbacks,
    PluginHandle,
    SessionState,
)
from .transport import HttpTransport, ProtocolError, TransportError, WebSocketTransport

__all__ = [
    "AttachmentState",
    "GatewayClient",
    "GatewaySession",
    "HandleCallbacks",
    "HttpTransport",
    "PluginHandle",
    "ProtocolError",
    "SessionState",
    "TransportError",
    "WebSocketTransport",
]
