"""
WebRTC helpers.
"""

from __future__ import annotations

from .engine import RtcEngine
from .render import RenderSink
from .sink_adapter import MediaSinkAdapter

__all__ = ["MediaSinkAdapter", "RenderSink", "RtcEngine"]
