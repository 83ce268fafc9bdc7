"""
Live stream viewer package.

Joins a broadcast relayed by a Janus media gateway over WebRTC: connect to the
gateway, attach the streaming plugin, ask to watch a mountpoint, answer the
gateway offer receive-only and collect the incoming tracks, while publishing a
status that always matches the real session state.
"""

from __future__ import annotations

from .config import ViewerConfig, load_profile

__all__ = [
    "ViewerConfig",
    "load_profile",
]
