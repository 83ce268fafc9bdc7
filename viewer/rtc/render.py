"""
Render sink: the collection of remote tracks feeding one output surface.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

LOG = logging.getLogger(__name__)


class RenderSink:
    """
    Holds at most one track per kind, like the stream object of a video element.

    Drawing frames is left to whatever consumes :attr:`tracks`.  With
    ``drain=True`` the tracks are read into a :class:`MediaBlackhole` so the
    receiver keeps decoding while nothing else consumes them.
    """

    def __init__(self, *, drain: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self._tracks: Dict[str, MediaStreamTrack] = {}
        self._blackhole: Optional[MediaBlackhole] = MediaBlackhole() if drain else None
        self._tasks: Set[asyncio.Future] = set()
        self.closed = False
        self.logger = logger or LOG

    @property
    def tracks(self) -> Dict[str, MediaStreamTrack]:
        return dict(self._tracks)

    @property
    def kinds(self) -> Tuple[str, ...]:
        return tuple(self._tracks)

    def __len__(self) -> int:
        return len(self._tracks)

    def attach_track(self, track: MediaStreamTrack) -> bool:
        """
        Add ``track``. Returns ``False`` when a track of that kind is already attached.
        """

        if self.closed:
            raise RuntimeError("render sink is closed")
        kind = str(track.kind)
        if kind in self._tracks:
            return False
        self._tracks[kind] = track
        self.logger.info("Added %s track to render sink", kind)
        if self._blackhole is not None:
            self._blackhole.addTrack(track)
            future = asyncio.ensure_future(self._blackhole.start())
            self._tasks.add(future)
            future.add_done_callback(self._tasks.discard)
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._blackhole is not None:
            await self._blackhole.stop()
        self._tracks.clear()


__all__ = ["RenderSink"]
