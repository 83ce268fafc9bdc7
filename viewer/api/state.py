"""
Registry of viewer sessions served by the control API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..config import ViewerConfig, load_profile
from ..session import ViewerSession

LOG = logging.getLogger(__name__)

SessionFactory = Callable[[ViewerConfig], ViewerSession]


class SessionRegistry:
    """
    Independent viewer sessions keyed by id.  Sessions share nothing but the
    event loop.
    """

    def __init__(
        self,
        config: Optional[ViewerConfig] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config if config is not None else ViewerConfig()
        self._factory: SessionFactory = session_factory or ViewerSession
        self._sessions: Dict[str, ViewerSession] = {}
        self._starts: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def resolve_config(
        self,
        *,
        profile: Optional[str] = None,
        server_url: Optional[str] = None,
        mountpoint_id: Optional[int] = None,
    ) -> ViewerConfig:
        base = load_profile(profile) if profile else self.config
        return base.with_overrides(server_url=server_url, mountpoint_id=mountpoint_id)

    async def open(self, config: ViewerConfig) -> ViewerSession:
        session = self._factory(config)
        self._sessions[session.id] = session
        task = asyncio.create_task(session.start())
        self._starts[session.id] = task
        task.add_done_callback(lambda _task, key=session.id: self._starts.pop(key, None))
        LOG.info("Opened viewer session %s for mountpoint %s", session.id, config.mountpoint_id)
        return session

    def get(self, session_id: str) -> ViewerSession:
        return self._sessions[session_id]

    def sessions(self) -> List[ViewerSession]:
        return list(self._sessions.values())

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id)
        start = self._starts.pop(session_id, None)
        if start is not None and not start.done():
            start.cancel()
            await asyncio.gather(start, return_exceptions=True)
        await session.close()
        LOG.info("Closed viewer session %s", session_id)

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
