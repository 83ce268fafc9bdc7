"""
Logging helpers for the stream viewer.

Every module logs through ``logging.getLogger(__name__)``; this helper only
installs the root handler for the CLI and API entry points.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
QUIET_LOGGERS = ("aioice", "aiortc", "httpx", "httpcore", "websockets")


def configure_logging(
    level: int = logging.INFO,
    format: Optional[str] = None,
    *,
    quiet_libraries: bool = True,
) -> None:
    """
    Install a stdout handler on the root logger unless one already exists.

    ``quiet_libraries`` caps the media and HTTP stacks (aioice, aiortc,
    httpx, websockets) at WARNING so per-packet and per-request chatter does
    not drown out ``STATUS:`` lines, even when the root level is DEBUG.
    """

    if quiet_libraries:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if logging.getLogger().handlers:
        # Embedding applications (uvicorn, pytest) configure their own handlers.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
