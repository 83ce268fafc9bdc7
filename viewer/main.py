"""
Viewer process entrypoint.

Without ``--serve`` the process watches a single mountpoint and logs every
status change until interrupted.  With ``--serve`` it runs the control API so
sessions can be opened and observed over HTTP/WebSocket.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from .api.server import create_app
from .config import ViewerConfig, load_profile
from .errors import ConfigError
from .session import ViewerSession
from .status import StatusSnapshot
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        LOG.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    for signame in ("SIGINT", "SIGTERM"):
        signum = getattr(signal, signame)
        try:
            loop.add_signal_handler(signum, _handle_signal, signum)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(signum, lambda num, frame: loop.call_soon_threadsafe(stop_event.set))


async def watch(config: ViewerConfig) -> StatusSnapshot:
    """
    Watch one mountpoint until interrupted; returns the last status snapshot.
    """

    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)

    session = ViewerSession(config)
    try:
        await session.start()
        await stop_event.wait()
    finally:
        await session.close()
    return session.snapshot


async def serve(config: ViewerConfig, host: str = "127.0.0.1", port: int = 8080) -> None:
    """
    Run the control API inside an asyncio loop.

    Parameters
    ----------
    config:
        Defaults for sessions opened without explicit settings.
    host, port:
        Bind address for the FastAPI/uvicorn server.
    """

    import uvicorn

    app = create_app(config=config)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live stream viewer for Janus streaming mountpoints")
    parser.add_argument("--profile", default="default", help="viewer profile to load")
    parser.add_argument("--server", default=None, help="gateway URL (http(s):// or ws(s)://)")
    parser.add_argument("--mountpoint", type=int, default=None, help="mountpoint id to watch")
    parser.add_argument("--serve", action="store_true", help="run the control API instead of a single viewer")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the API server")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ViewerConfig:
    config = load_profile(args.profile)
    return config.with_overrides(server_url=args.server, mountpoint_id=args.mountpoint)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        config = build_config(args)
    except ConfigError as exc:
        LOG.error("Invalid configuration: %s", exc)
        return 2

    try:
        if args.serve:
            asyncio.run(serve(config, host=args.host, port=args.port))
            return 0
        snapshot = asyncio.run(watch(config))
    except KeyboardInterrupt:
        LOG.info("Viewer interrupted by user.")
        return 0
    LOG.info("Final status: %s", snapshot.status.text)
    return 1 if snapshot.error else 0


if __name__ == "__main__":
    raise SystemExit(run())
