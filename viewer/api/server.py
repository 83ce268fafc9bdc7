"""
FastAPI control surface for viewer sessions.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, HTTPException, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import ViewerConfig, read_profiles
from ..errors import ConfigError
from ..session import ViewerSession
from ..status import StatusSnapshot
from . import schemas
from .state import SessionRegistry

LOG = logging.getLogger(__name__)


def _session_model(session: ViewerSession) -> schemas.SessionModel:
    return schemas.SessionModel(**session.describe())


def create_app(
    *,
    registry: Optional[SessionRegistry] = None,
    config: Optional[ViewerConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    sessions = registry if registry is not None else SessionRegistry(config)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await sessions.close_all()

    app = FastAPI(title="Stream Viewer API", lifespan=app_lifespan)
    app.state.registry = sessions
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _lookup(session_id: str) -> ViewerSession:
        try:
            return sessions.get(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'") from None

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": sessions.config.profile, "sessions": len(sessions)}

    @app.get("/profiles")
    async def list_profiles() -> dict:
        try:
            profiles = read_profiles()
        except ConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"profiles": sorted(profiles)}

    @app.post("/sessions", response_model=schemas.SessionModel, status_code=201)
    async def open_session(payload: schemas.SessionCreateRequest) -> schemas.SessionModel:
        try:
            session_config = sessions.resolve_config(
                profile=payload.profile,
                server_url=payload.server_url,
                mountpoint_id=payload.mountpoint_id,
            )
        except ConfigError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        session = await sessions.open(session_config)
        return _session_model(session)

    @app.get("/sessions", response_model=schemas.SessionList)
    async def list_sessions() -> schemas.SessionList:
        return schemas.SessionList(sessions=[_session_model(session) for session in sessions.sessions()])

    @app.get("/sessions/{session_id}", response_model=schemas.SessionModel)
    async def get_session(session_id: str) -> schemas.SessionModel:
        return _session_model(_lookup(session_id))

    @app.delete("/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str) -> Response:
        _lookup(session_id)
        await sessions.close(session_id)
        return Response(status_code=204)

    @app.websocket("/sessions/{session_id}/status")
    async def status_stream(websocket: WebSocket, session_id: str) -> None:
        if session_id not in sessions:
            await websocket.close(code=1008, reason="unknown session")
            return
        session = sessions.get(session_id)
        await websocket.accept()

        updates: "asyncio.Queue[StatusSnapshot]" = asyncio.Queue()
        token = session.status.subscribe(updates.put_nowait)

        async def _forward() -> None:
            while True:
                snapshot = await updates.get()
                await websocket.send_json(snapshot.to_dict())

        sender = asyncio.create_task(_forward())
        try:
            # Inbound frames are ignored; receiving only detects the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            LOG.debug("Status subscriber for %s disconnected", session_id)
        finally:
            session.status.unsubscribe(token)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    return app
