"""
Pydantic schemas for the viewer control API.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator


class SessionCreateRequest(BaseModel):
    server_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("server_url", "serverUrl", "server"),
    )
    mountpoint_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("mountpoint_id", "mountpointId", "mountpoint", "id"),
    )
    profile: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @validator("server_url", pre=True)
    def _strip_server_url(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip()
        return result or None

    @validator("mountpoint_id")
    def _validate_mountpoint(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and int(value) < 0:
            raise ValueError("mountpoint_id must be non-negative")
        return value


class StatusModel(BaseModel):
    code: str
    text: str


class SessionModel(BaseModel):
    id: str
    serverUrl: str
    mountpointId: int
    phase: str
    connected: Optional[bool] = None
    error: str = ""
    tracks: List[str] = Field(default_factory=list)
    status: StatusModel
    rev: int = 0
    gatewaySession: Optional[int] = None
    handle: Optional[int] = None
    offersReceived: int = 0
    startsSent: int = 0
    closed: bool = False


class SessionList(BaseModel):
    sessions: List[SessionModel] = Field(default_factory=list)
