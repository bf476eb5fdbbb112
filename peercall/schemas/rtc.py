"""Data contracts for RTC configuration endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


class IceServer(BaseModel):
    urls: list[str] = Field(..., min_length=1, description="STUN server URLs")


class IceServersResponse(BaseModel):
    ice_servers: list[IceServer] = Field(default_factory=list, serialization_alias="iceServers")
