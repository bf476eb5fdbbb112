"""Runtime configuration for the relay and the call client."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

RoomOverflow = Literal["reject", "evict_oldest"]


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    stun_server_url: str = Field(default="stun:stun.l.google.com:19302")

    max_room_members: Optional[int] = Field(default=None, ge=1)
    room_overflow: RoomOverflow = Field(default="reject")
    notify_peer_left: bool = Field(default=True)

    signaling_url: str = Field(default="ws://localhost:8000/api/rtc/signaling")
    transport_ready_timeout: float = Field(default=10.0, gt=0)

    media_format: Optional[str] = Field(default=None)
    media_video_device: str = Field(default="/dev/video0")
    media_audio_device: Optional[str] = Field(default=None)
    media_video_size: str = Field(default="1280x720")
    media_framerate: int = Field(default=30, ge=1)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
