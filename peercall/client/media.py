"""Local and remote media handles for a call."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from aiortc.contrib.media import MediaPlayer

from ..core.config import settings
from .errors import MediaAcquisitionError

logger = logging.getLogger(__name__)


@dataclass
class MediaHandle:
    """A set of media tracks owned by one call session."""

    tracks: list[Any] = field(default_factory=list)
    released: bool = False

    def add_track(self, track: Any) -> None:
        if self.released:
            track.stop()
            return
        self.tracks.append(track)

    def release(self) -> None:
        """Stop every track. Safe to call more than once."""

        if self.released:
            return
        self.released = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # noqa: BLE001 - keep stopping the rest
                logger.exception("Failed to stop %s track", getattr(track, "kind", "media"))
        self.tracks.clear()


class MediaSource(Protocol):
    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaHandle:
        ...


class DeviceMediaSource:
    """Open the local camera and microphone through FFmpeg devices."""

    def __init__(
        self,
        video_device: Optional[str] = None,
        audio_device: Optional[str] = None,
        *,
        media_format: Optional[str] = None,
        video_size: Optional[str] = None,
        framerate: Optional[int] = None,
    ) -> None:
        self.video_device = video_device or settings.media_video_device
        self.audio_device = audio_device if audio_device is not None else settings.media_audio_device
        self.media_format = media_format if media_format is not None else settings.media_format
        self.video_size = video_size or settings.media_video_size
        self.framerate = framerate or settings.media_framerate

    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaHandle:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._open, audio, video)
        except MediaAcquisitionError:
            raise
        except Exception as exc:  # noqa: BLE001 - any device error means no media
            raise MediaAcquisitionError(f"Camera or microphone unavailable: {exc}") from exc

    def _open(self, audio: bool, video: bool) -> MediaHandle:
        handle = MediaHandle()
        try:
            self._open_into(handle, audio, video)
        except Exception:
            handle.release()
            raise

        logger.info("Acquired local media: %s", ", ".join(track.kind for track in handle.tracks) or "none")
        return handle

    def _open_into(self, handle: MediaHandle, audio: bool, video: bool) -> None:
        options = {"video_size": self.video_size, "framerate": str(self.framerate)}

        if video:
            player = MediaPlayer(self.video_device, format=self.media_format, options=options)
            if player.video is None:
                raise MediaAcquisitionError(f"No video track on {self.video_device}")
            handle.add_track(player.video)
            # devices that mux audio with video (avfoundation "0:0") hand out both tracks
            if audio and self.audio_device is None and player.audio is not None:
                handle.add_track(player.audio)
                return

        if audio:
            device = self.audio_device or self.video_device
            player = MediaPlayer(device, format=self.media_format)
            if player.audio is None:
                raise MediaAcquisitionError(f"No audio track on {device}")
            handle.add_track(player.audio)
