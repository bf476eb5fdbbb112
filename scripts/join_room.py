"""Join a call room from the terminal using the local camera and microphone."""
from __future__ import annotations

import argparse
import asyncio

from peercall.client import CallPhase, DeviceMediaSource, NegotiationEngine, SignalingClient
from peercall.core.config import settings
from peercall.core.logging import configure_logging


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("room", help="Room id shared with the other participant")
    parser.add_argument("--url", default=settings.signaling_url, help="Signaling relay WebSocket URL")
    parser.add_argument("--video-device", default=settings.media_video_device)
    parser.add_argument("--audio-device", default=settings.media_audio_device)
    parser.add_argument("--format", dest="media_format", default=settings.media_format)
    parser.add_argument("--no-media", action="store_true", help="Join without camera or microphone")
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    configure_logging(settings.log_level)

    finished = asyncio.Event()

    def show_status(status: str, phase: CallPhase) -> None:
        print(f"[{phase.value}] {status}")
        if phase in (CallPhase.CLOSED, CallPhase.IDLE):
            finished.set()

    media_source = None
    if not args.no_media:
        media_source = DeviceMediaSource(
            args.video_device,
            args.audio_device,
            media_format=args.media_format,
        )

    engine = NegotiationEngine(
        SignalingClient(args.url),
        media_source=media_source,
        on_status=show_status,
    )
    try:
        if await engine.join(args.room):
            await finished.wait()
    finally:
        await engine.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
