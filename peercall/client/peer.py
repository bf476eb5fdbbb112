"""Peer connection objects driven by the negotiation engine.

Descriptions travel as ``{"type": ..., "sdp": ...}`` dicts and candidates as
``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}`` dicts, the same JSON
shape browsers and react-native-webrtc put on the wire.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .media import MediaHandle

logger = logging.getLogger(__name__)

Description = dict[str, Any]
Candidate = dict[str, Any]
CandidateHandler = Callable[[Candidate], Awaitable[None]]
TrackHandler = Callable[[Any], Awaitable[None]]
StateHandler = Callable[[str], Awaitable[None]]

CANDIDATE_PREFIX = "candidate:"


class PeerConnection(Protocol):
    on_ice_candidate: Optional[CandidateHandler]
    on_track: Optional[TrackHandler]
    on_state_change: Optional[StateHandler]

    def add_local_media(self, media: MediaHandle) -> None:
        ...

    async def create_offer(self) -> Description:
        ...

    async def create_answer(self) -> Description:
        ...

    async def set_local_description(self, description: Description) -> None:
        ...

    async def set_remote_description(self, description: Description) -> None:
        ...

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        ...

    async def close(self) -> None:
        ...


PeerConnectionFactory = Callable[[Sequence[str]], PeerConnection]


def parse_candidate(payload: Candidate):
    """Turn a browser-style candidate dict into an aiortc ``RTCIceCandidate``.

    Returns ``None`` for the empty end-of-candidates marker.
    """

    if not isinstance(payload, dict):
        raise ValueError(f"Candidate must be an object, got {type(payload).__name__}")

    text = (payload.get("candidate") or "").strip()
    if not text:
        return None
    if text.startswith(CANDIDATE_PREFIX):
        text = text[len(CANDIDATE_PREFIX):]

    candidate = candidate_from_sdp(text)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        raise ValueError("Candidate needs sdpMid or sdpMLineIndex")
    return candidate


def serialize_candidate(candidate, sdp_mid: Optional[str], sdp_mline_index: Optional[int]) -> Candidate:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": sdp_mid,
        "sdpMLineIndex": sdp_mline_index,
    }


class AiortcPeerConnection:
    """``PeerConnection`` backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers every local candidate while the local description is applied
    instead of trickling them, so they are reported right after
    ``set_local_description`` returns.
    """

    def __init__(self, ice_servers: Sequence[str] = ()) -> None:
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)
        self.on_ice_candidate: Optional[CandidateHandler] = None
        self.on_track: Optional[TrackHandler] = None
        self.on_state_change: Optional[StateHandler] = None

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("Peer connection state: %s", state)
            if self.on_state_change:
                await self.on_state_change(state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            logger.info("Remote %s track received", track.kind)
            if self.on_track:
                await self.on_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_local_media(self, media: MediaHandle) -> None:
        for track in media.tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> Description:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Description) -> None:
        await self._pc.setLocalDescription(_to_session_description(description))
        await self._report_local_candidates()

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(_to_session_description(description))

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        parsed = parse_candidate(candidate)
        if parsed is None:
            return
        await self._pc.addIceCandidate(parsed)

    async def close(self) -> None:
        await self._pc.close()

    async def _report_local_candidates(self) -> None:
        if self.on_ice_candidate is None:
            return

        seen_transports: set[int] = set()
        for index, transceiver in enumerate(self._pc.getTransceivers()):
            ice_transport = transceiver.sender.transport.transport
            # bundled transceivers share one ICE transport
            if id(ice_transport) in seen_transports:
                continue
            seen_transports.add(id(ice_transport))
            for candidate in ice_transport.iceGatherer.getLocalCandidates():
                await self.on_ice_candidate(serialize_candidate(candidate, transceiver.mid, index))


def _to_session_description(description: Description) -> RTCSessionDescription:
    if not isinstance(description, dict) or "sdp" not in description or "type" not in description:
        raise ValueError("Session description must carry 'type' and 'sdp'")
    return RTCSessionDescription(sdp=description["sdp"], type=description["type"])


def create_aiortc_connection(ice_servers: Sequence[str]) -> PeerConnection:
    return AiortcPeerConnection(ice_servers)
