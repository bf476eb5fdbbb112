"""Client-side call negotiation.

``NegotiationEngine`` owns at most one ``PeerSession`` at a time. A session is
built by ``join`` and torn down by ``leave``, a transport disconnect, a fatal
negotiation error or a full room; it is never reused. Every await inside the
engine is followed by a check that the session is still the live one, so results
that land after a teardown are discarded instead of touching released state.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from ..schemas import signaling as schemas
from ..services import rtc as rtc_service
from .errors import MediaAcquisitionError, TransportError
from .media import MediaHandle, MediaSource
from .peer import Candidate, PeerConnection, PeerConnectionFactory, create_aiortc_connection

logger = logging.getLogger(__name__)

StatusHandler = Callable[[str, "CallPhase"], None]


class CallPhase(str, enum.Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring_media"
    AWAITING_TRANSPORT = "awaiting_transport"
    JOINED = "joined"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


IN_ROOM_PHASES = frozenset(
    {
        CallPhase.JOINED,
        CallPhase.OFFERING,
        CallPhase.ANSWERING,
        CallPhase.NEGOTIATING,
        CallPhase.CONNECTED,
    }
)


class SignalingTransport(Protocol):
    on_message: Optional[Callable[[schemas.SignalMessage], Awaitable[None]]]
    on_disconnect: Optional[Callable[[Optional[BaseException]], Awaitable[None]]]

    @property
    def connection_id(self) -> Optional[str]:
        ...

    @property
    def ready(self) -> bool:
        ...

    async def connect(self) -> None:
        ...

    async def wait_ready(self, timeout: Optional[float] = None) -> str:
        ...

    async def emit(self, message: schemas.SignalMessage) -> None:
        ...

    async def close(self) -> None:
        ...


@dataclass
class PeerSession:
    """State of one call attempt."""

    room_id: str
    phase: CallPhase = CallPhase.IDLE
    local_media: Optional[MediaHandle] = None
    remote_media: Optional[MediaHandle] = None
    connection: Optional[PeerConnection] = None
    remote_peer: Optional[str] = None
    local_description_sent: bool = False
    pending_candidates: list[Candidate] = field(default_factory=list)
    candidates_applied: int = 0
    closed: bool = False


class NegotiationEngine:
    """Drive the offer/answer/candidate exchange for one call at a time."""

    def __init__(
        self,
        transport: SignalingTransport,
        *,
        media_source: Optional[MediaSource] = None,
        connection_factory: PeerConnectionFactory = create_aiortc_connection,
        ice_servers: Optional[Sequence[str]] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> None:
        self.transport = transport
        self.transport.on_message = self.handle_message
        self.transport.on_disconnect = self.handle_disconnect
        self.media_source = media_source
        self.connection_factory = connection_factory
        self.ice_servers = list(ice_servers) if ice_servers is not None else rtc_service.ice_server_urls()
        self.on_status = on_status
        self.status = "Not connected"
        self.phase = CallPhase.IDLE
        self._session: Optional[PeerSession] = None
        self._handlers: dict[type, Callable[[PeerSession, Any], Awaitable[None]]] = {
            schemas.UserJoined: self._on_user_joined,
            schemas.OfferReceived: self._on_offer_received,
            schemas.AnswerReceived: self._on_answer_received,
            schemas.IceCandidateReceived: self._on_candidate_received,
            schemas.PeerLeft: self._on_peer_left,
            schemas.RoomFull: self._on_room_full,
        }

    @property
    def session(self) -> Optional[PeerSession]:
        return self._session

    async def join(self, room_id: str) -> bool:
        """Start a call in ``room_id``. Returns ``True`` once the room is joined."""

        room_id = (room_id or "").strip()
        if not room_id:
            self._set_status("Room id is required")
            return False
        if self._session is not None:
            logger.info("Ignoring join for %s: call in %s is %s", room_id, self._session.room_id, self.phase.value)
            return False

        session = PeerSession(room_id=room_id)
        self._session = session
        self._set_phase(session, CallPhase.ACQUIRING_MEDIA, "Requesting camera and microphone")

        if self.media_source is not None:
            try:
                media = await self.media_source.acquire(audio=True, video=True)
            except MediaAcquisitionError as exc:
                logger.warning("Local media unavailable: %s", exc)
                await self._close(session, f"Camera or microphone unavailable: {exc}", phase=CallPhase.IDLE)
                return False
            if not self._is_live(session):
                media.release()
                return False
            session.local_media = media

        self._set_phase(session, CallPhase.AWAITING_TRANSPORT, "Connecting to signaling server")
        try:
            await self.transport.connect()
            await self.transport.wait_ready()
            if not self._is_live(session):
                return False
            # relay traffic for the room can arrive before emit returns
            self._set_phase(session, CallPhase.JOINED, f"Joined room: {room_id}")
            await self.transport.emit(schemas.JoinRoom(room_id=room_id))
        except TransportError as exc:
            logger.warning("Signaling unavailable for room %s: %s", room_id, exc)
            if self._is_live(session):
                await self._close(session, f"Connection error: {exc}")
            return False

        return self._is_live(session)

    async def leave(self) -> None:
        """End the current call. Does nothing when no call is active."""

        session = self._session
        if session is None:
            return

        in_room = session.phase in IN_ROOM_PHASES
        await self._close(session, "Left room")
        if in_room and self.transport.ready:
            try:
                await self.transport.emit(schemas.LeaveRoom(room_id=session.room_id))
            except TransportError as exc:
                logger.debug("Could not announce leave of %s: %s", session.room_id, exc)

    async def shutdown(self) -> None:
        """Leave any call and close the signaling connection."""

        await self.leave()
        await self.transport.close()

    async def handle_message(self, message: schemas.SignalMessage) -> None:
        """Route one decoded relay message to the state machine."""

        handler = self._handlers.get(type(message))
        if handler is None:
            logger.debug("Ignoring %s", message.event.value)
            return
        session = self._session
        if session is None:
            logger.debug("Dropping %s: no active call", message.event.value)
            return
        await handler(session, message)

    async def handle_disconnect(self, error: Optional[BaseException] = None) -> None:
        session = self._session
        if session is None:
            self._set_status("Disconnected")
            return
        logger.warning("Signaling lost during call in %s: %s", session.room_id, error)
        await self._close(session, "Disconnected")

    async def _on_user_joined(self, session: PeerSession, message: schemas.UserJoined) -> None:
        if session.phase is not CallPhase.JOINED:
            logger.info("Ignoring joiner %s while %s", message.socket_id, session.phase.value)
            return

        session.remote_peer = message.socket_id
        self._set_phase(session, CallPhase.OFFERING, "Peer joined, calling")
        connection: Optional[PeerConnection] = None
        try:
            connection = self._ensure_connection(session)
            offer = await connection.create_offer()
            if not self._owns(session, connection):
                return
            await connection.set_local_description(offer)
            if not self._owns(session, connection):
                return
            await self.transport.emit(
                schemas.Offer(room_id=session.room_id, sdp=offer, sender=self.transport.connection_id)
            )
            if not self._owns(session, connection):
                return
            await self._mark_description_sent(session)
        except Exception as exc:  # noqa: BLE001 - any failure here ends the call
            await self._fail(session, "Failed to send offer", exc, connection=connection)
            return

        if session.phase is CallPhase.OFFERING:
            self._set_phase(session, CallPhase.NEGOTIATING, "Negotiating")

    async def _on_offer_received(self, session: PeerSession, message: schemas.OfferReceived) -> None:
        if session.phase in (CallPhase.OFFERING, CallPhase.ANSWERING):
            logger.warning("Dropping offer from %s while %s", message.sender, session.phase.value)
            return
        if session.phase not in IN_ROOM_PHASES:
            logger.info("Dropping offer from %s before room join", message.sender)
            return

        was_connected = session.phase is CallPhase.CONNECTED
        session.remote_peer = message.sender
        self._set_phase(session, CallPhase.ANSWERING, "Answering call")
        connection: Optional[PeerConnection] = None
        try:
            connection = self._ensure_connection(session)
            await connection.set_remote_description(message.sdp)
            if not self._owns(session, connection):
                return
            answer = await connection.create_answer()
            if not self._owns(session, connection):
                return
            await connection.set_local_description(answer)
            if not self._owns(session, connection):
                return
            await self.transport.emit(
                schemas.Answer(room_id=session.room_id, sdp=answer, sender=self.transport.connection_id)
            )
            if not self._owns(session, connection):
                return
            await self._mark_description_sent(session)
        except Exception as exc:  # noqa: BLE001
            await self._fail(session, "Failed to answer call", exc, connection=connection)
            return

        if session.phase is CallPhase.ANSWERING:
            if was_connected:
                self._set_phase(session, CallPhase.CONNECTED, "Connected")
            else:
                self._set_phase(session, CallPhase.NEGOTIATING, "Negotiating")

    async def _on_answer_received(self, session: PeerSession, message: schemas.AnswerReceived) -> None:
        connection = session.connection
        if connection is None:
            logger.info("Dropping answer from %s: no peer connection", message.sender)
            return
        try:
            await connection.set_remote_description(message.sdp)
        except Exception as exc:  # noqa: BLE001
            await self._fail(session, "Failed to apply answer", exc, connection=connection)

    async def _on_candidate_received(self, session: PeerSession, message: schemas.IceCandidateReceived) -> None:
        connection = session.connection
        if connection is None:
            logger.info("Dropping candidate from %s: no peer connection", message.sender)
            return
        try:
            await connection.add_ice_candidate(message.candidate)
        except Exception as exc:  # noqa: BLE001 - bad candidates are not fatal
            logger.warning("Error adding ICE candidate from %s: %s", message.sender, exc)
            return
        if self._owns(session, connection):
            session.candidates_applied += 1

    async def _on_peer_left(self, session: PeerSession, message: schemas.PeerLeft) -> None:
        if session.remote_peer is not None and session.remote_peer != message.socket_id:
            return
        if session.phase not in IN_ROOM_PHASES or (session.phase is CallPhase.JOINED and session.connection is None):
            return

        connection, remote = session.connection, session.remote_media
        session.connection = None
        session.remote_media = None
        session.remote_peer = None
        session.local_description_sent = False
        session.pending_candidates.clear()
        session.candidates_applied = 0
        self._set_phase(session, CallPhase.JOINED, "Peer left, waiting for someone to join")

        if remote is not None:
            remote.release()
        if connection is not None:
            await self._close_connection(connection)

    async def _on_room_full(self, session: PeerSession, message: schemas.RoomFull) -> None:
        await self._close(session, f"Room {message.room_id} is full")

    def _ensure_connection(self, session: PeerSession) -> PeerConnection:
        if session.connection is not None:
            return session.connection

        connection = self.connection_factory(self.ice_servers)

        async def on_ice_candidate(candidate: Candidate) -> None:
            await self._on_local_candidate(session, connection, candidate)

        async def on_track(track: Any) -> None:
            self._on_remote_track(session, connection, track)

        async def on_state_change(state: str) -> None:
            await self._on_connection_state(session, connection, state)

        connection.on_ice_candidate = on_ice_candidate
        connection.on_track = on_track
        connection.on_state_change = on_state_change
        if session.local_media is not None:
            connection.add_local_media(session.local_media)
        session.connection = connection
        return connection

    async def _on_local_candidate(self, session: PeerSession, connection: PeerConnection, candidate: Candidate) -> None:
        if not self._owns(session, connection):
            return
        if not session.local_description_sent:
            # the peer cannot use candidates before it has our description
            session.pending_candidates.append(candidate)
            return
        await self._send_candidate(session, candidate)

    async def _mark_description_sent(self, session: PeerSession) -> None:
        session.local_description_sent = True
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            await self._send_candidate(session, candidate)

    async def _send_candidate(self, session: PeerSession, candidate: Candidate) -> None:
        try:
            await self.transport.emit(
                schemas.IceCandidate(
                    room_id=session.room_id,
                    candidate=candidate,
                    sender=self.transport.connection_id,
                )
            )
        except TransportError as exc:
            logger.warning("Could not send ICE candidate: %s", exc)

    def _on_remote_track(self, session: PeerSession, connection: PeerConnection, track: Any) -> None:
        if not self._owns(session, connection):
            track.stop()
            return
        if session.remote_media is None:
            session.remote_media = MediaHandle()
        session.remote_media.add_track(track)

    async def _on_connection_state(self, session: PeerSession, connection: PeerConnection, state: str) -> None:
        if not self._owns(session, connection):
            return
        if state == "connected":
            logger.info(
                "Media path up in %s with %s, %d remote candidate(s) applied so far",
                session.room_id,
                session.remote_peer,
                session.candidates_applied,
            )
            if session.phase in (CallPhase.OFFERING, CallPhase.ANSWERING, CallPhase.NEGOTIATING):
                self._set_phase(session, CallPhase.CONNECTED, "Connected")
        elif state in ("failed", "closed"):
            await self._fail(session, f"Peer connection {state}", connection=connection)

    async def _fail(
        self,
        session: PeerSession,
        reason: str,
        exc: Optional[BaseException] = None,
        *,
        connection: Optional[PeerConnection] = None,
    ) -> None:
        stale = connection is not None and session.connection is not connection
        if stale or not self._is_live(session):
            logger.debug("Discarding failure of released call: %s", reason)
            return
        if exc is not None:
            logger.error("%s in room %s", reason, session.room_id, exc_info=exc)
            reason = f"{reason}: {exc}"
        else:
            logger.error("%s in room %s", reason, session.room_id)
        await self._close(session, reason)

    async def _close(self, session: PeerSession, status: str, *, phase: CallPhase = CallPhase.CLOSED) -> None:
        if session.closed:
            return
        session.closed = True
        if self._session is session:
            self._session = None

        connection = session.connection
        session.connection = None
        for handle in (session.local_media, session.remote_media):
            if handle is not None:
                handle.release()
        session.local_media = None
        session.remote_media = None
        session.pending_candidates.clear()
        self._set_phase(session, phase, status)

        if connection is not None:
            await self._close_connection(connection)

    async def _close_connection(self, connection: PeerConnection) -> None:
        connection.on_ice_candidate = None
        connection.on_track = None
        connection.on_state_change = None
        try:
            await connection.close()
        except Exception:  # noqa: BLE001
            logger.exception("Error closing peer connection")

    def _is_live(self, session: PeerSession) -> bool:
        return not session.closed and self._session is session

    def _owns(self, session: PeerSession, connection: PeerConnection) -> bool:
        return self._is_live(session) and session.connection is connection

    def _set_phase(self, session: PeerSession, phase: CallPhase, status: Optional[str] = None) -> None:
        session.phase = phase
        self.phase = phase
        logger.info("Call in %s: %s", session.room_id, phase.value)
        if status is not None:
            self._set_status(status)

    def _set_status(self, status: str) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status, self.phase)
