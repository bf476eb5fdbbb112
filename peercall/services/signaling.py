"""In-memory room signaling relay.

The relay only tracks which connection belongs to which room and forwards
negotiation payloads between room members. Payloads are never inspected.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from ..core.config import RoomOverflow, settings
from ..schemas import signaling as schemas

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


class SignalingRelay:
    """Manage room membership and fan-out messages between room members."""

    def __init__(
        self,
        *,
        max_room_members: Optional[int] = None,
        room_overflow: RoomOverflow = "reject",
        notify_peer_left: bool = True,
    ) -> None:
        self._connections: Dict[str, SignalingConnection] = {}
        # room id -> member ids, in join order
        self._rooms: Dict[str, Dict[str, None]] = {}
        self._memberships: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self.max_room_members = max_room_members
        self.room_overflow = room_overflow
        self.notify_peer_left = notify_peer_left
        self._handlers: Dict[type, Callable[[str, Any], Awaitable[None]]] = {
            schemas.JoinRoom: self._on_join_room,
            schemas.LeaveRoom: self._on_leave_room,
            schemas.Offer: self._on_offer,
            schemas.Answer: self._on_answer,
            schemas.IceCandidate: self._on_ice_candidate,
        }

    def register(self, connection: SignalingConnection) -> None:
        """Track a live transport connection so it can receive messages."""

        self._connections[connection.connection_id] = connection

    def members(self, room_id: str) -> list[str]:
        """Return member ids of a room in join order."""

        return list(self._rooms.get(room_id, {}))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, set()))

    def room_count(self) -> int:
        return len(self._rooms)

    async def handle(self, connection_id: str, message: schemas.SignalMessage) -> None:
        """Route one decoded client message to the matching relay operation."""

        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning("No relay handler for %s from %s", message.event.value, connection_id)
            return
        await handler(connection_id, message)

    async def join(self, room_id: str, connection_id: str) -> bool:
        """Add a connection to a room and notify the members already there."""

        if not room_id:
            logger.warning("Ignoring join with empty room id from %s", connection_id)
            return False

        evicted: Optional[str] = None
        async with self._lock:
            current = self.members(room_id)
            if connection_id in current:
                return False

            full = self.max_room_members is not None and len(current) >= self.max_room_members
            if full and self.room_overflow == "reject":
                rejected = True
            else:
                rejected = False
                if full:
                    evicted = current[0]
                    self._remove_member(room_id, evicted)
                self._rooms.setdefault(room_id, {})[connection_id] = None
                self._memberships.setdefault(connection_id, set()).add(room_id)
                others = [member for member in self.members(room_id) if member != connection_id]

        if rejected:
            logger.info("Room %s is full, rejecting %s", room_id, connection_id)
            await self._send_to([connection_id], schemas.RoomFull(room_id=room_id))
            return False

        if evicted is not None:
            logger.info("Room %s is full, evicting %s for %s", room_id, evicted, connection_id)
            await self._send_to([evicted], schemas.RoomFull(room_id=room_id))
            if self.notify_peer_left and others:
                await self._send_to(others, schemas.PeerLeft(socket_id=evicted))

        logger.info("Connection %s joined room %s (%d member(s))", connection_id, room_id, len(others) + 1)
        if others:
            await self._send_to(others, schemas.UserJoined(socket_id=connection_id))
        return True

    async def leave_room(self, room_id: str, connection_id: str) -> None:
        """Remove a connection from a single room."""

        async with self._lock:
            if connection_id not in self._rooms.get(room_id, {}):
                return
            self._remove_member(room_id, connection_id)
            remaining = self.members(room_id)

        logger.info("Connection %s left room %s", connection_id, room_id)
        if remaining and self.notify_peer_left:
            await self._send_to(remaining, schemas.PeerLeft(socket_id=connection_id))

    async def leave(self, connection_id: str) -> None:
        """Forget a connection and remove it from every room it joined."""

        async with self._lock:
            self._connections.pop(connection_id, None)
            notify: list[tuple[str, list[str]]] = []
            for room_id in sorted(self._memberships.get(connection_id, set())):
                self._remove_member(room_id, connection_id)
                notify.append((room_id, self.members(room_id)))

        for room_id, remaining in notify:
            logger.info("Connection %s disconnected from room %s", connection_id, room_id)
            if remaining and self.notify_peer_left:
                await self._send_to(remaining, schemas.PeerLeft(socket_id=connection_id))

    async def relay_offer(self, room_id: str, sender_id: str, sdp: Any) -> None:
        await self.broadcast(room_id, sender_id, schemas.OfferReceived(sdp=sdp, sender=sender_id))

    async def relay_answer(self, room_id: str, sender_id: str, sdp: Any) -> None:
        await self.broadcast(room_id, sender_id, schemas.AnswerReceived(sdp=sdp, sender=sender_id))

    async def relay_candidate(self, room_id: str, sender_id: str, candidate: Any) -> None:
        await self.broadcast(
            room_id,
            sender_id,
            schemas.IceCandidateReceived(candidate=candidate, sender=sender_id),
        )

    async def broadcast(self, room_id: str, sender_id: str, message: schemas.SignalMessage) -> None:
        """Send a message to all room members except the sender."""

        async with self._lock:
            recipients = [member for member in self._rooms.get(room_id, {}) if member != sender_id]

        if not recipients:
            logger.debug("Dropping %s in room %s: no other members", message.event.value, room_id)
            return

        await self._send_to(recipients, message)

    async def _send_to(self, connection_ids: Iterable[str], message: schemas.SignalMessage) -> None:
        frame = schemas.encode_message(message)
        targets = [self._connections[cid] for cid in connection_ids if cid in self._connections]
        if not targets:
            return

        results = await asyncio.gather(*(target.send(frame) for target in targets), return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Failed to deliver %s to %s: %s", message.event.value, target.connection_id, result
                )

    def _remove_member(self, room_id: str, connection_id: str) -> None:
        members = self._rooms.get(room_id)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                self._rooms.pop(room_id, None)

        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                self._memberships.pop(connection_id, None)

    async def _on_join_room(self, connection_id: str, message: schemas.JoinRoom) -> None:
        await self.join(message.room_id, connection_id)

    async def _on_leave_room(self, connection_id: str, message: schemas.LeaveRoom) -> None:
        await self.leave_room(message.room_id, connection_id)

    async def _on_offer(self, connection_id: str, message: schemas.Offer) -> None:
        await self.relay_offer(message.room_id, connection_id, message.sdp)

    async def _on_answer(self, connection_id: str, message: schemas.Answer) -> None:
        await self.relay_answer(message.room_id, connection_id, message.sdp)

    async def _on_ice_candidate(self, connection_id: str, message: schemas.IceCandidate) -> None:
        await self.relay_candidate(message.room_id, connection_id, message.candidate)


relay = SignalingRelay(
    max_room_members=settings.max_room_members,
    room_overflow=settings.room_overflow,
    notify_peer_left=settings.notify_peer_left,
)
