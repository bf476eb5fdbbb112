"""Data contracts for the signaling wire protocol.

Every frame on the signaling socket is a JSON object ``{"event": ..., "data": {...}}``.
Each event name maps to exactly one message model below; decoding looks the model
up by event name and validates ``data`` against it.
"""
from __future__ import annotations

import enum
from typing import Any, ClassVar, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class SignalEvent(str, enum.Enum):
    # client -> relay
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    # relay -> client
    CONNECTED = "connected"
    USER_JOINED = "user-joined"
    PEER_LEFT = "peer-left"
    ROOM_FULL = "room-full"
    OFFER_RECEIVED = "offer-received"
    ANSWER_RECEIVED = "answer-received"
    ICE_CANDIDATE_RECEIVED = "ice-candidate-received"


class MessageDecodeError(ValueError):
    """Raised when a frame does not match any known signaling message."""


class SignalMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: ClassVar[SignalEvent]


class JoinRoom(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.JOIN_ROOM

    room_id: str = Field(..., alias="roomId", min_length=1)


class LeaveRoom(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.LEAVE_ROOM

    room_id: str = Field(..., alias="roomId", min_length=1)


class Offer(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.OFFER

    room_id: str = Field(..., alias="roomId", min_length=1)
    sdp: Any = Field(..., description="Opaque session description")
    sender: Optional[str] = Field(default=None, alias="from")


class Answer(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.ANSWER

    room_id: str = Field(..., alias="roomId", min_length=1)
    sdp: Any = Field(..., description="Opaque session description")
    sender: Optional[str] = Field(default=None, alias="from")


class IceCandidate(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.ICE_CANDIDATE

    room_id: str = Field(..., alias="roomId", min_length=1)
    candidate: Any = Field(..., description="Opaque network candidate")
    sender: Optional[str] = Field(default=None, alias="from")


class Connected(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.CONNECTED

    socket_id: str = Field(..., alias="socketId")


class UserJoined(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.USER_JOINED

    socket_id: str = Field(..., alias="socketId")


class PeerLeft(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.PEER_LEFT

    socket_id: str = Field(..., alias="socketId")


class RoomFull(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.ROOM_FULL

    room_id: str = Field(..., alias="roomId")


class OfferReceived(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.OFFER_RECEIVED

    sdp: Any
    sender: str = Field(..., alias="from")


class AnswerReceived(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.ANSWER_RECEIVED

    sdp: Any
    sender: str = Field(..., alias="from")


class IceCandidateReceived(SignalMessage):
    event: ClassVar[SignalEvent] = SignalEvent.ICE_CANDIDATE_RECEIVED

    candidate: Any
    sender: str = Field(..., alias="from")


CLIENT_MESSAGES: dict[SignalEvent, type[SignalMessage]] = {
    model.event: model for model in (JoinRoom, LeaveRoom, Offer, Answer, IceCandidate)
}
SERVER_MESSAGES: dict[SignalEvent, type[SignalMessage]] = {
    model.event: model
    for model in (
        Connected,
        UserJoined,
        PeerLeft,
        RoomFull,
        OfferReceived,
        AnswerReceived,
        IceCandidateReceived,
    )
}


def encode_message(message: SignalMessage) -> dict[str, Any]:
    """Wrap a message into its wire frame."""

    # payload values stay untouched, only an unset sender is left out
    exclude = {"sender"} if getattr(message, "sender", "") is None else None
    return {"event": message.event.value, "data": message.model_dump(by_alias=True, exclude=exclude)}


def _decode(frame: object, registry: Mapping[SignalEvent, type[SignalMessage]]) -> SignalMessage:
    if not isinstance(frame, dict):
        raise MessageDecodeError(f"Frame must be a JSON object, got {type(frame).__name__}")

    name = frame.get("event")
    try:
        event = SignalEvent(name)
    except ValueError:
        raise MessageDecodeError(f"Unknown signaling event: {name!r}") from None

    model = registry.get(event)
    if model is None:
        raise MessageDecodeError(f"Event {event.value!r} is not valid in this direction")

    data = frame.get("data")
    if data is None:
        data = {}
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise MessageDecodeError(f"Invalid payload for {event.value!r}: {exc}") from exc


def decode_client_message(frame: object) -> SignalMessage:
    """Decode a frame sent by a client to the relay."""

    return _decode(frame, CLIENT_MESSAGES)


def decode_server_message(frame: object) -> SignalMessage:
    """Decode a frame sent by the relay to a client."""

    return _decode(frame, SERVER_MESSAGES)
