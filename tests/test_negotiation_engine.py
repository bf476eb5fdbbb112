"""Tests for the client negotiation engine.

Two or more engines talk through a real ``SignalingRelay``. The loopback
transport queues relay frames per client and feeds them to the engine from its
own task, the way ``SignalingClient`` does with a socket.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Callable, Optional

import pytest

from peercall.client.engine import CallPhase, NegotiationEngine
from peercall.client.errors import MediaAcquisitionError, TransportError
from peercall.client.media import MediaHandle
from peercall.schemas import signaling as schemas
from peercall.services.signaling import SignalingConnection, SignalingRelay

STUN = ["stun:stun.example.org:3478"]


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeMediaSource:
    def __init__(self, gate: Optional[asyncio.Event] = None) -> None:
        self.gate = gate
        self.handles: list[MediaHandle] = []

    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaHandle:
        if self.gate is not None:
            await self.gate.wait()
        handle = MediaHandle(tracks=[FakeTrack("audio"), FakeTrack("video")])
        self.handles.append(handle)
        return handle


class DeniedMediaSource:
    def __init__(self) -> None:
        self.calls = 0

    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaHandle:
        self.calls += 1
        raise MediaAcquisitionError("permission denied")


class FakePeerConnection:
    """Reports ``connected`` once both descriptions and a remote candidate are in."""

    def __init__(self, ice_servers, name: str) -> None:
        self.ice_servers = list(ice_servers)
        self.name = name
        self.on_ice_candidate = None
        self.on_track = None
        self.on_state_change = None
        self.local_media: Optional[MediaHandle] = None
        self.local_description = None
        self.remote_description = None
        self.remote_candidates: list[dict] = []
        self.offer_gate: Optional[asyncio.Event] = None
        self.connected = False
        self.closed = False
        self.remote_track = FakeTrack("video")

    def add_local_media(self, media: MediaHandle) -> None:
        self.local_media = media

    async def create_offer(self) -> dict:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return {"type": "offer", "sdp": f"v=0 offer {self.name}"}

    async def create_answer(self) -> dict:
        return {"type": "answer", "sdp": f"v=0 answer {self.name}"}

    async def set_local_description(self, description: dict) -> None:
        self.local_description = description
        if self.on_ice_candidate is not None:
            await self.on_ice_candidate(
                {"candidate": f"candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host {self.name}", "sdpMid": "0", "sdpMLineIndex": 0}
            )

    async def set_remote_description(self, description: dict) -> None:
        if not isinstance(description, dict) or "sdp" not in description:
            raise ValueError("bad description")
        self.remote_description = description
        await self._maybe_connect()

    async def add_ice_candidate(self, candidate: dict) -> None:
        if not isinstance(candidate, dict) or not candidate.get("candidate"):
            raise ValueError("bad candidate")
        self.remote_candidates.append(candidate)
        await self._maybe_connect()

    async def close(self) -> None:
        self.closed = True

    async def _maybe_connect(self) -> None:
        if self.connected or not (self.local_description and self.remote_description and self.remote_candidates):
            return
        self.connected = True
        if self.on_track is not None:
            await self.on_track(self.remote_track)
        if self.on_state_change is not None:
            await self.on_state_change("connected")


class ConnectionFactory:
    def __init__(self, name: str) -> None:
        self.name = name
        self.created: list[FakePeerConnection] = []

    def __call__(self, ice_servers) -> FakePeerConnection:
        connection = FakePeerConnection(ice_servers, f"{self.name}{len(self.created)}")
        self.created.append(connection)
        return connection


class LoopbackTransport:
    def __init__(self, relay: SignalingRelay, connection_id: str) -> None:
        self.relay = relay
        self._id = connection_id
        self.on_message = None
        self.on_disconnect = None
        self.sent: list[schemas.SignalMessage] = []
        self.connects = 0
        self.connect_error: Optional[str] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self._open = False

    @property
    def connection_id(self) -> Optional[str]:
        return self._id if self._open else None

    @property
    def ready(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise TransportError(self.connect_error)
        if self._open:
            return
        self.relay.register(SignalingConnection(self._id, self._inbox.put))
        self._open = True
        self._pump = asyncio.create_task(self._run())

    async def wait_ready(self, timeout: Optional[float] = None) -> str:
        return self._id

    async def emit(self, message: schemas.SignalMessage) -> None:
        if not self._open:
            raise TransportError("socket closed")
        self.sent.append(message)
        frame = json.loads(json.dumps(schemas.encode_message(message)))
        await self.relay.handle(self._id, schemas.decode_client_message(frame))

    async def close(self) -> None:
        task, self._pump = self._pump, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._open:
            self._open = False
            await self.relay.leave(self._id)

    async def drop(self) -> None:
        await self.close()
        if self.on_disconnect is not None:
            await self.on_disconnect(ConnectionResetError("relay went away"))

    def sent_events(self) -> list[str]:
        return [message.event.value for message in self.sent]

    async def _run(self) -> None:
        while True:
            frame = await self._inbox.get()
            if self.on_message is not None:
                await self.on_message(schemas.decode_server_message(frame))


class Client:
    def __init__(self, relay: SignalingRelay, name: str, media_source=None) -> None:
        self.transport = LoopbackTransport(relay, name)
        self.factory = ConnectionFactory(name)
        self.media = media_source if media_source is not None else FakeMediaSource()
        self.statuses: list[str] = []
        self.engine = NegotiationEngine(
            self.transport,
            media_source=self.media,
            connection_factory=self.factory,
            ice_servers=STUN,
            on_status=lambda status, phase: self.statuses.append(status),
        )


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _connected_pair(relay: SignalingRelay, room: str = "r1") -> tuple[Client, Client]:
    x = Client(relay, "x")
    y = Client(relay, "y")
    assert await x.engine.join(room) is True
    assert await y.engine.join(room) is True
    await _wait_for(lambda: x.engine.phase is CallPhase.CONNECTED and y.engine.phase is CallPhase.CONNECTED)
    return x, y


@pytest.mark.asyncio
async def test_two_clients_reach_connected(caplog):
    caplog.set_level(logging.INFO, logger="peercall.client.engine")
    relay = SignalingRelay()
    x, y = await _connected_pair(relay)

    assert x.transport.sent_events() == ["join-room", "offer", "ice-candidate"]
    assert y.transport.sent_events() == ["join-room", "answer", "ice-candidate"]
    assert x.transport.sent[1].sender == "x"

    x_conn, y_conn = x.factory.created[0], y.factory.created[0]
    assert x_conn.ice_servers == STUN
    assert x_conn.local_media is x.engine.session.local_media
    assert y_conn.remote_description == x_conn.local_description
    assert x_conn.remote_description == y_conn.local_description
    assert x.engine.session.candidates_applied == 1
    assert y.engine.session.candidates_applied == 1
    assert x.engine.session.remote_media.tracks == [x_conn.remote_track]
    assert "Joined room: r1" in x.statuses
    assert x.engine.status == "Connected"
    assert any(record.getMessage().startswith("Media path up in r1 with y") for record in caplog.records)

    await x.engine.shutdown()
    await y.engine.shutdown()

    assert all(track.stopped for track in x.media.handles[0].tracks + y.media.handles[0].tracks)
    assert x_conn.closed and y_conn.closed
    assert relay.room_count() == 0


@pytest.mark.asyncio
async def test_media_denial_returns_to_idle_without_signaling():
    relay = SignalingRelay()
    denied = DeniedMediaSource()
    client = Client(relay, "x", media_source=denied)

    assert await client.engine.join("r1") is False

    assert client.engine.phase is CallPhase.IDLE
    assert client.engine.session is None
    assert client.engine.status.startswith("Camera or microphone unavailable")
    assert client.transport.connects == 0
    assert client.transport.sent == []

    assert await client.engine.join("r1") is False
    assert denied.calls == 2


@pytest.mark.asyncio
async def test_join_requires_room_id():
    client = Client(SignalingRelay(), "x")

    assert await client.engine.join("   ") is False

    assert client.engine.status == "Room id is required"
    assert client.engine.phase is CallPhase.IDLE
    assert client.media.handles == []


@pytest.mark.asyncio
async def test_transport_failure_closes_call_and_releases_media():
    client = Client(SignalingRelay(), "x")
    client.transport.connect_error = "connection refused"

    assert await client.engine.join("r1") is False

    assert client.engine.phase is CallPhase.CLOSED
    assert client.engine.status == "Connection error: connection refused"
    assert all(track.stopped for track in client.media.handles[0].tracks)


@pytest.mark.asyncio
async def test_second_join_while_in_call_is_ignored():
    relay = SignalingRelay()
    client = Client(relay, "x")
    await client.engine.join("r1")

    assert await client.engine.join("r2") is False

    assert client.engine.session.room_id == "r1"
    assert client.transport.sent_events() == ["join-room"]
    assert relay.rooms_of("x") == {"r1"}


@pytest.mark.asyncio
async def test_answer_without_connection_is_dropped():
    client = Client(SignalingRelay(), "x")
    await client.engine.join("r1")

    await client.engine.handle_message(schemas.AnswerReceived(sdp={"type": "answer", "sdp": "v=0"}, sender="ghost"))
    await client.engine.handle_message(schemas.IceCandidateReceived(candidate={"candidate": "c"}, sender="ghost"))

    assert client.engine.phase is CallPhase.JOINED
    assert client.factory.created == []


@pytest.mark.asyncio
async def test_messages_without_call_are_dropped():
    client = Client(SignalingRelay(), "x")

    await client.engine.handle_message(schemas.UserJoined(socket_id="y"))
    await client.engine.handle_message(schemas.OfferReceived(sdp={"type": "offer", "sdp": "v=0"}, sender="y"))

    assert client.engine.phase is CallPhase.IDLE
    assert client.factory.created == []


@pytest.mark.asyncio
async def test_bad_candidate_does_not_end_call():
    relay = SignalingRelay()
    x, y = await _connected_pair(relay)

    await x.engine.handle_message(schemas.IceCandidateReceived(candidate="garbage", sender="y"))

    assert x.engine.phase is CallPhase.CONNECTED
    assert x.engine.session.candidates_applied == 1
    assert not x.factory.created[0].closed


@pytest.mark.asyncio
async def test_rejected_answer_ends_call():
    client = Client(SignalingRelay(), "x")
    await client.engine.join("r1")
    await client.engine.handle_message(schemas.UserJoined(socket_id="y"))
    assert client.engine.phase is CallPhase.NEGOTIATING

    await client.engine.handle_message(schemas.AnswerReceived(sdp="not a description", sender="y"))

    assert client.engine.phase is CallPhase.CLOSED
    assert client.engine.status.startswith("Failed to apply answer")
    assert client.factory.created[0].closed
    assert all(track.stopped for track in client.media.handles[0].tracks)


@pytest.mark.asyncio
async def test_offer_during_own_offer_is_dropped():
    client = Client(SignalingRelay(), "x")
    await client.engine.join("r1")
    gate = asyncio.Event()
    client.engine.connection_factory = lambda servers: _gated(client.factory(servers), gate)

    offering = asyncio.create_task(client.engine.handle_message(schemas.UserJoined(socket_id="y")))
    await _wait_for(lambda: client.engine.phase is CallPhase.OFFERING)

    await client.engine.handle_message(schemas.OfferReceived(sdp={"type": "offer", "sdp": "v=0 y"}, sender="y"))
    assert client.factory.created[0].remote_description is None

    gate.set()
    await offering
    assert client.engine.phase is CallPhase.NEGOTIATING
    assert len(client.factory.created) == 1


def _gated(connection: FakePeerConnection, gate: asyncio.Event) -> FakePeerConnection:
    connection.offer_gate = gate
    return connection


@pytest.mark.asyncio
async def test_candidates_wait_for_local_description():
    client = Client(SignalingRelay(), "x")
    await client.engine.join("r1")
    await client.engine.handle_message(schemas.UserJoined(socket_id="y"))

    events = client.transport.sent_events()
    assert events.index("offer") < events.index("ice-candidate")
    assert client.engine.session.pending_candidates == []


@pytest.mark.asyncio
async def test_leave_is_idempotent():
    relay = SignalingRelay()
    client = Client(relay, "x")

    await client.engine.leave()
    assert client.engine.phase is CallPhase.IDLE

    await client.engine.join("r1")
    await client.engine.leave()
    await client.engine.leave()

    assert client.engine.phase is CallPhase.CLOSED
    assert client.engine.status == "Left room"
    assert client.transport.sent_events() == ["join-room", "leave-room"]
    assert relay.members("r1") == []


@pytest.mark.asyncio
async def test_leave_while_acquiring_media_discards_late_media():
    gate = asyncio.Event()
    media = FakeMediaSource(gate)
    client = Client(SignalingRelay(), "x", media_source=media)

    joining = asyncio.create_task(client.engine.join("r1"))
    await _wait_for(lambda: client.engine.phase is CallPhase.ACQUIRING_MEDIA)
    await client.engine.leave()
    gate.set()

    assert await joining is False
    assert client.engine.phase is CallPhase.CLOSED
    assert client.transport.connects == 0
    assert all(track.stopped for track in media.handles[0].tracks)


@pytest.mark.asyncio
async def test_peer_left_returns_to_joined_and_next_peer_connects():
    relay = SignalingRelay()
    x, y = await _connected_pair(relay)
    first = x.factory.created[0]
    local_tracks = list(x.engine.session.local_media.tracks)

    await y.engine.shutdown()
    await _wait_for(lambda: x.engine.phase is CallPhase.JOINED)

    assert x.engine.status == "Peer left, waiting for someone to join"
    assert first.closed
    assert first.remote_track.stopped
    assert x.engine.session.connection is None
    assert x.engine.session.remote_media is None
    assert not any(track.stopped for track in local_tracks)

    z = Client(relay, "z")
    assert await z.engine.join("r1") is True
    await _wait_for(lambda: x.engine.phase is CallPhase.CONNECTED and z.engine.phase is CallPhase.CONNECTED)
    assert len(x.factory.created) == 2
    assert x.factory.created[1].local_media is x.engine.session.local_media


@pytest.mark.asyncio
async def test_room_full_closes_late_joiner():
    relay = SignalingRelay(max_room_members=2, room_overflow="reject")
    x, y = await _connected_pair(relay)
    z = Client(relay, "z")

    await z.engine.join("r1")
    await _wait_for(lambda: z.engine.phase is CallPhase.CLOSED)

    assert z.engine.status == "Room r1 is full"
    assert all(track.stopped for track in z.media.handles[0].tracks)
    assert x.engine.phase is CallPhase.CONNECTED
    assert relay.members("r1") == ["x", "y"]


@pytest.mark.asyncio
async def test_disconnect_closes_call_and_releases_everything():
    relay = SignalingRelay()
    x, y = await _connected_pair(relay)
    connection = x.factory.created[0]

    await x.transport.drop()

    assert x.engine.phase is CallPhase.CLOSED
    assert x.engine.status == "Disconnected"
    assert x.engine.session is None
    assert connection.closed
    assert all(track.stopped for track in x.media.handles[0].tracks)
    assert connection.remote_track.stopped

    await _wait_for(lambda: y.engine.phase is CallPhase.JOINED)
