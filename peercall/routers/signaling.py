"""Signaling WebSocket and RTC configuration endpoints."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..schemas import signaling as schemas
from ..schemas.rtc import IceServersResponse
from ..services import rtc as rtc_service
from ..services.signaling import SignalingConnection, relay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ice-servers", response_model=IceServersResponse)
async def get_ice_servers() -> IceServersResponse:
    """Return the STUN configuration clients should build peer connections with."""

    return IceServersResponse(ice_servers=rtc_service.ice_servers())


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Room signaling relay for SDP and ICE payloads."""

    connection_id = str(uuid4())
    await websocket.accept()

    relay.register(SignalingConnection(connection_id=connection_id, send=websocket.send_json))
    logger.info("Signaling connection %s opened", connection_id)

    try:
        await websocket.send_json(schemas.encode_message(schemas.Connected(socket_id=connection_id)))
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                logger.warning("Dropping binary frame from %s", connection_id)
                continue
            try:
                message = schemas.decode_client_message(json.loads(raw))
            except (ValueError, RecursionError) as exc:
                logger.warning("Dropping malformed frame from %s: %s", connection_id, exc)
                continue
            await relay.handle(connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.leave(connection_id)
        logger.info("Signaling connection %s closed", connection_id)
