"""WebSocket client for the signaling relay."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.config import settings
from ..schemas import signaling as schemas
from .errors import TransportError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[schemas.SignalMessage], Awaitable[None]]
DisconnectHandler = Callable[[Optional[BaseException]], Awaitable[None]]


class SignalingClient:
    """Handle the lifespan of one signaling connection.

    The relay announces the connection id with a ``connected`` frame; that frame
    resolves the ready future. Everything else is decoded and handed to
    ``on_message`` in arrival order.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        on_message: Optional[MessageHandler] = None,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> None:
        self.url = url or settings.signaling_url
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self._ws: Any = None
        self._ready: Optional[asyncio.Future[str]] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def connection_id(self) -> Optional[str]:
        if self._ready is None or not self._ready.done() or self._ready.cancelled():
            return None
        if self._ready.exception() is not None:
            return None
        return self._ready.result()

    @property
    def ready(self) -> bool:
        return self.connection_id is not None and self._ws is not None

    async def connect(self) -> None:
        """Open the socket unless a connection is already open or opening."""

        if self._ready is not None and not self._ready.done():
            return
        if self.ready:
            return

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._closing = False
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, WebSocketException) as exc:
            error = TransportError(f"Could not reach signaling relay at {self.url}: {exc}")
            self._fail_ready(error)
            raise error from exc

        logger.info("Signaling socket open to %s", self.url)
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def wait_ready(self, timeout: Optional[float] = None) -> str:
        """Wait until the relay has assigned a connection id and return it."""

        if self._ready is None:
            raise TransportError("Signaling client is not connected")
        timeout = settings.transport_ready_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Signaling relay not ready after {timeout:.1f}s") from exc

    async def emit(self, message: schemas.SignalMessage) -> None:
        if self._ws is None:
            raise TransportError("Signaling socket is closed")
        try:
            await self._ws.send(json.dumps(schemas.encode_message(message)))
        except ConnectionClosed as exc:
            raise TransportError(f"Signaling socket closed while sending {message.event.value}") from exc

    async def close(self) -> None:
        """Close the socket without reporting it as a disconnect."""

        self._closing = True
        task, self._receive_task = self._receive_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._fail_ready(TransportError("Signaling client closed"))

    async def _receive_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                await self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            error = exc
        finally:
            if not self._closing:
                self._ws = None

        if not self._closing:
            await self._handle_disconnect(error)

    async def _dispatch(self, raw: str) -> None:
        try:
            message = schemas.decode_server_message(json.loads(raw))
        except (ValueError, RecursionError) as exc:
            logger.warning("Dropping malformed signaling frame: %s", exc)
            return

        if isinstance(message, schemas.Connected):
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(message.socket_id)
                logger.info("Signaling ready as %s", message.socket_id)
            return

        if self.on_message is None:
            return
        try:
            await self.on_message(message)
        except Exception:  # noqa: BLE001 - one bad handler must not kill the socket
            logger.exception("Signaling handler failed for %s", message.event.value)

    async def _handle_disconnect(self, error: Optional[BaseException]) -> None:
        logger.warning("Signaling socket disconnected%s", f": {error}" if error else "")
        self._fail_ready(TransportError("Signaling socket disconnected"))
        if self.on_disconnect is not None:
            await self.on_disconnect(error)

    def _fail_ready(self, error: BaseException) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # mark retrieved so an unawaited failure is not reported at shutdown
            self._ready.exception()
