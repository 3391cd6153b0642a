"""WebSocket endpoint — admission, registration, teardown.

Learn: Each browser tab holds one connection to /ws. The handler:
1. Runs the ConnectionGate on the upgrade request (cookie/bearer/?token=)
2. Refuses the handshake on any AdmissionError — no accept(), no transport
3. Accepts, wraps the socket as a Transport, adds it to the registry
4. Reads client frames until disconnect (only a text ping is understood)
5. Removes itself from the registry on the way out, whatever the reason

The handler never sends order events itself. The Broadcaster does that
from its own task, through the registry.
"""

import uuid

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.websockets import WebSocketState

from orderstream.auth.dependencies import load_identity
from orderstream.config import settings
from orderstream.db.engine import get_session_factory
from orderstream.realtime.events import PING, PONG, EnvelopeError, decode_envelope, encode_envelope
from orderstream.realtime.gate import AdmissionError, ConnectionGate
from orderstream.realtime.registry import Subscriber, SubscriberRegistry

logger = structlog.get_logger()
router = APIRouter()


class WebSocketTransport:
    """Starlette WebSocket adapted to the registry's Transport protocol."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    @property
    def open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, data: str) -> None:
        await self._ws.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws.application_state == WebSocketState.CONNECTED:
            await self._ws.close(code=code)

    def mark_closed(self) -> None:
        self._closed = True


def get_gate(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ConnectionGate:
    async def lookup(user_id: str):
        return await load_identity(factory, user_id)

    return ConnectionGate(lookup)


def get_registry(websocket: WebSocket) -> SubscriberRegistry:
    return websocket.app.state.registry


@router.websocket(settings.ws_path)
async def order_stream(
    websocket: WebSocket,
    gate: ConnectionGate = Depends(get_gate),
    registry: SubscriberRegistry = Depends(get_registry),
):
    """Live order_change / client_count feed."""
    # ── Admission ───────────────────────────────────────────
    try:
        identity = await gate.admit(websocket)
    except AdmissionError as e:
        logger.info(
            "ws.rejected",
            reason=type(e).__name__,
            detail=str(e),
            client=websocket.client.host if websocket.client else None,
        )
        await websocket.close(code=e.close_code)
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    subscriber = Subscriber(
        connection_id=uuid.uuid4().hex,
        identity=identity,
        transport=transport,
    )
    registry.add(subscriber)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            data = message.get("text")
            if data is None:
                continue  # binary frames carry nothing we understand
            try:
                kind, _ = decode_envelope(data)
            except EnvelopeError:
                continue
            if kind == PING:
                await transport.send(encode_envelope(PONG, {}))
    except WebSocketDisconnect as e:
        logger.debug("ws.disconnected", connection_id=subscriber.connection_id, code=e.code)
    finally:
        transport.mark_closed()
        registry.remove(subscriber.connection_id)
