"""WebSocket endpoint for live chat sessions.

Protocol:
    1. Client connects to /ws/chat with ``?token=<jwt>`` or an
       ``Authorization: Bearer`` header.
       → Rejected handshakes are closed with 1008 before accept.
    2. Server subscribes the connection to every room of the user
       → Server sends: {"event": "connected", "data": {userId, rooms}}
    3. Client sends ``{"event": "send-message" | "typing" | "add-participants", "data": {...}}``
       → Server broadcasts new-message / typing / participants-added,
         or answers this connection with ``error``.
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from parley.auth.dependencies import websocket_credential
from parley.errors import ChatError

from .manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """Authenticate, join the user's rooms, then relay events until close."""
    sessions: SessionManager = websocket.app.state.sessions
    verifier = websocket.app.state.verifier

    try:
        principal = await verifier.verify(websocket_credential(websocket))
    except ChatError as e:
        logger.warning("[WS] Handshake rejected: %s", e.message)
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    try:
        connection = await sessions.connect(websocket, principal)
    except ChatError as e:
        logger.error("[WS] Could not join rooms for %s: %s", principal.id, e.message)
        await websocket.close(code=1011)  # 1011 = Internal Error
        return
    except Exception:
        logger.exception("[WS] Unexpected failure joining rooms for %s", principal.id)
        await websocket.close(code=1011)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await sessions.send_error(connection, "Invalid frame: expected JSON")
                continue
            logger.debug("[WS] %s received: event=%s", connection.id,
                         frame.get("event", "?") if isinstance(frame, dict) else "?")
            await sessions.handle(connection, frame)
    except WebSocketDisconnect as e:
        logger.info("[WS] %s closed by client (code=%s)", connection.id, e.code)
    finally:
        await sessions.disconnect(connection)
