"""
WebSocket endpoint for real-time alerts.

Client protocol (JSON text frames):
    -> {"op": "authenticate", "token": "<jwt>"}     first frame, within AUTH_TIMEOUT
    <- {"op": "authenticated", "connection_id": ..., "user_id": ..., "rooms": [...]}
    -> {"op": "join", "room": "resource:bdg_groceries"}
    <- {"op": "joined", "room": "resource:bdg_groceries"}
    <- {"op": "alert", "alert": {...}}
    <- {"op": "error", "code": "..."}
    <- {"op": "heartbeat"}                           when the client is idle

On authentication failure the server sends {"op": "error", "code": "AUTH_FAILED"}
and closes the connection.
"""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from alert_engine.services.exceptions import AuthError
from alert_engine.utils.connection_gateway import ConnectionGateway
from alert_engine.utils.logging_config import get_logger


logger = get_logger("websocket")

router = APIRouter()

AUTH_TIMEOUT = 10.0  # seconds
HEARTBEAT_INTERVAL = 30.0  # seconds

# Application close codes
CLOSE_AUTH_FAILED = 4401


async def _receive(websocket: WebSocket, timeout: float):
    """Receive one frame, decoded as JSON when possible."""
    text = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
    try:
        return json.loads(text)
    except ValueError:
        return text


@router.websocket("/ws/alerts")
async def alerts_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for real-time alert delivery.

    The token may also be passed as a ``token`` query parameter instead of
    an authenticate frame.
    """
    gateway: ConnectionGateway = websocket.app.state.gateway
    await websocket.accept()

    try:
        token = websocket.query_params.get("token")
        if not token:
            first = await _receive(websocket, AUTH_TIMEOUT)
            if isinstance(first, dict) and first.get("op") == "authenticate":
                token = first.get("token")
        connection = await gateway.authenticate({"token": token}, websocket)
    except (AuthError, asyncio.TimeoutError) as e:
        reason = e.message if isinstance(e, AuthError) else "Authentication timed out"
        try:
            await websocket.send_json({"op": "error", "code": AuthError.code, "message": reason})
            await websocket.close(code=CLOSE_AUTH_FAILED)
        except Exception:
            pass  # Client may already be gone
        return
    except WebSocketDisconnect:
        return

    await websocket.send_json({
        "op": "authenticated",
        "connection_id": connection.connection_id,
        "user_id": connection.user_id,
        "rooms": sorted(connection.rooms),
    })

    try:
        while True:
            try:
                message = await _receive(websocket, HEARTBEAT_INTERVAL)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"op": "heartbeat"})
                except Exception:
                    break
                continue

            reply = await gateway.handle_message(connection.connection_id, message)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.info(
            "WebSocket disconnected",
            extra={"connection_id": connection.connection_id, "user_id": connection.user_id},
        )
    finally:
        await gateway.disconnect(connection.connection_id)
