import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from app.dependencies import get_registry
from app.services.connections import ConnectionRegistry, WebSocketConnection
from app.services.identities import normalize_identity

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["push"])


@router.websocket("/ws")
async def push_channel(
    websocket: WebSocket,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    registry: ConnectionRegistry = Depends(get_registry),
) -> None:
    identity = normalize_identity(user_id or "")
    if not identity:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    await registry.register(identity, connection)
    try:
        await websocket.send_json({"type": "connected", "message": "Connected"})
        while True:
            # Inbound frames, text or binary, carry nothing and are dropped.
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                LOGGER.info("Push client disconnected identity=%s", identity)
                break
    except WebSocketDisconnect:
        LOGGER.info("Push client went away identity=%s", identity)
    finally:
        connection.mark_closed()
        registry.unregister(identity, connection)
