"""
Agent Console WebSocket
Pushes incoming-call and queue-update events to connected agents
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websockets"])


@router.websocket("/ws/agents")
async def agent_events(websocket: WebSocket, owner_id: Optional[str] = Query(None)):
    """
    Agent console event stream.

    Messages are `{"event": "incoming-call" | "queue-update", "data": {...}}`.
    Clients may send "ping" to keep the connection alive.
    """
    channel = websocket.app.state.container.websockets
    await channel.connect(websocket, owner_id)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
    except WebSocketDisconnect:
        logger.debug(f"Agent console closed the socket (owner={owner_id})")
    finally:
        await channel.disconnect(websocket)
