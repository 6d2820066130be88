"""
WebSocket Notification Channel
In-process registry of connected agent consoles
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel

logger = logging.getLogger(__name__)


class WebSocketNotificationChannel(NotificationChannel):
    """
    Pushes JSON messages `{"event": ..., "data": ...}` to agent console sockets.

    Sockets are grouped by owner id; consoles that connect without an owner
    only receive global broadcasts. A socket that fails a send is dropped.
    """

    GLOBAL = ""

    def __init__(self):
        self._sockets: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, owner_id: Optional[str] = None) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets[owner_id or self.GLOBAL].add(websocket)
        logger.info(f"Agent console connected (owner={owner_id}, total={self.connection_count})")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            for owner, sockets in list(self._sockets.items()):
                sockets.discard(websocket)
                if not sockets:
                    del self._sockets[owner]
        logger.info(f"Agent console disconnected (total={self.connection_count})")

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self._sockets.values())

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            targets = [ws for sockets in self._sockets.values() for ws in sockets]
        await self._send_all(targets, event, payload)

    async def broadcast_to_owner(self, owner_id: str, event: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            targets = list(self._sockets.get(owner_id, ()))
        await self._send_all(targets, event, payload)

    async def _send_all(self, targets: List[WebSocket], event: str, payload: Dict[str, Any]) -> None:
        message = {"event": event, "data": payload}
        dead = []
        for websocket in targets:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping agent console socket: {e}")
                dead.append(websocket)
        for websocket in dead:
            await self.disconnect(websocket)
