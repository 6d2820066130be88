"""
Redis Notification Channel
Fans agent console events out across API workers through Redis pub/sub
"""
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel
from ivr_bridge.infrastructure.notifications.websocket_channel import WebSocketNotificationChannel

logger = logging.getLogger(__name__)


class RedisNotificationChannel(NotificationChannel):
    """
    Publishes every event to one Redis channel.

    Each worker runs relay_forever(), which subscribes to the same channel
    and re-broadcasts to the sockets connected to that worker.

    Message format:
        {"event": "...", "data": {...}, "owner_id": "..." | null}
    """

    def __init__(
        self,
        local: WebSocketNotificationChannel,
        redis_url: Optional[str] = None,
        channel: str = "ivr:agent-events",
        redis_client=None,
    ):
        self._local = local
        self._redis_url = redis_url or "redis://localhost:6379"
        self._channel = channel
        self._redis = redis_client

    async def _client(self):
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            logger.info(f"Notification channel connected to Redis: {self._redis_url}")
        return self._redis

    async def _publish(self, event: str, payload: Dict[str, Any], owner_id: Optional[str]) -> None:
        client = await self._client()
        message = json.dumps({"event": event, "data": payload, "owner_id": owner_id}, default=str)
        await client.publish(self._channel, message)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        await self._publish(event, payload, None)

    async def broadcast_to_owner(self, owner_id: str, event: str, payload: Dict[str, Any]) -> None:
        await self._publish(event, payload, owner_id)

    async def relay(self, raw: str) -> None:
        """Deliver one pub/sub message to this worker's sockets."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed notification: {raw[:100]}")
            return
        event, data = message.get("event"), message.get("data") or {}
        if not event:
            return
        owner_id = message.get("owner_id")
        if owner_id:
            await self._local.broadcast_to_owner(owner_id, event, data)
        else:
            await self._local.broadcast(event, data)

    async def relay_forever(self) -> None:
        """Subscribe and relay until cancelled."""
        client = await self._client()
        pubsub = client.pubsub()
        await pubsub.subscribe(self._channel)
        logger.info(f"Relaying notifications from Redis channel {self._channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.relay(message["data"])
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.close()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
