"""
Unit Tests for agent console notifications
"""
import json
from unittest.mock import AsyncMock

import pytest

from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel
from ivr_bridge.domain.services.notification_service import NotificationService
from ivr_bridge.infrastructure.notifications.redis_channel import RedisNotificationChannel
from ivr_bridge.infrastructure.notifications.websocket_channel import WebSocketNotificationChannel


class BrokenChannel(NotificationChannel):

    async def broadcast(self, event, payload):
        raise ConnectionError("redis down")

    async def broadcast_to_owner(self, owner_id, event, payload):
        raise ConnectionError("redis down")


class FakePubSub:

    def __init__(self, messages):
        self._messages = messages
        self.subscribed = None
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed = channel

    async def unsubscribe(self, channel):
        self.subscribed = None

    async def close(self):
        self.closed = True

    async def listen(self):
        for message in self._messages:
            yield message


class TestNotificationService:
    """Tests for NotificationService"""

    @pytest.mark.asyncio
    async def test_failed_push_returns_false(self):
        service = NotificationService(BrokenChannel())

        assert await service.publish("queue-update", {"action": "accepted"}) is False

    @pytest.mark.asyncio
    async def test_owner_scoped_push(self):
        channel = AsyncMock(spec=NotificationChannel)
        service = NotificationService(channel)

        assert await service.queue_update("cleanup", owner_id="owner-1", count=3) is True

        channel.broadcast_to_owner.assert_awaited_once_with(
            "owner-1", "queue-update", {"action": "cleanup", "count": 3}
        )


class TestWebSocketChannel:
    """Tests for WebSocketNotificationChannel"""

    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_console(self):
        channel = WebSocketNotificationChannel()
        first, second = AsyncMock(), AsyncMock()
        await channel.connect(first, owner_id="owner-1")
        await channel.connect(second)

        await channel.broadcast("incoming-call", {"queue_id": "q-1"})

        expected = {"event": "incoming-call", "data": {"queue_id": "q-1"}}
        first.send_json.assert_awaited_once_with(expected)
        second.send_json.assert_awaited_once_with(expected)

    @pytest.mark.asyncio
    async def test_owner_broadcast_is_scoped(self):
        channel = WebSocketNotificationChannel()
        mine, other = AsyncMock(), AsyncMock()
        await channel.connect(mine, owner_id="owner-1")
        await channel.connect(other, owner_id="owner-2")

        await channel.broadcast_to_owner("owner-1", "queue-update", {"action": "accepted"})

        mine.send_json.assert_awaited_once()
        other.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self):
        channel = WebSocketNotificationChannel()
        alive, dead = AsyncMock(), AsyncMock()
        dead.send_json.side_effect = RuntimeError("socket closed")
        await channel.connect(alive)
        await channel.connect(dead)

        await channel.broadcast("queue-update", {})

        assert channel.connection_count == 1


class TestRedisChannel:
    """Tests for RedisNotificationChannel"""

    @pytest.mark.asyncio
    async def test_publish_wraps_owner(self):
        client = AsyncMock()
        channel = RedisNotificationChannel(WebSocketNotificationChannel(), redis_client=client)

        await channel.broadcast_to_owner("owner-1", "incoming-call", {"queue_id": "q-1"})

        name, raw = client.publish.await_args.args
        assert name == "ivr:agent-events"
        assert json.loads(raw) == {"event": "incoming-call", "data": {"queue_id": "q-1"}, "owner_id": "owner-1"}

    @pytest.mark.asyncio
    async def test_relay_forever_delivers_to_local_sockets(self):
        local = AsyncMock(spec=WebSocketNotificationChannel)
        pubsub = FakePubSub([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": json.dumps({"event": "queue-update", "data": {"a": 1}, "owner_id": None})},
            {"type": "message", "data": json.dumps({"event": "incoming-call", "data": {}, "owner_id": "owner-1"})},
            {"type": "message", "data": "not json"},
        ])
        client = AsyncMock()
        client.pubsub = lambda: pubsub
        channel = RedisNotificationChannel(local, redis_client=client)

        await channel.relay_forever()

        local.broadcast.assert_awaited_once_with("queue-update", {"a": 1})
        local.broadcast_to_owner.assert_awaited_once_with("owner-1", "incoming-call", {})
        assert pubsub.closed
