"""
Notification Fan-out
Tells agent consoles when the queue changes
"""
import logging
from typing import Any, Dict, Optional

from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel
from ivr_bridge.domain.models import QueueEntry

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Fire-and-forget wrapper around a NotificationChannel.

    A failed push is logged and reported as False; it never raises, so
    the queue transition that triggered it always stands.
    """

    INCOMING_CALL = "incoming-call"
    QUEUE_UPDATE = "queue-update"

    def __init__(self, channel: NotificationChannel):
        self._channel = channel

    async def publish(self, event: str, payload: Dict[str, Any], owner_id: Optional[str] = None) -> bool:
        try:
            if owner_id:
                await self._channel.broadcast_to_owner(owner_id, event, payload)
            else:
                await self._channel.broadcast(event, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to push {event} to agent consoles: {e}")
            return False

    async def incoming_call(self, entry: QueueEntry) -> bool:
        """A new caller is waiting."""
        return await self.publish(self.INCOMING_CALL, entry.to_event_payload(), owner_id=entry.owner_id)

    async def queue_update(
        self,
        action: str,
        entry: Optional[QueueEntry] = None,
        owner_id: Optional[str] = None,
        **extra: Any,
    ) -> bool:
        """An entry changed state (accepted, completed, timeout, ...)."""
        payload: Dict[str, Any] = {"action": action}
        if entry is not None:
            payload.update(
                queue_id=entry.id,
                status=entry.status.value,
                assigned_agent=entry.assigned_agent,
            )
            owner_id = owner_id or entry.owner_id
        payload.update(extra)
        return await self.publish(self.QUEUE_UPDATE, payload, owner_id=owner_id)
