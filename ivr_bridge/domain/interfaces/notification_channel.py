"""
Notification Channel Interface
Pushes events to connected agent consoles
"""
from abc import ABC, abstractmethod
from typing import Any, Dict


class NotificationChannel(ABC):
    """
    Realtime channel to agent consoles.

    Delivery is at-most-once and best effort; consoles also poll the queue.
    """

    @abstractmethod
    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        """Send to every connected console."""
        pass

    @abstractmethod
    async def broadcast_to_owner(self, owner_id: str, event: str, payload: Dict[str, Any]) -> None:
        """Send to consoles of one owner scope."""
        pass
