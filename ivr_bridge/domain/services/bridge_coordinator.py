"""
Bridge / Conference Coordinator

The caller's PSTN leg and the agent's browser leg are set up by different
actors (a webhook handler and the agent's client) that never share a live
call handle. Both sides derive the same room name from the telephony
provider's id for the caller leg, and the provider's conferencing joins
whoever lands in that room.

Canonical id: the telephony id of the PSTN leg actually parked in the
room. For AI transfers that is the new PSTN leg, never the AI provider's
own call id.
"""
import logging
from typing import Any, Dict, List, Optional

from ivr_bridge.domain.interfaces.telephony_provider import TelephonyProvider
from ivr_bridge.domain.models import QueueEntry

logger = logging.getLogger(__name__)

DEFAULT_ROOM_PREFIX = "queue-"


def room_id_for(telephony_call_id: str, prefix: str = DEFAULT_ROOM_PREFIX) -> str:
    """Deterministic room name for a caller leg."""
    if not telephony_call_id:
        raise ValueError("telephony_call_id is required to derive a room id")
    return f"{prefix}{telephony_call_id}"


class BridgeCoordinator:

    def __init__(
        self,
        telephony: TelephonyProvider,
        room_prefix: str = DEFAULT_ROOM_PREFIX,
    ):
        self._telephony = telephony
        self._prefix = room_prefix

    def room_id_for(self, telephony_call_id: str) -> str:
        return room_id_for(telephony_call_id, self._prefix)

    def room_for_entry(self, entry: QueueEntry) -> Optional[str]:
        """Room for an entry, or None while its caller leg is still unknown."""
        if not entry.telephony_call_id:
            return None
        return self.room_id_for(entry.telephony_call_id)

    def caller_instructions(self, entry: QueueEntry, message: Optional[str] = None) -> List[Dict[str, Any]]:
        """Park the caller leg in its room."""
        room_id = self.room_id_for(entry.telephony_call_id)
        logger.info(f"Caller for queue entry {entry.id} waits in room {room_id}")
        return self._telephony.hold_in_room(room_id, message)

    def agent_instructions(self, entry: QueueEntry) -> List[Dict[str, Any]]:
        """Dial the agent leg into the caller's room."""
        room_id = self.room_id_for(entry.telephony_call_id)
        logger.info(f"Agent {entry.assigned_agent} joins room {room_id} for queue entry {entry.id}")
        return self._telephony.join_room(room_id)
