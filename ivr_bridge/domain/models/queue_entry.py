"""
Queue Entry Model
A caller waiting for, or being connected to, a human agent
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class QueueStatus(str, Enum):
    """Status of a queue entry"""
    WAITING = "waiting"
    RINGING = "ringing"      # An agent accepted, their leg is dialing in
    ANSWERED = "answered"    # Agent leg joined the room
    COMPLETED = "completed"
    ABANDONED = "abandoned"  # Caller hung up or admin cleanup
    TIMEOUT = "timeout"      # Expired by the wait ceiling sweep


# Entries in these states never transition again
TERMINAL_QUEUE_STATUSES = {
    QueueStatus.COMPLETED,
    QueueStatus.ABANDONED,
    QueueStatus.TIMEOUT,
}

# What agents see in their queue view (and what the sweep may expire)
LISTED_QUEUE_STATUSES = {
    QueueStatus.WAITING,
    QueueStatus.RINGING,
}


class EntrySource(str, Enum):
    """How the caller got into the queue"""
    INBOUND = "inbound"
    AI_TRANSFER = "ai-transfer"
    TEST = "test"


class QueueEntry(BaseModel):
    """
    Queue entry.

    Ordered by priority (higher first), then wait_start_time (oldest first).
    assigned_agent is written once, by the atomic accept.
    """

    id: str
    call_id: Optional[str] = None
    ai_call_id: Optional[str] = None
    telephony_call_id: Optional[str] = None
    owner_id: Optional[str] = None

    customer_phone: str
    customer_name: Optional[str] = None
    source: EntrySource = EntrySource.INBOUND
    key_pressed: Optional[str] = None

    status: QueueStatus = QueueStatus.WAITING
    priority: int = Field(default=1, description="Higher = served first")

    wait_start_time: datetime = Field(default_factory=datetime.utcnow)
    answer_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    wait_duration: Optional[int] = Field(default=None, description="Seconds from wait start to accept")
    call_duration: Optional[int] = Field(default=None, description="Seconds from accept to completion")

    assigned_agent: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATUSES

    def current_wait_time(self, now: Optional[datetime] = None) -> int:
        """Seconds the caller has been waiting so far."""
        now = now or datetime.utcnow()
        return max(0, int((now - self.wait_start_time).total_seconds()))

    def to_event_payload(self) -> dict:
        """Serialize for agent console notifications."""
        return {
            "queue_id": self.id,
            "customer_phone": self.customer_phone,
            "customer_name": self.customer_name,
            "ai_call_id": self.ai_call_id,
            "telephony_call_id": self.telephony_call_id,
            "source": self.source.value,
            "priority": self.priority,
            "status": self.status.value,
            "wait_start_time": self.wait_start_time.isoformat(),
            "is_ai_transfer": self.source == EntrySource.AI_TRANSFER,
        }
