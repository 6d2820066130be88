"""
Call Domain Models
One AI-driven call attempt and its transfer outcome
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime
from enum import Enum


class CallStatus(str, Enum):
    """Lifecycle status of an AI call"""
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    IN_QUEUE = "in-queue"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"


# Once a call reaches one of these it never moves again
TERMINAL_CALL_STATUSES = {
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.BUSY,
}


class TransferStatus(str, Enum):
    """Progress of the human-agent leg of a transfer"""
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class TranscriptTurn(BaseModel):
    """A single utterance in the call transcript"""
    role: str
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class TransferDetails(BaseModel):
    """Where the caller was handed off to and how that went"""
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_phone: Optional[str] = None
    transfer_time: datetime = Field(default_factory=datetime.utcnow)
    transfer_status: TransferStatus = TransferStatus.INITIATED
    transfer_duration: Optional[int] = None


class CallRecord(BaseModel):
    """Call record"""
    id: str
    owner_id: Optional[str] = None
    ai_call_id: Optional[str] = None
    telephony_call_id: Optional[str] = None
    customer_phone: str
    customer_name: Optional[str] = None
    status: CallStatus = CallStatus.QUEUED
    transcript: Optional[str] = None
    transcript_turns: List[TranscriptTurn] = Field(default_factory=list)
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    summary: Optional[str] = None
    sentiment: Optional[Sentiment] = None
    key_pressed: Optional[str] = None
    transferred_to: Optional[str] = None
    transfer_details: Optional[TransferDetails] = None
    cost: float = 0.0
    metadata: Dict[str, str] = Field(default_factory=dict)
    duration_seconds: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES

    @property
    def has_transfer(self) -> bool:
        return self.transferred_to is not None
