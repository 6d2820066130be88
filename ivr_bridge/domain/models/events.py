"""
Normalized Webhook Events
Provider payloads are parsed into these before they reach the ingress service.
"""
from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum

from ivr_bridge.domain.models.call import TranscriptTurn
from ivr_bridge.domain.models.transfer import TransferRequest


class AIEventType(str, Enum):
    STATUS_UPDATE = "status-update"
    CALL_STARTED = "call-started"
    CALL_ENDED = "call-ended"
    CALL_FAILED = "call-failed"
    TRANSCRIPT = "transcript"
    CONVERSATION_UPDATE = "conversation-update"
    TRANSFER_SIGNAL = "transfer-signal"
    ASSISTANT_REQUEST = "assistant-request"
    UNKNOWN = "unknown"


class AICallEvent(BaseModel):
    """Lifecycle or in-call event from the AI call provider"""
    type: AIEventType
    raw_type: Optional[str] = None
    ai_call_id: Optional[str] = None
    telephony_call_id: Optional[str] = None
    customer_phone: Optional[str] = None

    status: Optional[str] = None
    ended_reason: Optional[str] = None
    duration: Optional[float] = None

    transcript: Optional[str] = None
    transcript_role: Optional[str] = None
    turns: List[TranscriptTurn] = Field(default_factory=list)
    recording_url: Optional[str] = None
    summary: Optional[str] = None
    cost: Optional[float] = None

    transfer: Optional[TransferRequest] = None


class TelephonyStatusEvent(BaseModel):
    """Call-status callback from the telephony provider"""
    telephony_call_id: str
    status: str
    duration: Optional[int] = None
    direction: Optional[str] = None


class RecordingEvent(BaseModel):
    telephony_call_id: str
    recording_url: str
    duration: Optional[int] = None


class InboundCallEvent(BaseModel):
    """
    Answer webhook for a leg the telephony provider is about to connect.

    A PSTN caller has from_number/to_number; an agent's browser leg
    carries from_user (the client identity) and the queue_id it accepted.
    """
    telephony_call_id: str
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    from_user: Optional[str] = None
    queue_id: Optional[str] = None

    @property
    def is_agent_leg(self) -> bool:
        return bool(self.from_user)


class QueueResult(str, Enum):
    ANSWERED = "answered"
    ABANDONED = "abandoned"


class QueueResultEvent(BaseModel):
    telephony_call_id: str
    result: QueueResult
