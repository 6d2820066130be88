"""
Transfer Models
Transfer requests, the instruction handed back to the AI provider,
and typed outcomes for transfer and queue assignment.
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum

from ivr_bridge.domain.models.agent import Agent
from ivr_bridge.domain.models.queue_entry import QueueEntry


TRANSFER_TOOL_NAMES = {"transferToAgent", "transferCall"}


class TransferSignal(str, Enum):
    """What the caller did to ask for a human"""
    DTMF = "dtmf"
    TOOL_INVOCATION = "tool-invocation"


class TransferRequest(BaseModel):
    """Normalized in-call transfer signal from the AI provider"""
    ai_call_id: Optional[str] = None
    signal: TransferSignal
    digit: Optional[str] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_arguments: Dict[str, Any] = Field(default_factory=dict)
    # PSTN leg behind the AI call, when the AI provider reports it
    telephony_call_id: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None

    @property
    def requested_key(self) -> Optional[str]:
        """Digit selecting a specific agent, if the signal carries one."""
        if self.digit is not None and self.digit != "":
            return str(self.digit)
        for name in ("digit", "key", "keyPress"):
            value = self.tool_arguments.get(name)
            if value is not None and str(value) != "":
                return str(value)
        return None


class InstructionKind(str, Enum):
    SPEAK = "speak"          # Say something, caller stays with the AI
    HOLD = "hold"            # Keep the caller connected while the handoff completes
    TRANSFER = "transfer"    # Forward the AI leg to destination_number
    CONTINUE = "continue"    # Nothing to do


class Instruction(BaseModel):
    """Provider-neutral instruction; the AI provider adapter renders it."""
    kind: InstructionKind
    message: str = ""
    destination_number: Optional[str] = None

    @classmethod
    def speak(cls, message: str) -> "Instruction":
        return cls(kind=InstructionKind.SPEAK, message=message)

    @classmethod
    def hold(cls, message: str) -> "Instruction":
        return cls(kind=InstructionKind.HOLD, message=message)

    @classmethod
    def transfer(cls, number: str, message: str) -> "Instruction":
        return cls(kind=InstructionKind.TRANSFER, message=message, destination_number=number)

    @classmethod
    def proceed(cls) -> "Instruction":
        return cls(kind=InstructionKind.CONTINUE, message="continue")


class TransferOutcome(str, Enum):
    TRANSFERRED = "transferred"
    QUEUED = "queued"
    ALREADY_IN_PROGRESS = "already_in_progress"
    NOT_FOUND = "not_found"
    NO_AGENT_AVAILABLE = "no_agent_available"
    IGNORED = "ignored"


class TransferDecision(BaseModel):
    outcome: TransferOutcome
    instruction: Instruction
    queue_entry: Optional[QueueEntry] = None
    agent: Optional[Agent] = None


class AcceptOutcome(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_TAKEN = "already_taken"
    NOT_FOUND = "not_found"


class AcceptResult(BaseModel):
    outcome: AcceptOutcome
    entry: Optional[QueueEntry] = None
    # Room the agent leg must join; None until the caller leg is known
    room_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == AcceptOutcome.ACCEPTED


class CompleteOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_FINAL = "already_final"
    NOT_FOUND = "not_found"


class CompleteResult(BaseModel):
    outcome: CompleteOutcome
    entry: Optional[QueueEntry] = None
