"""Domain models"""

from .call import (
    CallStatus,
    TERMINAL_CALL_STATUSES,
    TransferStatus,
    Sentiment,
    TranscriptTurn,
    TransferDetails,
    CallRecord,
)

from .queue_entry import (
    QueueStatus,
    TERMINAL_QUEUE_STATUSES,
    LISTED_QUEUE_STATUSES,
    EntrySource,
    QueueEntry,
)

from .agent import AGENT_IDENTITY_PREFIX, Agent, agent_identity

from .transfer import (
    TRANSFER_TOOL_NAMES,
    TransferSignal,
    TransferRequest,
    InstructionKind,
    Instruction,
    TransferOutcome,
    TransferDecision,
    AcceptOutcome,
    AcceptResult,
    CompleteOutcome,
    CompleteResult,
)

from .events import (
    AIEventType,
    AICallEvent,
    TelephonyStatusEvent,
    RecordingEvent,
    InboundCallEvent,
    QueueResult,
    QueueResultEvent,
)

__all__ = [
    "CallStatus",
    "TERMINAL_CALL_STATUSES",
    "TransferStatus",
    "Sentiment",
    "TranscriptTurn",
    "TransferDetails",
    "CallRecord",
    "QueueStatus",
    "TERMINAL_QUEUE_STATUSES",
    "LISTED_QUEUE_STATUSES",
    "EntrySource",
    "QueueEntry",
    "Agent",
    "AGENT_IDENTITY_PREFIX",
    "agent_identity",
    "TRANSFER_TOOL_NAMES",
    "TransferSignal",
    "TransferRequest",
    "InstructionKind",
    "Instruction",
    "TransferOutcome",
    "TransferDecision",
    "AcceptOutcome",
    "AcceptResult",
    "CompleteOutcome",
    "CompleteResult",
    "AIEventType",
    "AICallEvent",
    "TelephonyStatusEvent",
    "RecordingEvent",
    "InboundCallEvent",
    "QueueResult",
    "QueueResultEvent",
]
