"""
Vapi Webhook Parsing
Normalizes Vapi server messages into AICallEvent
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ivr_bridge.domain.models import (
    AICallEvent,
    AIEventType,
    TRANSFER_TOOL_NAMES,
    TranscriptTurn,
    TransferRequest,
    TransferSignal,
)

logger = logging.getLogger(__name__)


# Vapi message type -> our event type
VAPI_EVENT_TYPES: Dict[str, AIEventType] = {
    "status-update": AIEventType.STATUS_UPDATE,
    "call-started": AIEventType.CALL_STARTED,
    "call-ended": AIEventType.CALL_ENDED,
    "end-of-call-report": AIEventType.CALL_ENDED,
    "call-failed": AIEventType.CALL_FAILED,
    "transcript": AIEventType.TRANSCRIPT,
    "conversation-update": AIEventType.CONVERSATION_UPDATE,
    "assistant-request": AIEventType.ASSISTANT_REQUEST,
    "tool-calls": AIEventType.TRANSFER_SIGNAL,
    "function-call": AIEventType.TRANSFER_SIGNAL,
    "dtmf": AIEventType.TRANSFER_SIGNAL,
    "keypad": AIEventType.TRANSFER_SIGNAL,
}


def _telephony_call_id(call: Dict[str, Any]) -> Optional[str]:
    """Id of the PSTN leg behind the AI call, wherever Vapi put it."""
    transport = call.get("transport") or {}
    return (
        call.get("phoneCallProviderId")
        or transport.get("callSid")
        or transport.get("callUuid")
        or transport.get("conversationUuid")
    )


def _first_present(*values: Any) -> Any:
    """First value that is not None or empty. A 0 digit counts as present."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _parse_time(value: Any) -> datetime:
    """Vapi message times are epoch milliseconds or ISO strings."""
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value / 1000)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        except ValueError:
            pass
    return datetime.utcnow()


def _parse_turns(messages: Optional[List[Dict[str, Any]]]) -> List[TranscriptTurn]:
    turns = []
    for msg in messages or []:
        text = msg.get("content") or msg.get("message")
        role = msg.get("role")
        if not text or not role or role == "system":
            continue
        turns.append(TranscriptTurn(role=role, message=text, timestamp=_parse_time(msg.get("time"))))
    return turns


def _tool_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            logger.warning(f"Unparseable tool arguments: {raw[:100]}")
    return {}


def _find_transfer_tool(message: Dict[str, Any], body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """First transfer tool call in a tool-calls / function-call message, normalized."""
    tool_calls = (
        message.get("toolCalls")
        or message.get("toolCallList")
        or body.get("toolCalls")
        or []
    )
    if message.get("functionCall"):
        tool_calls = list(tool_calls) + [{"function": message["functionCall"]}]

    first = None
    for tc in tool_calls:
        function = tc.get("function") or {}
        name = function.get("name") or tc.get("name")
        parsed = {
            "id": tc.get("id"),
            "name": name,
            "arguments": _tool_arguments(function.get("arguments", function.get("parameters", tc.get("arguments")))),
        }
        if name in TRANSFER_TOOL_NAMES:
            return parsed
        first = first or parsed
    return first


def parse_vapi_event(body: Dict[str, Any]) -> AICallEvent:
    """
    Parse a Vapi server webhook body.

    Vapi wraps everything in `message`, but older payloads put fields at
    the top level, so both are read.
    """
    message = body.get("message") or body
    raw_type = message.get("type") or body.get("type")
    call = message.get("call") or body.get("call") or {}
    customer = call.get("customer") or message.get("customer") or {}

    event = AICallEvent(
        type=VAPI_EVENT_TYPES.get(raw_type, AIEventType.UNKNOWN),
        raw_type=raw_type,
        ai_call_id=call.get("id"),
        telephony_call_id=_telephony_call_id(call),
        customer_phone=customer.get("number"),
    )

    if event.type == AIEventType.STATUS_UPDATE:
        event.status = message.get("status")
        event.ended_reason = message.get("endedReason")

    elif event.type == AIEventType.CALL_ENDED:
        artifact = message.get("artifact") or body.get("artifact") or {}
        analysis = message.get("analysis") or call.get("analysis") or {}
        event.ended_reason = message.get("endedReason") or call.get("endedReason")
        event.duration = message.get("durationSeconds") or call.get("duration")
        event.transcript = artifact.get("transcript") or message.get("transcript")
        event.turns = _parse_turns(artifact.get("messages"))
        event.recording_url = artifact.get("recordingUrl") or message.get("recordingUrl")
        event.summary = analysis.get("summary") or message.get("summary") or call.get("summary")
        event.cost = message.get("cost") if message.get("cost") is not None else call.get("cost")

    elif event.type == AIEventType.CALL_FAILED:
        event.ended_reason = message.get("endedReason") or message.get("error")

    elif event.type == AIEventType.TRANSCRIPT:
        # Partial transcripts are noise; only final ones are recorded
        if message.get("transcriptType", "final") == "final":
            event.transcript = message.get("transcript")
            event.transcript_role = message.get("role")

    elif event.type == AIEventType.CONVERSATION_UPDATE:
        event.turns = _parse_turns(message.get("conversation") or body.get("conversation"))

    elif event.type == AIEventType.TRANSFER_SIGNAL:
        event.transfer = _parse_transfer(raw_type, message, body, event, customer)

    return event


def _parse_transfer(
    raw_type: str,
    message: Dict[str, Any],
    body: Dict[str, Any],
    event: AICallEvent,
    customer: Dict[str, Any],
) -> TransferRequest:
    common = dict(
        ai_call_id=event.ai_call_id,
        telephony_call_id=event.telephony_call_id,
        customer_phone=event.customer_phone,
        customer_name=customer.get("name"),
    )
    if raw_type in ("dtmf", "keypad"):
        digit = _first_present(message.get("digit"), body.get("digit"), message.get("digits"))
        return TransferRequest(signal=TransferSignal.DTMF, digit=str(digit) if digit is not None else None, **common)

    tool = _find_transfer_tool(message, body) or {}
    return TransferRequest(
        signal=TransferSignal.TOOL_INVOCATION,
        tool_name=tool.get("name"),
        tool_call_id=tool.get("id"),
        tool_arguments=tool.get("arguments") or {},
        **common,
    )


def parse_vapi_call(call: Dict[str, Any]) -> AICallEvent:
    """
    Snapshot of a call object as returned by GET /call/{id}.

    Artifacts sit under `artifact` on current API versions and at the top
    level on older ones. Timestamps win over the reported duration.
    """
    artifact = call.get("artifact") or {}
    analysis = call.get("analysis") or {}
    customer = call.get("customer") or {}
    status = call.get("status")

    duration = _first_present(call.get("duration"), call.get("durationSeconds"))
    if call.get("startedAt") and call.get("endedAt"):
        elapsed = _parse_time(call["endedAt"]) - _parse_time(call["startedAt"])
        duration = max(0.0, elapsed.total_seconds())

    return AICallEvent(
        type=AIEventType.CALL_ENDED if status == "ended" else AIEventType.STATUS_UPDATE,
        raw_type="call",
        ai_call_id=call.get("id"),
        telephony_call_id=_telephony_call_id(call),
        customer_phone=customer.get("number"),
        status=status,
        ended_reason=call.get("endedReason"),
        duration=duration,
        transcript=artifact.get("transcript") or call.get("transcript"),
        turns=_parse_turns(artifact.get("messages") or call.get("messages")),
        recording_url=artifact.get("recordingUrl") or call.get("recordingUrl"),
        summary=analysis.get("summary") or artifact.get("summary") or call.get("summary"),
        cost=call.get("cost"),
    )
