"""
Vonage Webhook Parsing
Turns Vonage answer / event / input / recording callbacks into domain events
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ivr_bridge.domain.models import (
    InboundCallEvent,
    QueueResult,
    QueueResultEvent,
    RecordingEvent,
    TelephonyStatusEvent,
    TransferRequest,
    TransferSignal,
)

logger = logging.getLogger(__name__)

# Conversation outcomes that mean the caller reached an agent
ANSWERED_RESULTS = {"answered", "bridged", "joined", "leave-after-answer"}


class WebhookParseError(ValueError):
    """A telephony callback is missing the fields needed to act on it."""


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(float(value)) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _seconds_between(start: Optional[str], end: Optional[str]) -> Optional[int]:
    if not start or not end:
        return None
    try:
        started = datetime.fromisoformat(start.replace("Z", "+00:00"))
        ended = datetime.fromisoformat(end.replace("Z", "+00:00"))
    except ValueError:
        return None
    return max(0, int((ended - started).total_seconds()))


def _e164(number: Optional[str]) -> Optional[str]:
    """Vonage omits the leading + on PSTN numbers; stored numbers carry it."""
    if not number:
        return None
    number = str(number).strip()
    if number.isdigit():
        return "+" + number
    return number


def _leg_id(data: Dict[str, Any]) -> str:
    leg = data.get("uuid") or data.get("call_uuid")
    if not leg:
        raise WebhookParseError("callback has no call uuid")
    return leg


def parse_answer(data: Dict[str, Any]) -> InboundCallEvent:
    """
    Answer webhook. Vonage sends query params on GET and JSON on POST;
    the endpoint merges both before calling this.
    """
    custom = data.get("custom_data") or {}
    if isinstance(custom, str):
        # GET answer webhooks carry custom_data as a JSON string
        try:
            custom = json.loads(custom)
        except json.JSONDecodeError:
            custom = {}
    return InboundCallEvent(
        telephony_call_id=_leg_id(data),
        from_number=_e164(data.get("from")),
        to_number=_e164(data.get("to")),
        from_user=data.get("from_user"),
        queue_id=custom.get("queue_id") or data.get("queue_id"),
    )


def parse_status(data: Dict[str, Any]) -> TelephonyStatusEvent:
    status = data.get("status")
    if not status:
        raise WebhookParseError("status callback has no status")
    return TelephonyStatusEvent(
        telephony_call_id=_leg_id(data),
        status=status,
        duration=_int_or_none(data.get("duration")),
        direction=data.get("direction"),
    )


def parse_recording(data: Dict[str, Any]) -> RecordingEvent:
    url = data.get("recording_url")
    if not url:
        raise WebhookParseError("recording callback has no recording_url")
    leg = data.get("uuid") or data.get("call_uuid") or data.get("conversation_uuid")
    if not leg:
        raise WebhookParseError("recording callback has no call uuid")
    return RecordingEvent(
        telephony_call_id=leg,
        recording_url=url,
        duration=_int_or_none(data.get("duration")) or _seconds_between(
            data.get("start_time"), data.get("end_time")
        ),
    )


def parse_queue_result(data: Dict[str, Any]) -> QueueResultEvent:
    """Anything other than an explicit answer means the caller left unanswered."""
    raw = str(data.get("result") or data.get("status") or "").lower()
    result = QueueResult.ANSWERED if raw in ANSWERED_RESULTS else QueueResult.ABANDONED
    return QueueResultEvent(telephony_call_id=_leg_id(data), result=result)


def parse_dtmf(data: Dict[str, Any]) -> TransferRequest:
    """
    Keypad input from an NCCO `input` action.

    Current payloads nest the keys as dtmf.digits; older ones send dtmf as
    a plain string. A timed-out input has no digit.
    """
    dtmf = data.get("dtmf")
    if isinstance(dtmf, dict):
        digits = dtmf.get("digits")
    else:
        digits = dtmf
    digit = str(digits)[:1] if digits is not None and str(digits) != "" else None
    return TransferRequest(
        signal=TransferSignal.DTMF,
        digit=digit,
        telephony_call_id=_leg_id(data),
        customer_phone=_e164(data.get("from")),
    )
