"""
Call Service
Places AI calls and applies lifecycle events to call records
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ivr_bridge.domain.interfaces.ai_call_provider import AICallProvider
from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError
from ivr_bridge.domain.models import (
    CallRecord,
    CallStatus,
    TERMINAL_CALL_STATUSES,
    TranscriptTurn,
)
from ivr_bridge.infrastructure.storage.repositories import AgentRepository, CallRepository

logger = logging.getLogger(__name__)


# Position of each status along the forward-only lifecycle. A status update
# is applied only if it moves the call forward.
STATUS_RANK: Dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.INITIATED: 1,
    CallStatus.RINGING: 2,
    CallStatus.IN_PROGRESS: 3,
    CallStatus.IN_QUEUE: 4,
    CallStatus.TRANSFERRED: 5,
    CallStatus.COMPLETED: 6,
    CallStatus.FAILED: 6,
    CallStatus.NO_ANSWER: 6,
    CallStatus.BUSY: 6,
}

# Vonage call-status values to our CallStatus
VONAGE_STATUS_MAP: Dict[str, CallStatus] = {
    "started": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "timeout": CallStatus.NO_ANSWER,
    "unanswered": CallStatus.NO_ANSWER,
    "rejected": CallStatus.NO_ANSWER,
    "cancelled": CallStatus.NO_ANSWER,
    "failed": CallStatus.FAILED,
}

# AI provider status-update values to our CallStatus
AI_STATUS_MAP: Dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
}

# Ended reasons that mean the customer was never reached
_NO_ANSWER_REASONS = ("customer-did-not-answer", "no-answer", "voicemail")
_BUSY_REASONS = ("customer-busy", "busy")


def ended_status_for(reason: Optional[str]) -> CallStatus:
    """Terminal status implied by an AI provider's endedReason."""
    reason = (reason or "").lower()
    if any(r in reason for r in _BUSY_REASONS):
        return CallStatus.BUSY
    if any(r in reason for r in _NO_ANSWER_REASONS):
        return CallStatus.NO_ANSWER
    if "error" in reason or "failed" in reason:
        return CallStatus.FAILED
    return CallStatus.COMPLETED


# Statuses in which the AI leg still owns the caller
AI_LEG_STATUSES = {
    CallStatus.QUEUED,
    CallStatus.INITIATED,
    CallStatus.RINGING,
    CallStatus.IN_PROGRESS,
}


def _statuses_before(status: CallStatus) -> set:
    rank = STATUS_RANK[status]
    return {s for s, r in STATUS_RANK.items() if r < rank}


class CallService:
    """
    Call record lifecycle.

    Every write is conditional: statuses only move forward, terminal calls
    are frozen, and set-once fields are guarded at the database, so
    redelivered webhooks are harmless.
    """

    def __init__(
        self,
        calls: CallRepository,
        ai_provider: AICallProvider,
        agents: AgentRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._calls = calls
        self._ai = ai_provider
        self._agents = agents
        self._clock = clock

    async def initiate_call(
        self,
        customer_phone: str,
        customer_name: Optional[str] = None,
        owner_id: Optional[str] = None,
        conversation_config: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CallRecord:
        """
        Create a call record and ask the AI provider to dial.

        The record exists before the provider is called, so a webhook racing
        the provider's response still finds it once ai_call_id is linked.
        """
        call = CallRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            status=CallStatus.QUEUED,
            metadata=metadata or {},
        )
        await self._calls.add(call)

        config = dict(conversation_config or {})
        config.setdefault("customer_name", customer_name)
        config["metadata"] = {**call.metadata, "call_id": call.id}
        config["agents"] = await self._agents.list_available(owner_id)

        try:
            ai_call_id = await self._ai.place_call(customer_phone, config)
        except ProviderCallError as e:
            logger.error(f"Call {call.id} to {customer_phone} failed to start: {e.message}")
            await self._calls.update(
                call.id,
                {"status": CallStatus.FAILED, "ended_at": self._clock()},
                skip_terminal=True,
            )
            return await self._calls.get(call.id)

        await self._calls.update(call.id, {"ai_call_id": ai_call_id}, only_if_null="ai_call_id")
        await self._advance(call.id, CallStatus.INITIATED)
        logger.info(f"Call {call.id} placed via {self._ai.name} as {ai_call_id}")
        return await self._calls.get(call.id)

    async def get(self, call_id: str) -> Optional[CallRecord]:
        return await self._calls.get(call_id)

    async def resolve_ai_call(
        self,
        ai_call_id: Optional[str],
        telephony_call_id: Optional[str] = None,
    ) -> Optional[CallRecord]:
        """Find the record for an AI call, linking its PSTN leg the first time it is seen."""
        call = None
        if ai_call_id:
            call = await self._calls.get_by_ai_call_id(ai_call_id)
        if call is None and telephony_call_id:
            call = await self._calls.get_by_telephony_call_id(telephony_call_id)
        if call is None:
            return None

        if telephony_call_id and not call.telephony_call_id:
            await self._calls.update(
                call.id, {"telephony_call_id": telephony_call_id}, only_if_null="telephony_call_id"
            )
            call = call.model_copy(update={"telephony_call_id": telephony_call_id})
        return call

    async def _advance(self, call_id: str, status: CallStatus, **values) -> bool:
        """Move forward to `status`; never backwards, never out of a terminal state."""
        return await self._calls.update(
            call_id,
            {"status": status, **values},
            only_statuses=_statuses_before(status),
        )

    async def update_status(self, call: CallRecord, status: CallStatus) -> bool:
        values: Dict[str, Any] = {}
        if status == CallStatus.IN_PROGRESS and call.started_at is None:
            values["started_at"] = self._clock()
        if status in TERMINAL_CALL_STATUSES and call.ended_at is None:
            values["ended_at"] = self._clock()
        changed = await self._advance(call.id, status, **values)
        if changed:
            logger.info(f"Call {call.id}: {call.status.value} -> {status.value}")
        return changed

    async def mark_started(self, call: CallRecord) -> bool:
        return await self.update_status(call, CallStatus.IN_PROGRESS)

    async def mark_ended(
        self,
        call: CallRecord,
        ended_reason: Optional[str] = None,
        duration: Optional[float] = None,
        transcript: Optional[str] = None,
        turns: Optional[List[TranscriptTurn]] = None,
        recording_url: Optional[str] = None,
        summary: Optional[str] = None,
        cost: Optional[float] = None,
    ) -> bool:
        """
        AI leg ended. Store artifacts and close the call.

        A call that was handed to a human keeps its in-queue / transferred
        status; the queue completion closes it.
        """
        artifacts: Dict[str, Any] = {}
        if transcript:
            artifacts["transcript"] = transcript
        if turns:
            artifacts["transcript_turns"] = turns
        if recording_url:
            artifacts["recording_url"] = recording_url
        if summary:
            artifacts["summary"] = summary
        if cost is not None:
            artifacts["cost"] = cost
        if duration is not None:
            artifacts["duration_seconds"] = int(duration)
        if artifacts:
            await self._calls.update(call.id, artifacts)

        if call.ended_at is None:
            await self._calls.update(call.id, {"ended_at": self._clock()}, only_if_null="ended_at")

        changed = await self._calls.update(
            call.id,
            {"status": ended_status_for(ended_reason)},
            only_statuses=AI_LEG_STATUSES,
        )
        if not changed:
            logger.info(f"Call {call.id} AI leg ended; status stays {call.status.value}")
        return changed

    async def mark_failed(self, call: CallRecord, reason: Optional[str] = None) -> bool:
        logger.warning(f"Call {call.id} failed: {reason}")
        return await self.update_status(call, CallStatus.FAILED)

    async def append_transcript(self, call: CallRecord, role: str, message: str) -> bool:
        """Add a final transcript turn unless it repeats the last one."""
        if not message:
            return False
        turns = list(call.transcript_turns)
        if turns and turns[-1].role == role and turns[-1].message == message:
            return False
        turns.append(TranscriptTurn(role=role, message=message, timestamp=self._clock()))
        return await self._calls.update(call.id, {"transcript_turns": turns}, skip_terminal=True)

    async def replace_turns(self, call: CallRecord, turns: List[TranscriptTurn]) -> bool:
        return await self._calls.update(call.id, {"transcript_turns": turns}, skip_terminal=True)

    async def apply_telephony_status(
        self,
        call: CallRecord,
        raw_status: str,
        duration: Optional[int] = None,
    ) -> Optional[CallStatus]:
        """Apply a telephony status callback. Returns the mapped status, or None if unmapped."""
        status = VONAGE_STATUS_MAP.get((raw_status or "").lower())
        if status is None:
            logger.debug(f"Unmapped telephony status {raw_status} for call {call.id}")
            return None

        # The PSTN leg is the customer, so its hangup closes the call even after a handoff
        await self.update_status(call, status)
        if duration is not None and status in TERMINAL_CALL_STATUSES:
            await self._calls.update(call.id, {"duration_seconds": int(duration)})
        return status

    async def attach_recording(self, call: CallRecord, recording_url: str, duration: Optional[int] = None) -> bool:
        return await self._calls.update(
            call.id,
            {"recording_url": recording_url, "recording_duration": duration},
        )

    async def clear_transfer(self, call_id: str) -> bool:
        """Explicitly forget a transfer so the call can be routed again."""
        logger.warning(f"Clearing transfer on call {call_id}")
        return await self._calls.update(
            call_id,
            {"transferred_to": None, "transfer_details": None},
            skip_terminal=True,
        )

    async def sync_call(self, call: CallRecord) -> CallRecord:
        """
        Re-read a call from the AI provider and apply what it reports.

        Pull-based counterpart of the lifecycle webhooks for when they were
        missed. Status goes through the same forward-only rules, so a sync
        racing a webhook never moves a call backwards. A provider error
        leaves the record as it is.
        """
        if not call.ai_call_id:
            return call
        try:
            snapshot = await self._ai.get_call(call.ai_call_id)
        except ProviderCallError as e:
            logger.warning(f"Sync of call {call.id} skipped: {e.message}")
            return call

        if snapshot.status == "ended":
            await self.mark_ended(
                call,
                ended_reason=snapshot.ended_reason,
                duration=snapshot.duration,
                transcript=snapshot.transcript,
                turns=snapshot.turns,
                recording_url=snapshot.recording_url,
                summary=snapshot.summary,
                cost=snapshot.cost,
            )
        else:
            status = AI_STATUS_MAP.get(snapshot.status or "")
            if status is not None:
                await self.update_status(call, status)
            if snapshot.turns:
                await self.replace_turns(call, snapshot.turns)

        return await self._calls.get(call.id) or call

    async def sync_active_calls(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        """Sync every call that has not reached a final state."""
        calls = await self._calls.list_non_terminal(owner_id)
        updated = 0
        for call in calls:
            synced = await self.sync_call(call)
            if synced.status != call.status:
                updated += 1
        logger.info(f"Synced {len(calls)} calls with {self._ai.name}; {updated} changed status")
        return {"checked": len(calls), "updated": updated}
