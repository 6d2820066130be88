"""
Webhook Ingress
Routes normalized provider events to the call, transfer and queue services.

Every handler is safe under redelivery: the services it calls only write
through conditional updates, and a PSTN leg is unique across queue entries
at the storage layer, so a redelivered answer webhook on any worker finds
the entry created by the first one.
"""
import logging
from typing import Any, Dict, List, Optional

from ivr_bridge.core.config import ConfigManager, Settings
from ivr_bridge.domain.interfaces.ai_call_provider import AICallProvider
from ivr_bridge.domain.interfaces.owner_resolver import OwnerResolver
from ivr_bridge.domain.interfaces.telephony_provider import TelephonyProvider
from ivr_bridge.domain.models import (
    AICallEvent,
    AIEventType,
    EntrySource,
    InboundCallEvent,
    Instruction,
    InstructionKind,
    LISTED_QUEUE_STATUSES,
    QueueEntry,
    QueueResult,
    QueueResultEvent,
    RecordingEvent,
    TERMINAL_CALL_STATUSES,
    TelephonyStatusEvent,
    TransferOutcome,
    TransferRequest,
    agent_identity,
)
from ivr_bridge.domain.services.bridge_coordinator import BridgeCoordinator
from ivr_bridge.domain.services.call_service import AI_STATUS_MAP, VONAGE_STATUS_MAP, CallService
from ivr_bridge.domain.services.queue_service import AgentQueueService
from ivr_bridge.domain.services.transfer_engine import TransferEngine
from ivr_bridge.infrastructure.storage.repositories import AgentRepository

logger = logging.getLogger(__name__)

ACK = {"received": True}


class WebhookIngress:

    def __init__(
        self,
        calls: CallService,
        engine: TransferEngine,
        queue: AgentQueueService,
        bridge: BridgeCoordinator,
        agents: AgentRepository,
        ai_provider: AICallProvider,
        telephony: TelephonyProvider,
        owner_resolver: OwnerResolver,
        settings: Settings,
        config: ConfigManager,
    ):
        self._calls = calls
        self._engine = engine
        self._queue = queue
        self._bridge = bridge
        self._agents = agents
        self._ai = ai_provider
        self._telephony = telephony
        self._owners = owner_resolver
        self._settings = settings
        self._config = config

    # ------------------------------------------------------------------
    # AI provider
    # ------------------------------------------------------------------

    async def handle_ai_event(self, event: AICallEvent) -> Dict[str, Any]:
        """Apply one AI provider event and return the response body for the provider."""
        logger.info(f"AI event {event.raw_type} for call {event.ai_call_id}")

        if event.type == AIEventType.TRANSFER_SIGNAL and event.transfer is not None:
            decision = await self._engine.handle(event.transfer)
            logger.info(f"Transfer for {event.ai_call_id}: {decision.outcome.value}")
            return self._ai.render_instruction(decision.instruction, event.transfer.tool_call_id)

        if event.type == AIEventType.ASSISTANT_REQUEST:
            call = await self._calls.resolve_ai_call(event.ai_call_id, event.telephony_call_id)
            agents = await self._agents.list_available(call.owner_id if call else None)
            return self._ai.render_transfer_destinations(agents)

        if event.type == AIEventType.UNKNOWN:
            logger.debug(f"Ignoring AI event type {event.raw_type}")
            return ACK

        call = await self._calls.resolve_ai_call(event.ai_call_id, event.telephony_call_id)
        if call is None:
            logger.info(f"No call record for AI call {event.ai_call_id}; {event.raw_type} acknowledged")
            return ACK

        if event.type == AIEventType.CALL_STARTED:
            await self._calls.mark_started(call)

        elif event.type == AIEventType.STATUS_UPDATE:
            if event.status == "ended":
                await self._calls.mark_ended(call, ended_reason=event.ended_reason)
            elif event.status in AI_STATUS_MAP:
                await self._calls.update_status(call, AI_STATUS_MAP[event.status])

        elif event.type == AIEventType.CALL_ENDED:
            await self._calls.mark_ended(
                call,
                ended_reason=event.ended_reason,
                duration=event.duration,
                transcript=event.transcript,
                turns=event.turns,
                recording_url=event.recording_url,
                summary=event.summary,
                cost=event.cost,
            )

        elif event.type == AIEventType.CALL_FAILED:
            await self._calls.mark_failed(call, event.ended_reason)

        elif event.type == AIEventType.TRANSCRIPT:
            if event.transcript:
                await self._calls.append_transcript(call, event.transcript_role or "user", event.transcript)

        elif event.type == AIEventType.CONVERSATION_UPDATE:
            if event.turns:
                await self._calls.replace_turns(call, event.turns)

        return ACK

    def fallback_ai_response(self, event: Optional[AICallEvent]) -> Dict[str, Any]:
        """Degraded response when storage is unavailable."""
        if event is not None and event.type == AIEventType.TRANSFER_SIGNAL and event.transfer is not None:
            return self._ai.render_instruction(
                Instruction.speak(self._config.message("error")), event.transfer.tool_call_id
            )
        return ACK

    # ------------------------------------------------------------------
    # Telephony provider
    # ------------------------------------------------------------------

    async def handle_answer(self, event: InboundCallEvent) -> List[Dict[str, Any]]:
        """Call-control instructions for a leg the telephony provider is connecting."""
        if event.is_agent_leg:
            return await self._answer_agent_leg(event)
        return await self._answer_caller_leg(event)

    async def _answer_agent_leg(self, event: InboundCallEvent) -> List[Dict[str, Any]]:
        entry = await self._queue.get(event.queue_id) if event.queue_id else None
        if entry is None or entry.is_terminal or not self._is_assigned_to(entry, event.from_user):
            logger.warning(
                f"Agent leg {event.telephony_call_id} from {event.from_user} refused for queue entry {event.queue_id}"
            )
            return self._telephony.say(self._config.message("agent_not_assigned"))

        if not entry.telephony_call_id:
            logger.info(f"Agent {event.from_user} dialed in before the caller leg of {entry.id} arrived")
            return self._telephony.say(self._config.message("caller_not_connected"))

        await self._queue.mark_answered(entry.id)
        return self._bridge.agent_instructions(entry)

    @staticmethod
    def _is_assigned_to(entry: QueueEntry, from_user: Optional[str]) -> bool:
        if not entry.assigned_agent or not from_user:
            return False
        return from_user in (entry.assigned_agent, agent_identity(entry.assigned_agent))

    async def _answer_caller_leg(self, event: InboundCallEvent) -> List[Dict[str, Any]]:
        leg_id = event.telephony_call_id
        waiting_message = self._config.message("caller_waiting")

        existing = await self._queue.find_by_caller_leg(leg_id)
        if existing is not None:
            logger.info(f"Answer redelivered for leg {leg_id}; entry {existing.id} already holds it")
            return self._bridge.caller_instructions(existing, waiting_message)

        if event.from_number:
            # A caller the AI forwarded to the queue number lands here as a fresh inbound leg
            pending = await self._queue.find_recent_for_caller(
                event.from_number,
                self._settings.queue_wait_ceiling_seconds,
                pending_leg_only=True,
            )
            if pending is not None and pending.source == EntrySource.AI_TRANSFER:
                entry = await self._queue.attach_caller_leg(pending, leg_id)
                if entry.telephony_call_id == leg_id:
                    return self._bridge.caller_instructions(entry, self._config.message("hold"))

        owner_id = await self._owners.resolve_owner_for_inbound_number(event.to_number)
        entry = await self._queue.enqueue(
            event.from_number or "unknown",
            priority=self._settings.inbound_priority,
            source=EntrySource.INBOUND,
            telephony_call_id=leg_id,
            owner_id=owner_id,
        )
        return self._bridge.caller_instructions(entry, waiting_message)

    def fallback_answer(self) -> List[Dict[str, Any]]:
        return self._telephony.say(self._config.message("error"))

    async def handle_telephony_dtmf(self, request: TransferRequest) -> List[Dict[str, Any]]:
        """
        Keypad input on a PSTN leg. The transfer engine decides for the call
        linked to the leg; the response is the leg's next NCCO.
        """
        leg_id = request.telephony_call_id
        decision = await self._engine.handle(request)
        logger.info(f"Keypad {request.digit!r} on leg {leg_id}: {decision.outcome.value}")
        instruction = decision.instruction

        if instruction.kind == InstructionKind.TRANSFER:
            return self._telephony.connect_to_number(instruction.destination_number, instruction.message)

        entry = decision.queue_entry
        if instruction.kind == InstructionKind.HOLD and entry is not None:
            if not entry.telephony_call_id:
                # This response is the leg's next NCCO, so it can park the caller itself
                entry = await self._queue.attach_caller_leg(entry, leg_id)
            if entry.telephony_call_id == leg_id:
                return self._bridge.caller_instructions(entry, instruction.message)

        if decision.outcome == TransferOutcome.IGNORED:
            return self._telephony.collect_digit(self._config.message("invalid_key"))
        if decision.outcome == TransferOutcome.NO_AGENT_AVAILABLE:
            return self._telephony.collect_digit(instruction.message)
        return self._telephony.say(instruction.message)

    async def handle_telephony_status(self, event: TelephonyStatusEvent) -> Dict[str, Any]:
        leg_id = event.telephony_call_id
        call = await self._calls.resolve_ai_call(None, leg_id)
        if call is not None:
            await self._calls.apply_telephony_status(call, event.status, event.duration)

        mapped = VONAGE_STATUS_MAP.get(event.status.lower())
        if mapped in TERMINAL_CALL_STATUSES:
            entry = await self._queue.find_by_caller_leg(leg_id)
            if entry is not None and entry.status in LISTED_QUEUE_STATUSES:
                logger.info(f"Caller leg {leg_id} ended ({event.status}) while waiting in {entry.id}")
                await self._queue.record_queue_result(leg_id, QueueResult.ABANDONED)
        return ACK

    async def handle_recording(self, event: RecordingEvent) -> Dict[str, Any]:
        call = await self._calls.resolve_ai_call(None, event.telephony_call_id)
        if call is None:
            logger.info(f"Recording for unknown leg {event.telephony_call_id}")
            return ACK
        await self._calls.attach_recording(call, event.recording_url, event.duration)
        return ACK

    async def handle_queue_result(self, event: QueueResultEvent) -> Dict[str, Any]:
        await self._queue.record_queue_result(event.telephony_call_id, event.result)
        return ACK
