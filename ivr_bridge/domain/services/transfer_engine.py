"""
Transfer Decision Engine
Decides what happens when a caller asks the AI assistant for a human
"""
import asyncio
import logging
from typing import Optional

from ivr_bridge.core.config import ConfigManager, Settings, TransferMode
from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError, TelephonyProvider
from ivr_bridge.domain.models import (
    CallRecord,
    CallStatus,
    EntrySource,
    Instruction,
    QueueEntry,
    TRANSFER_TOOL_NAMES,
    TransferDecision,
    TransferDetails,
    TransferOutcome,
    TransferRequest,
    TransferSignal,
    TransferStatus,
)
from ivr_bridge.domain.services.bridge_coordinator import BridgeCoordinator
from ivr_bridge.domain.services.queue_service import AgentQueueService
from ivr_bridge.infrastructure.storage.repositories import AgentRepository, CallRepository

logger = logging.getLogger(__name__)

DIGITS = set("0123456789")

# Statuses a call may leave when its caller is parked in the agent queue
QUEUEABLE_CALL_STATUSES = {
    CallStatus.QUEUED,
    CallStatus.INITIATED,
    CallStatus.RINGING,
    CallStatus.IN_PROGRESS,
}


class TransferEngine:
    """
    Turns a TransferRequest into a TransferDecision.

    Always returns an instruction for the AI provider, whatever happens
    underneath; storage errors are the only thing that propagates.
    """

    def __init__(
        self,
        calls: CallRepository,
        agents: AgentRepository,
        queue: AgentQueueService,
        bridge: BridgeCoordinator,
        telephony: TelephonyProvider,
        settings: Settings,
        config: ConfigManager,
    ):
        self._calls = calls
        self._agents = agents
        self._queue = queue
        self._bridge = bridge
        self._telephony = telephony
        self._settings = settings
        self._config = config

    async def handle(self, request: TransferRequest) -> TransferDecision:
        if not self._is_transfer_signal(request):
            logger.debug(f"Ignoring non-transfer signal {request.signal.value} for {request.ai_call_id}")
            return TransferDecision(outcome=TransferOutcome.IGNORED, instruction=Instruction.proceed())

        call = await self._find_call(request)
        if call is None:
            logger.warning(
                f"Transfer requested for unknown call (ai={request.ai_call_id}, leg={request.telephony_call_id})"
            )
            return TransferDecision(
                outcome=TransferOutcome.NOT_FOUND,
                instruction=Instruction.speak(self._config.message("call_not_found")),
            )

        if request.telephony_call_id and not call.telephony_call_id:
            await self._calls.update(
                call.id,
                {"telephony_call_id": request.telephony_call_id},
                only_if_null="telephony_call_id",
            )
            call = call.model_copy(update={"telephony_call_id": request.telephony_call_id})

        key = request.requested_key
        if self._settings.transfer_mode == TransferMode.DIRECT and key is not None:
            return await self._transfer_direct(call, key)
        return await self._transfer_to_queue(call, request)

    async def _find_call(self, request: TransferRequest) -> Optional[CallRecord]:
        # Keypad input reported by the telephony provider only knows the leg
        if request.ai_call_id:
            return await self._calls.get_by_ai_call_id(request.ai_call_id)
        if request.telephony_call_id:
            return await self._calls.get_by_telephony_call_id(request.telephony_call_id)
        return None

    @staticmethod
    def _is_transfer_signal(request: TransferRequest) -> bool:
        if request.signal == TransferSignal.DTMF:
            return request.digit is not None and str(request.digit) in DIGITS
        return request.tool_name in TRANSFER_TOOL_NAMES

    async def _transfer_direct(self, call: CallRecord, key: str) -> TransferDecision:
        """Digit selects one agent; the AI provider forwards the call to their phone."""
        if call.has_transfer:
            logger.info(f"Call {call.id} already transferred to {call.transferred_to}")
            return TransferDecision(
                outcome=TransferOutcome.ALREADY_IN_PROGRESS,
                instruction=Instruction.transfer(
                    call.transferred_to, self._config.message("already_in_progress")
                ),
            )

        agent = await self._agents.find_available_by_key(call.owner_id, key)
        if agent is None:
            logger.info(f"No available agent on key {key} for owner {call.owner_id}")
            return TransferDecision(
                outcome=TransferOutcome.NO_AGENT_AVAILABLE,
                instruction=Instruction.speak(self._config.message("no_agent")),
            )

        details = TransferDetails(
            agent_id=agent.id,
            agent_name=agent.name,
            agent_phone=agent.phone_number,
            transfer_status=TransferStatus.INITIATED,
        )
        won = await self._calls.update(
            call.id,
            {
                "transferred_to": agent.phone_number,
                "transfer_details": details,
                "key_pressed": key,
                "status": CallStatus.TRANSFERRED,
            },
            only_if_null="transferred_to",
            skip_terminal=True,
        )
        if not won:
            # A concurrent signal got there first, or the call already ended
            current = await self._calls.get(call.id)
            if current is not None and current.has_transfer:
                return TransferDecision(
                    outcome=TransferOutcome.ALREADY_IN_PROGRESS,
                    instruction=Instruction.transfer(
                        current.transferred_to, self._config.message("already_in_progress")
                    ),
                )
            return TransferDecision(
                outcome=TransferOutcome.NOT_FOUND,
                instruction=Instruction.speak(self._config.message("call_not_found")),
            )

        logger.info(f"Call {call.id}: key {key} -> agent {agent.name} ({agent.phone_number})")
        return TransferDecision(
            outcome=TransferOutcome.TRANSFERRED,
            instruction=Instruction.transfer(
                agent.phone_number, f"Transferring you to {agent.name}. Please hold."
            ),
            agent=agent,
        )

    async def _transfer_to_queue(self, call: CallRecord, request: TransferRequest) -> TransferDecision:
        """Park the caller in the shared agent queue."""
        phone = call.customer_phone
        entry, created = await self._queue.enqueue_unless_active(
            phone,
            self._settings.dedup_window_seconds,
            priority=self._settings.transfer_priority,
            source=EntrySource.AI_TRANSFER,
            customer_name=call.customer_name or request.customer_name,
            call_id=call.id,
            ai_call_id=call.ai_call_id,
            owner_id=call.owner_id,
            key_pressed=request.requested_key,
        )
        if not created:
            logger.info(f"Duplicate transfer request for {phone}; entry {entry.id} already active")
            return TransferDecision(
                outcome=TransferOutcome.ALREADY_IN_PROGRESS,
                instruction=Instruction.hold(self._config.message("already_in_progress")),
                queue_entry=entry,
            )

        await self._calls.update(
            call.id,
            {"status": CallStatus.IN_QUEUE},
            only_statuses=QUEUEABLE_CALL_STATUSES,
        )

        # The leg is bound to the entry only once it is actually parked in the room
        leg_id = call.telephony_call_id
        if leg_id and await self._redirect_into_room(entry, leg_id):
            entry = await self._queue.attach_caller_leg(entry, leg_id)
            return TransferDecision(
                outcome=TransferOutcome.QUEUED,
                instruction=Instruction.hold(self._config.message("queue_transfer")),
                queue_entry=entry,
            )

        queue_number = self._settings.queue_number
        if queue_number:
            # The forwarded leg comes back through the answer webhook and attaches to this entry
            return TransferDecision(
                outcome=TransferOutcome.QUEUED,
                instruction=Instruction.transfer(queue_number, self._config.message("transferring")),
                queue_entry=entry,
            )

        return TransferDecision(
            outcome=TransferOutcome.QUEUED,
            instruction=Instruction.hold(self._config.message("hold")),
            queue_entry=entry,
        )

    async def _redirect_into_room(self, entry: QueueEntry, leg_id: str) -> bool:
        parked = entry.model_copy(update={"telephony_call_id": leg_id})
        instructions = self._bridge.caller_instructions(parked)
        try:
            await asyncio.wait_for(
                self._telephony.redirect_call(leg_id, instructions),
                timeout=self._settings.provider_timeout_seconds,
            )
        except ProviderCallError as e:
            logger.warning(f"Redirect of leg {leg_id} failed: {e.message}")
            return False
        except asyncio.TimeoutError:
            logger.warning(
                f"Redirect of leg {leg_id} timed out after "
                f"{self._settings.provider_timeout_seconds}s"
            )
            return False
        logger.info(f"Leg {leg_id} redirected into {self._bridge.room_id_for(leg_id)}")
        return True
