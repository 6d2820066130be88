"""
Unit Tests for WebhookIngress

Answer-webhook routing, lifecycle events and redelivery safety.
"""
import asyncio
import uuid

import pytest

from ivr_bridge.core.config import TransferMode
from ivr_bridge.domain.models import (
    AICallEvent,
    AIEventType,
    CallStatus,
    EntrySource,
    InboundCallEvent,
    QueueStatus,
    TelephonyStatusEvent,
    TranscriptTurn,
    TransferRequest,
    TransferSignal,
    TransferStatus,
)


def inbound(leg: str, from_number: str = "+15550001111", to_number: str = "+18884706735") -> InboundCallEvent:
    return InboundCallEvent(telephony_call_id=leg, from_number=from_number, to_number=to_number)


class TestCallerLegAnswer:
    """Tests for PSTN legs arriving at the answer webhook"""

    @pytest.mark.asyncio
    async def test_new_inbound_caller_is_queued_in_own_room(self, container, owner_resolver):
        owner_resolver.owners["+18884706735"] = "owner-1"

        ncco = await container.ingress.handle_answer(inbound("leg-1"))

        assert ncco[-1]["action"] == "conversation"
        assert ncco[-1]["name"] == "queue-leg-1"
        entry = await container.queue.find_by_caller_leg("leg-1")
        assert entry.source == EntrySource.INBOUND
        assert entry.priority == 1
        assert entry.owner_id == "owner-1"

    @pytest.mark.asyncio
    async def test_unknown_number_is_queued_without_owner(self, container):
        await container.ingress.handle_answer(inbound("leg-2", to_number="+19990000000"))

        entry = await container.queue.find_by_caller_leg("leg-2")
        assert entry.owner_id is None

    @pytest.mark.asyncio
    async def test_redelivery_does_not_create_second_entry(self, container):
        first = await container.ingress.handle_answer(inbound("leg-3"))
        second = await container.ingress.handle_answer(inbound("leg-3"))

        assert first == second
        assert len(await container.queue.list_waiting()) == 1

    @pytest.mark.asyncio
    async def test_answer_on_two_workers_creates_one_entry(self, container, second_worker, channel):
        first, second = await asyncio.gather(
            container.ingress.handle_answer(inbound("leg-dup")),
            second_worker.ingress.handle_answer(inbound("leg-dup")),
        )

        assert first[-1]["name"] == second[-1]["name"] == "queue-leg-dup"
        assert len(await container.queue.list_waiting()) == 1
        assert len(channel.named("incoming-call")) == 1

    @pytest.mark.asyncio
    async def test_forwarded_leg_attaches_to_pending_ai_transfer(self, container, make_call, channel):
        await make_call(ai_call_id="V1", customer_phone="+15550004444")
        decision = await container.transfer_engine.handle(
            TransferRequest(ai_call_id="V1", signal=TransferSignal.TOOL_INVOCATION, tool_name="transferCall")
        )

        ncco = await container.ingress.handle_answer(inbound("leg-fwd", from_number="+15550004444"))

        assert ncco[-1]["name"] == "queue-leg-fwd"
        entries = await container.queue.list_waiting()
        assert [e.id for e in entries] == [decision.queue_entry.id]
        assert entries[0].telephony_call_id == "leg-fwd"
        connected = [p for p in channel.named("queue-update") if p["action"] == "caller-connected"]
        assert connected[-1]["room_id"] == "queue-leg-fwd"


class TestAgentLegAnswer:
    """Tests for agent browser legs joining a room"""

    async def _accepted_entry(self, container, leg="leg-9", agent_id="a1"):
        entry = await container.queue.enqueue(
            "+15550001111", priority=1, source=EntrySource.INBOUND, telephony_call_id=leg
        )
        await container.queue.accept(entry.id, agent_id)
        return entry

    @pytest.mark.asyncio
    async def test_assigned_agent_joins_room(self, container):
        entry = await self._accepted_entry(container)

        ncco = await container.ingress.handle_answer(
            InboundCallEvent(telephony_call_id="agent-leg", from_user="agent-a1", queue_id=entry.id)
        )

        assert ncco[-1]["name"] == "queue-leg-9"
        assert ncco[-1]["endOnExit"] is True
        assert (await container.queue.get(entry.id)).status == QueueStatus.ANSWERED

    @pytest.mark.asyncio
    async def test_joining_agent_marks_transfer_answered(self, container, make_call, make_agent):
        call = await make_call(status=CallStatus.IN_QUEUE)
        agent = await make_agent()
        entry = await container.queue.enqueue(
            call.customer_phone,
            priority=2,
            source=EntrySource.AI_TRANSFER,
            call_id=call.id,
            telephony_call_id="leg-10",
        )
        await container.queue.accept(entry.id, agent.id)

        await container.ingress.handle_answer(
            InboundCallEvent(telephony_call_id="agent-leg", from_user=agent.identity, queue_id=entry.id)
        )

        stored = await container.calls_repo.get(call.id)
        assert stored.transfer_details.transfer_status == TransferStatus.ANSWERED
        assert stored.transfer_details.agent_id == agent.id

    @pytest.mark.asyncio
    async def test_other_agent_is_refused(self, container):
        entry = await self._accepted_entry(container)

        ncco = await container.ingress.handle_answer(
            InboundCallEvent(telephony_call_id="agent-leg", from_user="agent-a2", queue_id=entry.id)
        )

        assert ncco == [{"action": "talk", "text": container.config.message("agent_not_assigned")}]
        assert (await container.queue.get(entry.id)).status == QueueStatus.RINGING


class TestTelephonyStatus:
    """Tests for telephony status callbacks"""

    @pytest.mark.asyncio
    async def test_caller_hangup_while_waiting_abandons_entry(self, container):
        await container.ingress.handle_answer(inbound("leg-20"))

        await container.ingress.handle_telephony_status(
            TelephonyStatusEvent(telephony_call_id="leg-20", status="completed")
        )

        entry = await container.queue.find_by_caller_leg("leg-20")
        assert entry.status == QueueStatus.ABANDONED

    @pytest.mark.asyncio
    async def test_status_moves_call_forward_only(self, container, make_call):
        call = await make_call(telephony_call_id="leg-21", status=CallStatus.IN_PROGRESS)

        await container.ingress.handle_telephony_status(
            TelephonyStatusEvent(telephony_call_id="leg-21", status="ringing")
        )
        assert (await container.calls_repo.get(call.id)).status == CallStatus.IN_PROGRESS

        await container.ingress.handle_telephony_status(
            TelephonyStatusEvent(telephony_call_id="leg-21", status="busy", duration=3)
        )
        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.BUSY
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_terminal_call_never_moves_again(self, container, make_call):
        call = await make_call(telephony_call_id="leg-22", status=CallStatus.FAILED)

        await container.ingress.handle_telephony_status(
            TelephonyStatusEvent(telephony_call_id="leg-22", status="completed")
        )

        assert (await container.calls_repo.get(call.id)).status == CallStatus.FAILED


class TestAILifecycle:
    """Tests for AI provider lifecycle events"""

    @pytest.mark.asyncio
    async def test_call_ended_stores_artifacts(self, container, make_call):
        call = await make_call(ai_call_id="V30")

        await container.ingress.handle_ai_event(
            AICallEvent(
                type=AIEventType.CALL_ENDED,
                ai_call_id="V30",
                duration=42.6,
                transcript="hello there",
                turns=[TranscriptTurn(role="assistant", message="hello there")],
                recording_url="https://example.com/rec.wav",
                summary="Short call",
                cost=0.12,
            )
        )

        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.COMPLETED
        assert stored.duration_seconds == 42
        assert stored.transcript == "hello there"
        assert stored.transcript_turns[0].message == "hello there"
        assert stored.recording_url == "https://example.com/rec.wav"
        assert stored.summary == "Short call"
        assert stored.cost == pytest.approx(0.12)

    @pytest.mark.asyncio
    async def test_call_ended_keeps_transferred_status(self, container, make_call):
        call = await make_call(ai_call_id="V31", status=CallStatus.TRANSFERRED)

        await container.ingress.handle_ai_event(AICallEvent(type=AIEventType.CALL_ENDED, ai_call_id="V31"))

        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.TRANSFERRED
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_repeated_transcript_is_not_appended(self, container, make_call):
        call = await make_call(ai_call_id="V32")
        event = AICallEvent(
            type=AIEventType.TRANSCRIPT, ai_call_id="V32", transcript="I need help", transcript_role="user"
        )

        await container.ingress.handle_ai_event(event)
        call = await container.calls_repo.get(call.id)
        await container.calls.append_transcript(call, "user", "I need help")

        stored = await container.calls_repo.get(call.id)
        assert [t.message for t in stored.transcript_turns] == ["I need help"]

    @pytest.mark.asyncio
    async def test_unknown_call_is_acknowledged(self, container):
        response = await container.ingress.handle_ai_event(
            AICallEvent(type=AIEventType.CALL_STARTED, ai_call_id=f"vapi-{uuid.uuid4().hex}")
        )
        assert response == {"received": True}

    @pytest.mark.asyncio
    async def test_assistant_request_lists_available_agents(self, container, make_agent):
        await make_agent(key_press="1", name="Alice", department="Sales")
        await make_agent(key_press="2", name="Bob", department=None, is_available=False)

        response = await container.ingress.handle_ai_event(AICallEvent(type=AIEventType.ASSISTANT_REQUEST))

        destinations = response["assistant"]["transferDestinations"]
        assert [d["description"] for d in destinations] == ["Press 1 for Alice (Sales)"]

    @pytest.mark.asyncio
    async def test_transfer_signal_renders_tool_result(self, container, make_call):
        await make_call(ai_call_id="V33")
        event = AICallEvent(
            type=AIEventType.TRANSFER_SIGNAL,
            ai_call_id="V33",
            transfer=TransferRequest(
                ai_call_id="V33",
                signal=TransferSignal.TOOL_INVOCATION,
                tool_name="transferToAgent",
                tool_call_id="tc-77",
            ),
        )

        response = await container.ingress.handle_ai_event(event)

        assert response["results"][0]["toolCallId"] == "tc-77"


class TestTelephonyKeypad:
    """Tests for keypad input reported by the telephony provider"""

    @staticmethod
    def keypad(leg: str, digit: str) -> TransferRequest:
        return TransferRequest(signal=TransferSignal.DTMF, digit=digit, telephony_call_id=leg)

    @pytest.mark.asyncio
    async def test_direct_mode_forwards_leg_to_agent(self, settings, container, make_call, make_agent):
        settings.transfer_mode = TransferMode.DIRECT
        call = await make_call(telephony_call_id="leg-k1")
        await make_agent(key_press="2", name="Bob", phone_number="+15557770002")

        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-k1", "2"))

        assert ncco[-1] == {"action": "connect", "endpoint": [{"type": "phone", "number": "+15557770002"}]}
        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.TRANSFERRED
        assert stored.key_pressed == "2"

    @pytest.mark.asyncio
    async def test_queue_mode_parks_leg_in_its_room(self, container, make_call):
        await make_call(telephony_call_id="leg-k2")

        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-k2", "1"))

        assert ncco[-1]["name"] == "queue-leg-k2"
        entry = await container.queue.find_by_caller_leg("leg-k2")
        assert entry.source == EntrySource.AI_TRANSFER
        assert entry.key_pressed == "1"

    @pytest.mark.asyncio
    async def test_queue_mode_parks_leg_when_redirect_fails(self, container, make_call, telephony):
        telephony.fail_redirect = True
        await make_call(telephony_call_id="leg-k3")

        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-k3", "1"))

        assert ncco[-1]["name"] == "queue-leg-k3"
        assert (await container.queue.find_by_caller_leg("leg-k3")) is not None

    @pytest.mark.asyncio
    async def test_unavailable_key_prompts_again(self, settings, container, make_call):
        settings.transfer_mode = TransferMode.DIRECT
        await make_call(telephony_call_id="leg-k4")

        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-k4", "7"))

        assert ncco == [
            {"action": "talk", "text": container.config.message("no_agent")},
            {"action": "input", "type": ["dtmf"]},
        ]

    @pytest.mark.asyncio
    async def test_timed_out_input_prompts_again(self, container, make_call):
        await make_call(telephony_call_id="leg-k5")

        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-k5", None))

        assert ncco[0] == {"action": "talk", "text": container.config.message("invalid_key")}
        assert ncco[-1]["action"] == "input"

    @pytest.mark.asyncio
    async def test_unknown_leg_is_apologized_to(self, container):
        ncco = await container.ingress.handle_telephony_dtmf(self.keypad("leg-nobody", "1"))

        assert ncco == [{"action": "talk", "text": container.config.message("call_not_found")}]
