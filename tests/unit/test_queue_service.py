"""
Unit Tests for AgentQueueService

Runs against a real SQLite database so the conditional updates are exercised.
"""
import asyncio
import uuid
from datetime import datetime, timedelta

import pytest

from ivr_bridge.domain.models import (
    AcceptOutcome,
    CallStatus,
    CompleteOutcome,
    EntrySource,
    QueueEntry,
    QueueResult,
    QueueStatus,
    TransferStatus,
)


def _entry(phone: str, priority: int = 1, age_seconds: int = 0, **kwargs) -> QueueEntry:
    return QueueEntry(
        id=kwargs.pop("id", str(uuid.uuid4())),
        customer_phone=phone,
        priority=priority,
        wait_start_time=datetime.utcnow() - timedelta(seconds=age_seconds),
        **kwargs,
    )


class TestEnqueue:
    """Tests for queue admission"""

    @pytest.mark.asyncio
    async def test_enqueue_creates_waiting_entry(self, container):
        entry = await container.queue.enqueue(
            "+15550001111", priority=2, source=EntrySource.AI_TRANSFER
        )

        stored = await container.queue.get(entry.id)
        assert stored.status == QueueStatus.WAITING
        assert stored.priority == 2
        assert stored.source == EntrySource.AI_TRANSFER
        assert stored.assigned_agent is None

    @pytest.mark.asyncio
    async def test_enqueue_notifies_incoming_call(self, container, channel):
        entry = await container.queue.enqueue(
            "+15550001111", priority=1, source=EntrySource.INBOUND, owner_id="owner-1"
        )

        owner, event, payload = channel.events[-1]
        assert event == "incoming-call"
        assert owner == "owner-1"
        assert payload["queue_id"] == entry.id
        assert payload["is_ai_transfer"] is False

    @pytest.mark.asyncio
    async def test_leg_already_queued_returns_existing_entry(self, container, channel):
        first = await container.queue.enqueue(
            "+15550001111", priority=1, source=EntrySource.INBOUND, telephony_call_id="leg-u1"
        )

        second = await container.queue.enqueue(
            "+15550001111", priority=1, source=EntrySource.INBOUND, telephony_call_id="leg-u1"
        )

        assert second.id == first.id
        assert len(channel.named("incoming-call")) == 1
        assert len(await container.queue.list_waiting()) == 1

    @pytest.mark.asyncio
    async def test_leg_cannot_be_attached_to_a_second_entry(self, container):
        holder = await container.queue_repo.add(_entry("+15550001111", telephony_call_id="leg-u2"))
        other = await container.queue_repo.add(_entry("+15550002222"))

        assert await container.queue_repo.attach_telephony_call_id(other.id, "leg-u2") is False
        assert (await container.queue_repo.get(other.id)).telephony_call_id is None
        assert (await container.queue_repo.find_by_telephony_call_id("leg-u2")).id == holder.id

    @pytest.mark.asyncio
    async def test_active_caller_is_not_enqueued_twice(self, container):
        first, created = await container.queue.enqueue_unless_active(
            "+15550001111", 30, priority=2, source=EntrySource.AI_TRANSFER
        )
        again, created_again = await container.queue.enqueue_unless_active(
            "+15550001111", 30, priority=2, source=EntrySource.AI_TRANSFER
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id


class TestListWaiting:
    """Tests for ordering and the expiry sweep"""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, container):
        """A(p1, oldest), B(p2), C(p1, newest) lists as [B, A, C]"""
        a = await container.queue_repo.add(_entry("+1555000000A", priority=1, age_seconds=30))
        b = await container.queue_repo.add(_entry("+1555000000B", priority=2, age_seconds=10))
        c = await container.queue_repo.add(_entry("+1555000000C", priority=1, age_seconds=5))

        listed = await container.queue.list_waiting()

        assert [e.id for e in listed] == [b.id, a.id, c.id]

    @pytest.mark.asyncio
    async def test_expired_entries_move_to_timeout(self, container):
        stale = await container.queue_repo.add(_entry("+15550002222", age_seconds=200))
        fresh = await container.queue_repo.add(_entry("+15550003333", age_seconds=10))

        listed = await container.queue.list_waiting()

        assert [e.id for e in listed] == [fresh.id]
        expired = await container.queue.get(stale.id)
        assert expired.status == QueueStatus.TIMEOUT
        assert expired.end_time is not None

    @pytest.mark.asyncio
    async def test_stale_ringing_entry_also_expires(self, container):
        stale = await container.queue_repo.add(
            _entry("+15550002222", age_seconds=500, status=QueueStatus.RINGING, assigned_agent="a1")
        )

        await container.queue.list_waiting()

        assert (await container.queue.get(stale.id)).status == QueueStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_terminal_entries_not_listed(self, container):
        await container.queue_repo.add(_entry("+15550004444", status=QueueStatus.COMPLETED))
        await container.queue_repo.add(_entry("+15550005555", status=QueueStatus.ABANDONED))

        assert await container.queue.list_waiting() == []

    @pytest.mark.asyncio
    async def test_owner_filter(self, container):
        mine = await container.queue_repo.add(_entry("+15550006666", owner_id="owner-1"))
        await container.queue_repo.add(_entry("+15550007777", owner_id="owner-2"))

        listed = await container.queue.list_waiting("owner-1")

        assert [e.id for e in listed] == [mine.id]


class TestAccept:
    """Tests for race-safe assignment"""

    @pytest.mark.asyncio
    async def test_only_one_of_concurrent_accepts_wins(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111", telephony_call_id="leg-1"))
        agents = [f"agent-{i}" for i in range(8)]

        results = await asyncio.gather(*(container.queue.accept(entry.id, a) for a in agents))

        winners = [r for r in results if r.outcome == AcceptOutcome.ACCEPTED]
        losers = [r for r in results if r.outcome == AcceptOutcome.ALREADY_TAKEN]
        assert len(winners) == 1
        assert len(losers) == len(agents) - 1

        stored = await container.queue.get(entry.id)
        assert stored.status == QueueStatus.RINGING
        assert stored.assigned_agent == winners[0].entry.assigned_agent

    @pytest.mark.asyncio
    async def test_accept_returns_room_and_wait_duration(self, container):
        entry = await container.queue_repo.add(
            _entry("+15550001111", age_seconds=12, telephony_call_id="tw-9")
        )

        result = await container.queue.accept(entry.id, "agent-1")

        assert result.accepted
        assert result.room_id == "queue-tw-9"
        assert result.entry.wait_duration >= 12

    @pytest.mark.asyncio
    async def test_accept_without_caller_leg_has_no_room(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111"))

        result = await container.queue.accept(entry.id, "agent-1")

        assert result.accepted
        assert result.room_id is None

    @pytest.mark.asyncio
    async def test_accept_unknown_entry(self, container):
        result = await container.queue.accept("missing", "agent-1")
        assert result.outcome == AcceptOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_accept_after_timeout_is_already_taken(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111", age_seconds=300))
        await container.queue.expire_stale()

        result = await container.queue.accept(entry.id, "agent-1")

        assert result.outcome == AcceptOutcome.ALREADY_TAKEN

    @pytest.mark.asyncio
    async def test_accept_marks_linked_call_transferred(self, container, make_call, make_agent):
        call = await make_call(status=CallStatus.IN_QUEUE)
        agent = await make_agent()
        entry = await container.queue_repo.add(_entry(call.customer_phone, call_id=call.id))

        await container.queue.accept(entry.id, agent.id)

        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.TRANSFERRED
        assert stored.transferred_to == agent.phone_number
        assert stored.transfer_details.agent_name == "Alice"
        assert stored.transfer_details.transfer_status == TransferStatus.RINGING

    @pytest.mark.asyncio
    async def test_accept_broadcasts_queue_update(self, container, channel):
        entry = await container.queue_repo.add(_entry("+15550001111"))

        await container.queue.accept(entry.id, "agent-7")

        update = channel.named("queue-update")[-1]
        assert update["action"] == "accepted"
        assert update["queue_id"] == entry.id
        assert update["assigned_agent"] == "agent-7"


class TestComplete:
    """Tests for completion"""

    @pytest.mark.asyncio
    async def test_complete_sets_duration_and_notes(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111"))
        await container.queue.accept(entry.id, "agent-1")

        result = await container.queue.complete(entry.id, notes="resolved")

        assert result.outcome == CompleteOutcome.COMPLETED
        assert result.entry.status == QueueStatus.COMPLETED
        assert result.entry.notes == "resolved"
        assert result.entry.call_duration is not None
        assert result.entry.end_time is not None

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111"))
        first = await container.queue.complete(entry.id, notes="first")

        second = await container.queue.complete(entry.id, notes="second")

        assert first.outcome == CompleteOutcome.COMPLETED
        assert second.outcome == CompleteOutcome.ALREADY_FINAL
        assert second.entry.notes == "first"
        assert second.entry.end_time == first.entry.end_time

    @pytest.mark.asyncio
    async def test_complete_unknown_entry(self, container):
        result = await container.queue.complete("missing")
        assert result.outcome == CompleteOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_complete_closes_transferred_call(self, container, make_call, make_agent):
        call = await make_call(status=CallStatus.IN_QUEUE)
        agent = await make_agent()
        entry = await container.queue_repo.add(_entry(call.customer_phone, call_id=call.id))
        await container.queue.accept(entry.id, agent.id)

        await container.queue.complete(entry.id)

        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.COMPLETED
        assert stored.transfer_details.transfer_status == TransferStatus.COMPLETED
        assert stored.transfer_details.transfer_duration is not None


class TestCleanupAndResults:
    """Tests for cleanup, queue results and stats"""

    @pytest.mark.asyncio
    async def test_cleanup_abandons_non_terminal(self, container):
        waiting = await container.queue_repo.add(_entry("+15550001111"))
        done = await container.queue_repo.add(_entry("+15550002222", status=QueueStatus.COMPLETED))

        count = await container.queue.cleanup()

        assert count == 1
        assert (await container.queue.get(waiting.id)).status == QueueStatus.ABANDONED
        assert (await container.queue.get(done.id)).status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queue_result_abandoned(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111", telephony_call_id="leg-5"))

        updated = await container.queue.record_queue_result("leg-5", QueueResult.ABANDONED)

        assert updated.status == QueueStatus.ABANDONED
        assert updated.end_time is not None

    @pytest.mark.asyncio
    async def test_queue_result_does_not_reopen_terminal(self, container):
        await container.queue_repo.add(
            _entry("+15550001111", telephony_call_id="leg-6", status=QueueStatus.COMPLETED)
        )

        updated = await container.queue.record_queue_result("leg-6", QueueResult.ANSWERED)

        assert updated.status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_mark_answered_only_from_ringing(self, container):
        entry = await container.queue_repo.add(_entry("+15550001111"))

        assert await container.queue.mark_answered(entry.id) is False
        await container.queue.accept(entry.id, "agent-1")
        assert await container.queue.mark_answered(entry.id) is True

    @pytest.mark.asyncio
    async def test_mark_answered_updates_linked_call(self, container, make_call, make_agent):
        call = await make_call(status=CallStatus.IN_QUEUE)
        agent = await make_agent()
        entry = await container.queue_repo.add(_entry(call.customer_phone, call_id=call.id))
        await container.queue.accept(entry.id, agent.id)

        await container.queue.mark_answered(entry.id)

        stored = await container.calls_repo.get(call.id)
        assert stored.status == CallStatus.TRANSFERRED
        assert stored.transfer_details.transfer_status == TransferStatus.ANSWERED
        assert stored.transfer_details.agent_name == "Alice"

    @pytest.mark.asyncio
    async def test_stats(self, container):
        await container.queue_repo.add(_entry("+15550001111"))
        await container.queue_repo.add(_entry("+15550002222", status=QueueStatus.ABANDONED))
        await container.queue_repo.add(
            _entry("+15550003333", status=QueueStatus.COMPLETED, wait_duration=20)
        )
        await container.queue_repo.add(
            _entry("+15550004444", status=QueueStatus.ANSWERED, wait_duration=40)
        )

        stats = await container.queue.stats()

        assert stats["waiting"] == 1
        assert stats["abandoned"] == 1
        assert stats["completed"] == 1
        assert stats["answered"] == 1
        assert stats["avg_wait_time"] == 30.0
