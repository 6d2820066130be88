"""
Agent Queue Service
Admission, race-safe assignment and expiry of callers waiting for a human agent
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ivr_bridge.domain.models import (
    AcceptOutcome,
    AcceptResult,
    CallStatus,
    CompleteOutcome,
    CompleteResult,
    EntrySource,
    LISTED_QUEUE_STATUSES,
    QueueEntry,
    QueueResult,
    QueueStatus,
    TERMINAL_QUEUE_STATUSES,
    TransferDetails,
    TransferStatus,
)
from ivr_bridge.domain.services.bridge_coordinator import BridgeCoordinator
from ivr_bridge.domain.services.notification_service import NotificationService
from ivr_bridge.infrastructure.storage.database import StorageError
from ivr_bridge.infrastructure.storage.repositories import (
    AgentRepository,
    CallRepository,
    QueueRepository,
)

logger = logging.getLogger(__name__)

ACTIVE_QUEUE_STATUSES = set(QueueStatus) - TERMINAL_QUEUE_STATUSES


class AgentQueueService:
    """
    Owns the QueueEntry lifecycle.

    waiting -> ringing (accept) -> answered (agent leg joined) -> completed
    waiting/ringing -> timeout (wait ceiling sweep)
    waiting/ringing -> abandoned (caller left, or admin cleanup)

    Every transition is a conditional update at the storage layer, so
    concurrent accepts, sweeps and webhook retries cannot corrupt an entry.
    """

    DEFAULT_WAIT_CEILING_SECONDS = 120

    def __init__(
        self,
        queue_repo: QueueRepository,
        call_repo: CallRepository,
        agent_repo: AgentRepository,
        notifications: NotificationService,
        bridge: BridgeCoordinator,
        wait_ceiling_seconds: int = DEFAULT_WAIT_CEILING_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._queue = queue_repo
        self._calls = call_repo
        self._agents = agent_repo
        self._notifications = notifications
        self._bridge = bridge
        self._wait_ceiling = timedelta(seconds=wait_ceiling_seconds)
        self._clock = clock

    def _new_entry(self, customer_phone: str, *, priority: int, source: EntrySource, **fields) -> QueueEntry:
        return QueueEntry(
            id=str(uuid.uuid4()),
            customer_phone=customer_phone,
            source=source,
            status=QueueStatus.WAITING,
            priority=priority,
            wait_start_time=self._clock(),
            **fields,
        )

    async def _admitted(self, entry: QueueEntry) -> QueueEntry:
        logger.info(
            f"Enqueued {entry.id} ({entry.source.value}) for {entry.customer_phone} "
            f"priority={entry.priority} leg={entry.telephony_call_id}"
        )
        await self._notifications.incoming_call(entry)
        return entry

    async def enqueue(
        self,
        customer_phone: str,
        *,
        priority: int,
        source: EntrySource,
        customer_name: Optional[str] = None,
        call_id: Optional[str] = None,
        ai_call_id: Optional[str] = None,
        telephony_call_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        key_pressed: Optional[str] = None,
    ) -> QueueEntry:
        """
        Insert a waiting entry and alert agent consoles.

        A leg that already waits in the queue is never admitted twice; the
        entry holding it is returned and no alert goes out.
        """
        entry = self._new_entry(
            customer_phone,
            priority=priority,
            source=source,
            customer_name=customer_name,
            call_id=call_id,
            ai_call_id=ai_call_id,
            telephony_call_id=telephony_call_id,
            owner_id=owner_id,
            key_pressed=key_pressed,
        )
        stored = await self._queue.add(entry)
        if stored.id != entry.id:
            return stored
        return await self._admitted(entry)

    async def enqueue_unless_active(
        self,
        customer_phone: str,
        window_seconds: int,
        *,
        priority: int,
        source: EntrySource,
        **fields,
    ) -> Tuple[QueueEntry, bool]:
        """
        Enqueue unless this caller already has an active entry from the last
        window_seconds. Returns (entry, created); the check and the insert are
        one atomic step at the storage layer.
        """
        entry = self._new_entry(customer_phone, priority=priority, source=source, **fields)
        since = entry.wait_start_time - timedelta(seconds=window_seconds)
        stored, created = await self._queue.add_unless_active(entry, since)
        if not created:
            logger.info(f"Caller {customer_phone} already has active queue entry {stored.id}")
            return stored, False
        return await self._admitted(entry), True

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        return await self._queue.get(entry_id)

    async def find_by_caller_leg(self, telephony_call_id: str) -> Optional[QueueEntry]:
        return await self._queue.find_by_telephony_call_id(telephony_call_id)

    async def find_recent_for_caller(
        self,
        customer_phone: str,
        window_seconds: int,
        pending_leg_only: bool = False,
    ) -> Optional[QueueEntry]:
        """Non-terminal entry for this caller created within the last window_seconds."""
        since = self._clock() - timedelta(seconds=window_seconds)
        return await self._queue.find_active_by_phone(customer_phone, since, pending_leg_only)

    async def expire_stale(self) -> int:
        """Move waiting/ringing entries older than the wait ceiling to timeout."""
        now = self._clock()
        expired = await self._queue.transition_many(
            QueueStatus.TIMEOUT,
            LISTED_QUEUE_STATUSES,
            waiting_before=now - self._wait_ceiling,
            end_time=now,
        )
        if expired:
            logger.info(f"Expired {expired} queue entries past the {self._wait_ceiling.seconds}s wait ceiling")
            await self._notifications.queue_update("timeout", count=expired)
        return expired

    async def list_waiting(self, owner_id: Optional[str] = None) -> List[QueueEntry]:
        """
        Entries agents can act on, highest priority first, oldest first within a priority.

        Runs the expiry sweep first; a failed sweep is logged and the read goes ahead.
        """
        try:
            await self.expire_stale()
        except StorageError as e:
            logger.warning(f"Queue expiry sweep skipped: {e.message}")
        return await self._queue.list_by_status(LISTED_QUEUE_STATUSES, owner_id=owner_id)

    async def accept(self, entry_id: str, agent_id: str) -> AcceptResult:
        """
        Claim a waiting entry for one agent.

        First writer wins at the database; everyone else gets ALREADY_TAKEN.
        """
        entry = await self._queue.get(entry_id)
        if entry is None:
            return AcceptResult(outcome=AcceptOutcome.NOT_FOUND)
        if entry.status != QueueStatus.WAITING:
            return AcceptResult(outcome=AcceptOutcome.ALREADY_TAKEN, entry=entry)

        now = self._clock()
        # wait_start_time is immutable, so the duration can be computed before the CAS
        wait_duration = max(0, int((now - entry.wait_start_time).total_seconds()))
        won = await self._queue.try_assign(entry_id, agent_id, now, wait_duration)
        if not won:
            logger.info(f"Agent {agent_id} lost the race for queue entry {entry_id}")
            current = await self._queue.get(entry_id)
            return AcceptResult(outcome=AcceptOutcome.ALREADY_TAKEN, entry=current)

        entry = entry.model_copy(update={
            "status": QueueStatus.RINGING,
            "assigned_agent": agent_id,
            "answer_time": now,
            "wait_duration": wait_duration,
        })
        logger.info(f"Agent {agent_id} accepted queue entry {entry_id} after {wait_duration}s")

        await self._notifications.queue_update("accepted", entry)
        await self._record_agent_on_call(entry, agent_id, now)

        return AcceptResult(
            outcome=AcceptOutcome.ACCEPTED,
            entry=entry,
            room_id=self._bridge.room_for_entry(entry),
        )

    async def complete(self, entry_id: str, notes: Optional[str] = None) -> CompleteResult:
        """
        Close an entry. Completing an already-final entry is a successful no-op,
        since webhook and client retries are expected.
        """
        entry = await self._queue.get(entry_id)
        if entry is None:
            return CompleteResult(outcome=CompleteOutcome.NOT_FOUND)
        if entry.is_terminal:
            return CompleteResult(outcome=CompleteOutcome.ALREADY_FINAL, entry=entry)

        now = self._clock()
        call_duration = None
        if entry.answer_time:
            call_duration = max(0, int((now - entry.answer_time).total_seconds()))

        changed = await self._queue.transition(
            entry_id,
            QueueStatus.COMPLETED,
            ACTIVE_QUEUE_STATUSES,
            end_time=now,
            call_duration=call_duration,
            notes=notes,
        )
        current = await self._queue.get(entry_id)
        if not changed:
            return CompleteResult(outcome=CompleteOutcome.ALREADY_FINAL, entry=current)

        logger.info(f"Queue entry {entry_id} completed (call_duration={call_duration})")
        await self._notifications.queue_update("completed", current)
        await self._record_transfer_finished(current)
        return CompleteResult(outcome=CompleteOutcome.COMPLETED, entry=current)

    async def cleanup(self, owner_id: Optional[str] = None) -> int:
        """Administrative escape hatch: abandon every non-terminal entry."""
        count = await self._queue.transition_many(
            QueueStatus.ABANDONED,
            ACTIVE_QUEUE_STATUSES,
            owner_id=owner_id,
            end_time=self._clock(),
        )
        logger.warning(f"Queue cleanup abandoned {count} entries (owner={owner_id})")
        if count:
            await self._notifications.queue_update("cleanup", owner_id=owner_id, count=count)
        return count

    async def attach_caller_leg(self, entry: QueueEntry, telephony_call_id: str) -> QueueEntry:
        """Link the PSTN leg that will wait in this entry's room (set once)."""
        attached = await self._queue.attach_telephony_call_id(entry.id, telephony_call_id)
        current = await self._queue.get(entry.id) or entry
        if not attached and current.telephony_call_id != telephony_call_id:
            logger.warning(
                f"Queue entry {entry.id} already bound to leg {current.telephony_call_id}; "
                f"ignoring leg {telephony_call_id}"
            )
            return current

        if attached:
            logger.info(f"Queue entry {entry.id} bound to caller leg {telephony_call_id}")
            await self._notifications.queue_update(
                "caller-connected", current, room_id=self._bridge.room_for_entry(current)
            )
        return current

    async def mark_answered(self, entry_id: str) -> bool:
        """The accepting agent's leg joined the room."""
        changed = await self._queue.transition(
            entry_id, QueueStatus.ANSWERED, {QueueStatus.RINGING}
        )
        if changed:
            entry = await self._queue.get(entry_id)
            if entry is not None:
                await self._record_transfer_answered(entry)
        return changed

    async def record_queue_result(
        self,
        telephony_call_id: str,
        result: QueueResult,
    ) -> Optional[QueueEntry]:
        """Telephony provider reports the caller left the queue."""
        entry = await self._queue.find_by_telephony_call_id(telephony_call_id)
        if entry is None:
            logger.info(f"Queue result for unknown leg {telephony_call_id}")
            return None

        if result == QueueResult.ANSWERED:
            changed = await self._queue.transition(
                entry.id, QueueStatus.ANSWERED, LISTED_QUEUE_STATUSES
            )
            action = "answered"
        else:
            changed = await self._queue.transition(
                entry.id, QueueStatus.ABANDONED, LISTED_QUEUE_STATUSES, end_time=self._clock()
            )
            action = "abandoned"

        current = await self._queue.get(entry.id)
        if changed:
            logger.info(f"Queue entry {entry.id} {action} (leg {telephony_call_id})")
            await self._notifications.queue_update(action, current)
        return current

    async def stats(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._queue.stats(owner_id)

    async def _record_agent_on_call(self, entry: QueueEntry, agent_id: str, now: datetime) -> None:
        """Mirror a successful accept onto the linked call record."""
        if not entry.call_id:
            return
        try:
            agent = await self._agents.get(agent_id)
            details = TransferDetails(
                agent_id=agent_id,
                agent_name=agent.name if agent else None,
                agent_phone=agent.phone_number if agent else None,
                transfer_time=now,
                transfer_status=TransferStatus.RINGING,
            )
            await self._calls.update(
                entry.call_id,
                {
                    "transferred_to": agent.phone_number if agent else agent_id,
                    "transfer_details": details,
                },
                only_if_null="transferred_to",
            )
            await self._calls.update(
                entry.call_id,
                {"status": CallStatus.TRANSFERRED},
                only_statuses={CallStatus.IN_PROGRESS, CallStatus.IN_QUEUE},
            )
        except StorageError as e:
            # The assignment itself is committed; the call record catches up on completion
            logger.error(f"Accepted {entry.id} but could not update call {entry.call_id}: {e.message}")

    async def _record_transfer_answered(self, entry: QueueEntry) -> None:
        if not entry.call_id:
            return
        try:
            call = await self._calls.get(entry.call_id)
            if call is None or call.transfer_details is None:
                return
            if call.transfer_details.transfer_status != TransferStatus.RINGING:
                return
            details = call.transfer_details.model_copy(update={"transfer_status": TransferStatus.ANSWERED})
            await self._calls.update(call.id, {"transfer_details": details})
        except StorageError as e:
            logger.error(f"Agent joined {entry.id} but could not update call {entry.call_id}: {e.message}")

    async def _record_transfer_finished(self, entry: QueueEntry) -> None:
        if not entry.call_id:
            return
        try:
            call = await self._calls.get(entry.call_id)
            if call is None:
                return
            details = call.transfer_details or TransferDetails(agent_id=entry.assigned_agent)
            details = details.model_copy(update={
                "transfer_status": TransferStatus.COMPLETED,
                "transfer_duration": entry.call_duration,
            })
            await self._calls.update(call.id, {"transfer_details": details})
            await self._calls.update(
                call.id,
                {"status": CallStatus.COMPLETED, "ended_at": entry.end_time},
                only_statuses={CallStatus.TRANSFERRED},
            )
        except StorageError as e:
            logger.error(f"Completed {entry.id} but could not update call {entry.call_id}: {e.message}")
