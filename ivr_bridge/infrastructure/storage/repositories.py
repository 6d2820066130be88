"""
Repositories
Async access to call records, queue entries and agents.

SQLAlchemy sessions are synchronous, so every operation runs in a worker
thread via asyncio.to_thread. State transitions are conditional UPDATE
statements; the returned row count says whether this writer won.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ivr_bridge.domain.models import (
    Agent,
    CallRecord,
    QueueEntry,
    QueueStatus,
    TERMINAL_CALL_STATUSES,
    TERMINAL_QUEUE_STATUSES,
)
from ivr_bridge.infrastructure.storage.database import Database, StorageError
from ivr_bridge.infrastructure.storage.models import AgentRow, CallRecordRow, QueueEntryRow

logger = logging.getLogger(__name__)


def _values(statuses: Iterable) -> List[str]:
    return [s.value if hasattr(s, "value") else str(s) for s in statuses]


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if hasattr(value, "value"):
        return value.value
    return value


class _Repository:
    """Shared plumbing: run blocking DB work off the event loop."""

    def __init__(self, database: Database):
        self._db = database

    async def _run(self, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"{type(self).__name__}.{fn.__name__} failed: {e}", exc_info=True)
            raise StorageError(str(e)) from e


class CallRepository(_Repository):
    """Call Record Store"""

    _FIELD_MAP = {"metadata": "call_metadata"}

    @staticmethod
    def _to_domain(row: CallRecordRow) -> CallRecord:
        return CallRecord(
            id=row.id,
            owner_id=row.owner_id,
            ai_call_id=row.ai_call_id,
            telephony_call_id=row.telephony_call_id,
            customer_phone=row.customer_phone,
            customer_name=row.customer_name,
            status=row.status,
            transcript=row.transcript,
            transcript_turns=row.transcript_turns or [],
            recording_url=row.recording_url,
            recording_duration=row.recording_duration,
            summary=row.summary,
            sentiment=row.sentiment,
            key_pressed=row.key_pressed,
            transferred_to=row.transferred_to,
            transfer_details=row.transfer_details,
            cost=row.cost or 0.0,
            metadata=row.call_metadata or {},
            duration_seconds=row.duration_seconds or 0,
            started_at=row.started_at,
            ended_at=row.ended_at,
            created_at=row.created_at,
        )

    @classmethod
    def _to_columns(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = {}
        for key, value in values.items():
            if isinstance(value, list):
                value = [_jsonable(v) for v in value]
            else:
                value = _jsonable(value)
            columns[cls._FIELD_MAP.get(key, key)] = value
        return columns

    async def add(self, call: CallRecord) -> CallRecord:
        def _add():
            fields = {name: getattr(call, name) for name in CallRecord.model_fields}
            with self._db.session() as db:
                db.add(CallRecordRow(**self._to_columns(fields)))
            return call
        return await self._run(_add)

    async def get(self, call_id: str) -> Optional[CallRecord]:
        def _get():
            with self._db.session() as db:
                row = db.get(CallRecordRow, call_id)
                return self._to_domain(row) if row else None
        return await self._run(_get)

    async def get_by_ai_call_id(self, ai_call_id: str) -> Optional[CallRecord]:
        return await self._find_one(CallRecordRow.ai_call_id == ai_call_id)

    async def get_by_telephony_call_id(self, telephony_call_id: str) -> Optional[CallRecord]:
        return await self._find_one(CallRecordRow.telephony_call_id == telephony_call_id)

    async def _find_one(self, criterion) -> Optional[CallRecord]:
        def _find():
            with self._db.session() as db:
                row = db.execute(
                    select(CallRecordRow).where(criterion).order_by(CallRecordRow.created_at.desc())
                ).scalars().first()
                return self._to_domain(row) if row else None
        return await self._run(_find)

    async def list_non_terminal(self, owner_id: Optional[str] = None, limit: int = 100) -> List[CallRecord]:
        """Calls that may still change on the AI provider's side, oldest first."""
        def _list():
            stmt = (
                select(CallRecordRow)
                .where(CallRecordRow.status.not_in(_values(TERMINAL_CALL_STATUSES)))
                .where(CallRecordRow.ai_call_id.is_not(None))
            )
            if owner_id is not None:
                stmt = stmt.where(CallRecordRow.owner_id == owner_id)
            stmt = stmt.order_by(CallRecordRow.created_at.asc()).limit(limit)
            with self._db.session() as db:
                return [self._to_domain(row) for row in db.execute(stmt).scalars().all()]
        return await self._run(_list)

    async def update(
        self,
        call_id: str,
        values: Dict[str, Any],
        only_if_null: Optional[str] = None,
        only_statuses: Optional[Iterable] = None,
        skip_terminal: bool = False,
    ) -> bool:
        """
        Conditional update of a call record.

        Args:
            call_id: Internal call id
            values: Field -> new value
            only_if_null: Apply only while this field is still NULL (set-once fields)
            only_statuses: Apply only while status is one of these
            skip_terminal: Apply only while the call is not terminal

        Returns:
            True if the row was changed
        """
        def _update():
            stmt = update(CallRecordRow).where(CallRecordRow.id == call_id)
            if only_if_null:
                column = getattr(CallRecordRow, self._FIELD_MAP.get(only_if_null, only_if_null))
                stmt = stmt.where(column.is_(None))
            if only_statuses is not None:
                stmt = stmt.where(CallRecordRow.status.in_(_values(only_statuses)))
            if skip_terminal:
                stmt = stmt.where(CallRecordRow.status.not_in(_values(TERMINAL_CALL_STATUSES)))
            columns = self._to_columns(values)
            columns["updated_at"] = datetime.utcnow()
            stmt = stmt.values(**columns).execution_options(synchronize_session=False)
            with self._db.session() as db:
                return db.execute(stmt).rowcount == 1
        return await self._run(_update)


class QueueRepository(_Repository):
    """Queue Store"""

    @staticmethod
    def _to_domain(row: QueueEntryRow) -> QueueEntry:
        return QueueEntry(
            id=row.id,
            call_id=row.call_id,
            ai_call_id=row.ai_call_id,
            telephony_call_id=row.telephony_call_id,
            owner_id=row.owner_id,
            customer_phone=row.customer_phone,
            customer_name=row.customer_name,
            source=row.source,
            key_pressed=row.key_pressed,
            status=row.status,
            priority=row.priority,
            wait_start_time=row.wait_start_time,
            answer_time=row.answer_time,
            end_time=row.end_time,
            wait_duration=row.wait_duration,
            call_duration=row.call_duration,
            assigned_agent=row.assigned_agent,
            notes=row.notes,
        )

    @staticmethod
    def _to_columns(entry: QueueEntry) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in entry.model_dump().items()}

    def _holder_of(self, column, value: str) -> Optional[QueueEntry]:
        with self._db.session() as db:
            row = db.execute(select(QueueEntryRow).where(column == value)).scalars().first()
            return self._to_domain(row) if row else None

    async def add(self, entry: QueueEntry) -> QueueEntry:
        """
        Insert an entry.

        A PSTN leg belongs to at most one entry. When the leg is already
        taken, nothing is written and the entry holding it is returned.
        """
        def _add():
            try:
                with self._db.session() as db:
                    db.add(QueueEntryRow(**self._to_columns(entry)))
                return entry
            except IntegrityError:
                if not entry.telephony_call_id:
                    raise
            holder = self._holder_of(QueueEntryRow.telephony_call_id, entry.telephony_call_id)
            if holder is None:
                raise StorageError(f"Leg {entry.telephony_call_id} conflicted but has no entry")
            logger.info(f"Leg {entry.telephony_call_id} already held by queue entry {holder.id}")
            return holder
        return await self._run(_add)

    async def add_unless_active(self, entry: QueueEntry, since: datetime) -> Tuple[QueueEntry, bool]:
        """
        Insert unless the caller already has an active entry created at or
        after `since`. Returns (entry, created).

        The caller's phone is claimed through the unique dedup_key column.
        Claims older than `since` or held by a terminal entry are released
        first, in the same transaction, so concurrent writers on any number
        of workers race at the database and exactly one insert succeeds.
        """
        key = entry.customer_phone

        def _add():
            release = (
                update(QueueEntryRow)
                .where(QueueEntryRow.dedup_key == key)
                .where(or_(
                    QueueEntryRow.wait_start_time < since,
                    QueueEntryRow.status.in_(_values(TERMINAL_QUEUE_STATUSES)),
                ))
                .values(dedup_key=None)
                .execution_options(synchronize_session=False)
            )
            try:
                with self._db.session() as db:
                    db.execute(release)
                    db.add(QueueEntryRow(dedup_key=key, **self._to_columns(entry)))
                return entry, True
            except IntegrityError:
                logger.debug(f"De-dup claim for {key} is taken")
            holder = self._holder_of(QueueEntryRow.dedup_key, key)
            if holder is None:
                raise StorageError(f"De-dup claim for {key} conflicted but has no entry")
            return holder, False
        return await self._run(_add)

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        def _get():
            with self._db.session() as db:
                row = db.get(QueueEntryRow, entry_id)
                return self._to_domain(row) if row else None
        return await self._run(_get)

    async def find_active_by_phone(
        self,
        customer_phone: str,
        since: datetime,
        pending_leg_only: bool = False,
    ) -> Optional[QueueEntry]:
        """Newest non-terminal entry for a caller created at or after `since`."""
        def _find():
            stmt = (
                select(QueueEntryRow)
                .where(QueueEntryRow.customer_phone == customer_phone)
                .where(QueueEntryRow.status.not_in(_values(TERMINAL_QUEUE_STATUSES)))
                .where(QueueEntryRow.wait_start_time >= since)
                .order_by(QueueEntryRow.wait_start_time.desc())
            )
            if pending_leg_only:
                stmt = stmt.where(QueueEntryRow.telephony_call_id.is_(None))
            with self._db.session() as db:
                row = db.execute(stmt).scalars().first()
                return self._to_domain(row) if row else None
        return await self._run(_find)

    async def find_by_telephony_call_id(self, telephony_call_id: str) -> Optional[QueueEntry]:
        def _find():
            with self._db.session() as db:
                row = db.execute(
                    select(QueueEntryRow)
                    .where(QueueEntryRow.telephony_call_id == telephony_call_id)
                    .order_by(QueueEntryRow.wait_start_time.desc())
                ).scalars().first()
                return self._to_domain(row) if row else None
        return await self._run(_find)

    async def list_by_status(
        self,
        statuses: Iterable[QueueStatus],
        owner_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        """Entries in the given states, highest priority first, oldest first within a priority."""
        def _list():
            stmt = select(QueueEntryRow).where(QueueEntryRow.status.in_(_values(statuses)))
            if owner_id is not None:
                stmt = stmt.where(QueueEntryRow.owner_id == owner_id)
            stmt = stmt.order_by(
                QueueEntryRow.priority.desc(),
                QueueEntryRow.wait_start_time.asc(),
                QueueEntryRow.id.asc(),
            )
            with self._db.session() as db:
                return [self._to_domain(row) for row in db.execute(stmt).scalars().all()]
        return await self._run(_list)

    async def try_assign(
        self,
        entry_id: str,
        agent_id: str,
        answer_time: datetime,
        wait_duration: int,
    ) -> bool:
        """
        Compare-and-set waiting -> ringing for one agent.

        A single UPDATE guarded by status = 'waiting'; exactly one concurrent
        caller sees rowcount 1.
        """
        def _assign():
            stmt = (
                update(QueueEntryRow)
                .where(QueueEntryRow.id == entry_id)
                .where(QueueEntryRow.status == QueueStatus.WAITING.value)
                .where(QueueEntryRow.assigned_agent.is_(None))
                .values(
                    status=QueueStatus.RINGING.value,
                    assigned_agent=agent_id,
                    answer_time=answer_time,
                    wait_duration=wait_duration,
                )
                .execution_options(synchronize_session=False)
            )
            with self._db.session() as db:
                return db.execute(stmt).rowcount == 1
        return await self._run(_assign)

    async def transition(
        self,
        entry_id: str,
        to_status: QueueStatus,
        from_statuses: Iterable[QueueStatus],
        **values,
    ) -> bool:
        """Move one entry to `to_status` only if it is currently in `from_statuses`."""
        def _transition():
            stmt = (
                update(QueueEntryRow)
                .where(QueueEntryRow.id == entry_id)
                .where(QueueEntryRow.status.in_(_values(from_statuses)))
                .values(status=to_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            with self._db.session() as db:
                return db.execute(stmt).rowcount == 1
        return await self._run(_transition)

    async def transition_many(
        self,
        to_status: QueueStatus,
        from_statuses: Iterable[QueueStatus],
        owner_id: Optional[str] = None,
        waiting_before: Optional[datetime] = None,
        **values,
    ) -> int:
        """Bulk conditional transition. Returns the number of entries moved."""
        def _transition():
            stmt = update(QueueEntryRow).where(QueueEntryRow.status.in_(_values(from_statuses)))
            if owner_id is not None:
                stmt = stmt.where(QueueEntryRow.owner_id == owner_id)
            if waiting_before is not None:
                stmt = stmt.where(QueueEntryRow.wait_start_time < waiting_before)
            stmt = stmt.values(status=to_status.value, **values).execution_options(
                synchronize_session=False
            )
            with self._db.session() as db:
                return db.execute(stmt).rowcount
        return await self._run(_transition)

    async def attach_telephony_call_id(self, entry_id: str, telephony_call_id: str) -> bool:
        """
        Set-once link between an entry and the PSTN leg held in its room.

        False when the entry already has a leg or another entry holds this one.
        """
        def _attach():
            stmt = (
                update(QueueEntryRow)
                .where(QueueEntryRow.id == entry_id)
                .where(QueueEntryRow.telephony_call_id.is_(None))
                .values(telephony_call_id=telephony_call_id)
                .execution_options(synchronize_session=False)
            )
            try:
                with self._db.session() as db:
                    return db.execute(stmt).rowcount == 1
            except IntegrityError:
                logger.info(f"Leg {telephony_call_id} is already bound to another queue entry")
                return False
        return await self._run(_attach)

    async def stats(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        def _stats():
            counts = select(QueueEntryRow.status, func.count()).group_by(QueueEntryRow.status)
            avg_wait = select(func.avg(QueueEntryRow.wait_duration)).where(
                QueueEntryRow.wait_duration.is_not(None)
            )
            if owner_id is not None:
                counts = counts.where(QueueEntryRow.owner_id == owner_id)
                avg_wait = avg_wait.where(QueueEntryRow.owner_id == owner_id)
            with self._db.session() as db:
                by_status = {status: count for status, count in db.execute(counts).all()}
                average = db.execute(avg_wait).scalar()
            return {
                **{status.value: by_status.get(status.value, 0) for status in QueueStatus},
                "avg_wait_time": float(average or 0),
            }
        return await self._run(_stats)


class AgentRepository(_Repository):
    """Agent Directory (read-mostly)"""

    @staticmethod
    def _to_domain(row: AgentRow) -> Agent:
        return Agent(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            phone_number=row.phone_number,
            key_press=row.key_press,
            email=row.email,
            department=row.department,
            is_available=row.is_available,
        )

    @staticmethod
    def _owner_scope(owner_id: Optional[str]):
        return AgentRow.owner_id.is_(None) if owner_id is None else AgentRow.owner_id == owner_id

    async def add(self, agent: Agent) -> Agent:
        """
        Insert an agent.

        Raises:
            ValueError: the transfer key is already taken in this owner scope
        """
        def _add():
            with self._db.session() as db:
                # The unique constraint does not cover NULL owners, so check explicitly
                clash = db.execute(
                    select(AgentRow.id)
                    .where(AgentRow.key_press == agent.key_press)
                    .where(self._owner_scope(agent.owner_id))
                ).first()
                if clash is not None:
                    raise ValueError(f"Key {agent.key_press} is already assigned in this scope")
                db.add(AgentRow(**agent.model_dump()))
            return agent
        return await self._run(_add)

    async def get(self, agent_id: str) -> Optional[Agent]:
        def _get():
            with self._db.session() as db:
                row = db.get(AgentRow, agent_id)
                return self._to_domain(row) if row else None
        return await self._run(_get)

    async def find_available_by_key(self, owner_id: Optional[str], key_press: str) -> Optional[Agent]:
        def _find():
            stmt = (
                select(AgentRow)
                .where(AgentRow.key_press == key_press)
                .where(AgentRow.is_available.is_(True))
            )
            stmt = stmt.where(self._owner_scope(owner_id))
            with self._db.session() as db:
                row = db.execute(stmt).scalars().first()
                return self._to_domain(row) if row else None
        return await self._run(_find)

    async def list_available(self, owner_id: Optional[str] = None) -> List[Agent]:
        def _list():
            stmt = select(AgentRow).where(AgentRow.is_available.is_(True)).order_by(AgentRow.key_press)
            if owner_id is not None:
                stmt = stmt.where(AgentRow.owner_id == owner_id)
            with self._db.session() as db:
                return [self._to_domain(row) for row in db.execute(stmt).scalars().all()]
        return await self._run(_list)
