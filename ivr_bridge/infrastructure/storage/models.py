"""
SQLAlchemy Database Models
Tables for call records, queue entries and agents
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, Float, JSON, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base
from datetime import datetime
import uuid

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class CallRecordRow(Base):
    """One AI call attempt - maps to call_records table"""
    __tablename__ = "call_records"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(64), index=True)
    ai_call_id = Column(String(128), unique=True)
    telephony_call_id = Column(String(128), index=True)
    customer_phone = Column(String(20), nullable=False)
    customer_name = Column(String(255))
    status = Column(String(32), nullable=False, default="queued")
    transcript = Column(Text)
    transcript_turns = Column(JSON, default=list)
    recording_url = Column(Text)
    recording_duration = Column(Integer)
    summary = Column(Text)
    sentiment = Column(String(16))
    key_pressed = Column(String(16))
    transferred_to = Column(String(64))
    transfer_details = Column(JSON)
    cost = Column(Float, default=0.0)
    # "metadata" is reserved on declarative classes
    call_metadata = Column("metadata", JSON, default=dict)
    duration_seconds = Column(Integer, default=0)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class QueueEntryRow(Base):
    """Caller waiting for a human agent - maps to queue_entries table"""
    __tablename__ = "queue_entries"
    __table_args__ = (
        Index("ix_queue_owner_status_wait", "owner_id", "status", "wait_start_time"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    # References only; archiving a call or agent never cascades here
    call_id = Column(String(36), index=True)
    ai_call_id = Column(String(128), index=True)
    # One entry per PSTN leg; NULL until a leg is parked in the room
    telephony_call_id = Column(String(128), unique=True)
    owner_id = Column(String(64))
    customer_phone = Column(String(20), nullable=False, index=True)
    customer_name = Column(String(255))
    source = Column(String(32), nullable=False, default="inbound")
    key_pressed = Column(String(16))
    status = Column(String(32), nullable=False, default="waiting")
    priority = Column(Integer, nullable=False, default=1)
    wait_start_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    answer_time = Column(DateTime)
    end_time = Column(DateTime)
    wait_duration = Column(Integer)
    call_duration = Column(Integer)
    assigned_agent = Column(String(64))
    notes = Column(Text)
    # Caller phone while this entry suppresses duplicate transfer requests
    dedup_key = Column(String(20), unique=True)


class AgentRow(Base):
    """Human agent - maps to agents table"""
    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("owner_id", "key_press", name="uq_agents_owner_key"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(64), index=True)
    name = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=False)
    key_press = Column(String(1), nullable=False)
    email = Column(String(255))
    department = Column(String(255))
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
