"""
Agent Queue Endpoints
Queue view, race-safe accept, completion and browser-calling tokens for agent consoles
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ivr_bridge.api.v1.dependencies import ServiceContainer, get_container
from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError
from ivr_bridge.domain.models import AcceptOutcome, CompleteOutcome, QueueEntry, agent_identity
from ivr_bridge.infrastructure.storage.database import StorageError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


class QueueItem(BaseModel):
    """Queue entry as shown to agents"""
    id: str
    call_id: Optional[str] = None
    ai_call_id: Optional[str] = None
    telephony_call_id: Optional[str] = None
    customer_phone: str
    customer_name: Optional[str] = None
    source: str
    key_pressed: Optional[str] = None
    status: str
    priority: int
    wait_start_time: datetime
    answer_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    wait_duration: Optional[int] = None
    call_duration: Optional[int] = None
    assigned_agent: Optional[str] = None
    notes: Optional[str] = None
    current_wait_time: int = 0

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueItem":
        return cls(
            **entry.model_dump(mode="json", exclude={"owner_id"}),
            current_wait_time=entry.current_wait_time(),
        )


class QueueListResponse(BaseModel):
    success: bool = True
    queue: List[QueueItem]
    count: int


class AcceptRequest(BaseModel):
    agent_id: str = Field(..., min_length=1)


class AcceptResponse(BaseModel):
    success: bool = True
    message: str = "Call accepted"
    queue_item: QueueItem
    room_id: Optional[str] = None
    ai_call_id: Optional[str] = None


class CompleteRequest(BaseModel):
    notes: Optional[str] = None


class CompleteResponse(BaseModel):
    success: bool = True
    already_final: bool = False
    queue_item: QueueItem


def _storage_unavailable(e: StorageError) -> HTTPException:
    logger.error(f"Queue storage error: {e.message}")
    return HTTPException(status_code=503, detail="Queue storage unavailable")


@router.get("", response_model=QueueListResponse)
async def list_queue(
    owner_id: Optional[str] = Query(None, description="Limit to one owner scope"),
    container: ServiceContainer = Depends(get_container),
):
    """
    Callers waiting for an agent, highest priority first.

    Stale entries are expired before the list is read.
    """
    try:
        entries = await container.queue.list_waiting(owner_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    items = [QueueItem.from_entry(entry) for entry in entries]
    return QueueListResponse(queue=items, count=len(items))


@router.get("/stats")
async def queue_stats(
    owner_id: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        stats = await container.queue.stats(owner_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    return {"success": True, "stats": stats}


@router.post("/cleanup")
async def cleanup_queue(
    owner_id: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Abandon every non-terminal entry (operator escape hatch)."""
    try:
        count = await container.queue.cleanup(owner_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    return {"success": True, "abandoned": count}


@router.get("/token")
async def browser_token(
    agent_id: str = Query(..., min_length=1),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Client SDK token for the agent console to dial into rooms."""
    identity = agent_identity(agent_id)
    try:
        token = container.telephony.issue_browser_token(identity)
    except ProviderCallError as e:
        logger.error(f"Token generation failed for {identity}: {e.message}")
        raise HTTPException(status_code=503, detail="Failed to generate token")
    return {"success": True, "token": token, "identity": identity}


@router.post("/{entry_id}/accept", response_model=AcceptResponse)
async def accept_call(
    entry_id: str,
    body: AcceptRequest,
    container: ServiceContainer = Depends(get_container),
):
    """
    Claim a waiting caller. Exactly one of several concurrent accepts wins;
    the others get 409.
    """
    try:
        result = await container.queue.accept(entry_id, body.agent_id)
    except StorageError as e:
        raise _storage_unavailable(e)

    if result.outcome == AcceptOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Call not found in queue")
    if result.outcome == AcceptOutcome.ALREADY_TAKEN:
        raise HTTPException(status_code=409, detail="Call already answered by another agent")

    return AcceptResponse(
        queue_item=QueueItem.from_entry(result.entry),
        room_id=result.room_id,
        ai_call_id=result.entry.ai_call_id,
    )


@router.post("/{entry_id}/complete", response_model=CompleteResponse)
async def complete_call(
    entry_id: str,
    body: Optional[CompleteRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    try:
        result = await container.queue.complete(entry_id, body.notes if body else None)
    except StorageError as e:
        raise _storage_unavailable(e)

    if result.outcome == CompleteOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Call not found")
    return CompleteResponse(
        already_final=result.outcome == CompleteOutcome.ALREADY_FINAL,
        queue_item=QueueItem.from_entry(result.entry),
    )
