"""
Call Endpoints
Place AI calls, read call records and reconcile them with the AI provider
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ivr_bridge.api.v1.dependencies import ServiceContainer, get_container
from ivr_bridge.domain.models import CallRecord, TERMINAL_CALL_STATUSES, TranscriptTurn
from ivr_bridge.infrastructure.storage.database import StorageError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


class CallCreateRequest(BaseModel):
    """Outbound AI call request"""
    customer_phone: str = Field(..., pattern=r"^\+[1-9]\d{6,14}$", description="E.164 number")
    customer_name: Optional[str] = None
    owner_id: Optional[str] = None
    system_prompt: Optional[str] = None
    script: Optional[str] = None
    first_message: Optional[str] = None
    voice_id: Optional[str] = None
    assistant_overrides: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)


class TranscriptResponse(BaseModel):
    success: bool = True
    call_id: str
    status: str
    transcript: Optional[str] = None
    transcript_turns: List[TranscriptTurn] = Field(default_factory=list)
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    summary: Optional[str] = None
    duration_seconds: int = 0


@router.post("", response_model=CallRecord, status_code=201)
async def create_call(
    body: CallCreateRequest,
    container: ServiceContainer = Depends(get_container),
):
    """
    Create a call record and have the AI provider dial the customer.

    A provider failure still returns the record, with status `failed`.
    """
    conversation_config = body.model_dump(
        include={"system_prompt", "script", "first_message", "voice_id", "assistant_overrides"},
        exclude_none=True,
    )
    try:
        return await container.calls.initiate_call(
            body.customer_phone,
            customer_name=body.customer_name,
            owner_id=body.owner_id,
            conversation_config=conversation_config,
            metadata=body.metadata,
        )
    except StorageError as e:
        logger.error(f"Call creation failed: {e.message}")
        raise HTTPException(status_code=503, detail="Call storage unavailable")


@router.get("/{call_id}", response_model=CallRecord)
async def get_call(
    call_id: str,
    container: ServiceContainer = Depends(get_container),
):
    try:
        call = await container.calls.get(call_id)
    except StorageError as e:
        logger.error(f"Call lookup failed: {e.message}")
        raise HTTPException(status_code=503, detail="Call storage unavailable")
    if call is None:
        raise HTTPException(status_code=404, detail="Call not found")
    return call


@router.post("/sync")
async def sync_calls(
    owner_id: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Re-read every unfinished call from the AI provider."""
    try:
        counts = await container.calls.sync_active_calls(owner_id)
    except StorageError as e:
        logger.error(f"Call sync failed: {e.message}")
        raise HTTPException(status_code=503, detail="Call storage unavailable")
    return {
        "success": True,
        "message": f"Synced {counts['checked']} calls, {counts['updated']} changed",
        **counts,
    }


@router.get("/{call_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    call_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """
    Transcript and recording of a call.

    An unfinished call, or one still missing its transcript, is refreshed
    from the AI provider first.
    """
    try:
        call = await container.calls.get(call_id)
        if call is None:
            raise HTTPException(status_code=404, detail="Call not found")
        if call.status not in TERMINAL_CALL_STATUSES or not call.transcript:
            call = await container.calls.sync_call(call)
    except StorageError as e:
        logger.error(f"Transcript lookup failed: {e.message}")
        raise HTTPException(status_code=503, detail="Call storage unavailable")

    return TranscriptResponse(
        call_id=call.id,
        status=call.status.value,
        transcript=call.transcript,
        transcript_turns=call.transcript_turns,
        recording_url=call.recording_url,
        recording_duration=call.recording_duration,
        summary=call.summary,
        duration_seconds=call.duration_seconds,
    )
