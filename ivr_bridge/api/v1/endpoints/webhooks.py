"""
Webhooks API Endpoints
Handles incoming webhooks from the AI call provider (Vapi) and the telephony provider (Vonage)

Providers retry on non-2xx responses, so storage failures are logged and
answered with 200 and a degraded body instead of an error.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from ivr_bridge.api.v1.dependencies import ServiceContainer, get_container
from ivr_bridge.infrastructure.ai.vapi_events import parse_vapi_event
from ivr_bridge.infrastructure.storage.database import StorageError
from ivr_bridge.infrastructure.telephony.vonage_events import (
    WebhookParseError,
    parse_answer,
    parse_dtmf,
    parse_queue_result,
    parse_recording,
    parse_status,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _payload(request: Request) -> Dict[str, Any]:
    """Query params merged with the JSON body, whichever the provider used."""
    data: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
        if isinstance(body, dict):
            data.update(body)
    return data


@router.post("/ai")
async def ai_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    AI provider server messages: lifecycle, transcripts, transfer signals
    and assistant requests. The body returned is what the provider acts on.
    """
    body = await _payload(request)
    event = None
    try:
        event = parse_vapi_event(body)
        return await container.ingress.handle_ai_event(event)
    except ValidationError as e:
        logger.warning(f"Malformed AI webhook ignored: {e}")
        return {"received": True}
    except StorageError as e:
        logger.error(f"AI webhook degraded, storage unavailable: {e.message}")
        return container.ingress.fallback_ai_response(event)


@router.api_route("/telephony/answer", methods=["GET", "POST"])
async def telephony_answer(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Answer webhook for inbound PSTN legs and agent browser legs.

    Returns NCCO: callers are parked in their room, assigned agents join it.
    """
    data = await _payload(request)
    try:
        event = parse_answer(data)
    except (WebhookParseError, ValidationError) as e:
        logger.warning(f"Answer webhook without a usable leg: {e}")
        return container.ingress.fallback_answer()

    logger.info(
        f"Answer webhook: leg={event.telephony_call_id} from={event.from_number or event.from_user} "
        f"to={event.to_number}"
    )
    try:
        return await container.ingress.handle_answer(event)
    except StorageError as e:
        logger.error(f"Answer webhook degraded, storage unavailable: {e.message}")
        return container.ingress.fallback_answer()


@router.api_route("/telephony/event", methods=["GET", "POST"])
async def telephony_event(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Call status changes (started, ringing, answered, completed, busy, ...)."""
    data = await _payload(request)
    if not data.get("status"):
        # Conversation and DTMF events share this URL; nothing to do for them
        return {"received": True}
    try:
        event = parse_status(data)
        return await container.ingress.handle_telephony_status(event)
    except (WebhookParseError, ValidationError) as e:
        logger.warning(f"Status webhook ignored: {e}")
    except StorageError as e:
        logger.error(f"Status webhook dropped, storage unavailable: {e.message}")
    return {"received": True}


@router.post("/telephony/input")
async def telephony_input(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Keypad input collected by an NCCO `input` action.

    Returns the leg's next NCCO, usually a forward to the chosen agent.
    """
    data = await _payload(request)
    try:
        transfer = parse_dtmf(data)
    except (WebhookParseError, ValidationError) as e:
        logger.warning(f"Input webhook without a usable leg: {e}")
        return container.ingress.fallback_answer()
    try:
        return await container.ingress.handle_telephony_dtmf(transfer)
    except StorageError as e:
        logger.error(f"Input webhook degraded, storage unavailable: {e.message}")
        return container.ingress.fallback_answer()


@router.post("/telephony/recording")
async def telephony_recording(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    data = await _payload(request)
    try:
        event = parse_recording(data)
        return await container.ingress.handle_recording(event)
    except (WebhookParseError, ValidationError) as e:
        logger.warning(f"Recording webhook ignored: {e}")
    except StorageError as e:
        logger.error(f"Recording webhook dropped, storage unavailable: {e.message}")
    return {"received": True}


@router.post("/telephony/queue-result")
async def telephony_queue_result(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Caller left the queue room, answered or not."""
    data = await _payload(request)
    try:
        event = parse_queue_result(data)
        return await container.ingress.handle_queue_result(event)
    except (WebhookParseError, ValidationError) as e:
        logger.warning(f"Queue result webhook ignored: {e}")
    except StorageError as e:
        logger.error(f"Queue result webhook dropped, storage unavailable: {e.message}")
    return {"received": True}
