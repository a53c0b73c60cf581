"""Telephony provider webhook endpoint."""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from callbridge.core.config import settings
from callbridge.core.dependencies import get_call_manager
from callbridge.services.calls.events import parse_phone_event
from callbridge.services.calls.manager import CallManager
from callbridge.services.security.webhook import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify_webhook_signature,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/twiml")
async def handle_phone_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    call_manager: CallManager = Depends(get_call_manager),
):
    """
    Receive call lifecycle events.

    The body is verified against the provider's Ed25519 signature before it is
    parsed. The provider gets its 200 immediately; the event is applied in the
    background.
    """
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        raise HTTPException(status_code=400, detail="Expected application/json")

    body = await request.body()
    if settings.telnyx_public_key:
        valid = verify_webhook_signature(
            settings.telnyx_public_key,
            request.headers.get(SIGNATURE_HEADER),
            request.headers.get(TIMESTAMP_HEADER),
            body,
        )
        if not valid:
            logger.warning(
                f"[PHONE WEBHOOK] Rejected unsigned or invalid webhook - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )
            raise HTTPException(status_code=401, detail="Invalid signature")
    else:
        logger.warning("[PHONE WEBHOOK] TELNYX_PUBLIC_KEY not set, skipping signature verification")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    event = parse_phone_event(payload)
    if event is not None:
        background_tasks.add_task(call_manager.handle_phone_event, event)
    return {"status": "ok"}
