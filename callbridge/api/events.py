"""Assistant hook endpoint."""
import logging

from fastapi import APIRouter, Request

from callbridge.services.escalation.models import IncomingEvent, ServiceResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/events", response_model=ServiceResponse)
async def handle_event(event: IncomingEvent, request: Request):
    """
    Receive an event from the assistant's hook.

    The hook shows its own notification whenever ``handled`` is false.
    """
    service = getattr(request.app.state, "call_service", None)
    if service is None:
        logger.warning(f"[EVENTS] {event.event_type} received before startup completed")
        return ServiceResponse(handled=False, action="notify", reason="Service not ready")
    return await service.handle_event(event)
