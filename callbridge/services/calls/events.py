"""Telephony webhook event parsing."""
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

CALL_INITIATED = "call.initiated"
CALL_ANSWERED = "call.answered"
STREAMING_STARTED = "streaming.started"
STREAMING_STOPPED = "streaming.stopped"
CALL_HANGUP = "call.hangup"


class PhoneEvent(BaseModel):
    """A call lifecycle event posted by the provider."""

    event_type: str
    call_control_id: str
    payload: Dict[str, Any] = {}


def parse_phone_event(body: Any) -> Optional[PhoneEvent]:
    """
    Extract the event from a webhook body of the form
    ``{"data": {"event_type": ..., "payload": {"call_control_id": ...}}}``.

    Returns:
        The parsed event, or None when the body does not carry one
    """
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if not isinstance(data, dict):
        return None
    payload = data.get("payload")
    if not isinstance(payload, dict):
        payload = {}

    event_type = data.get("event_type")
    call_control_id = payload.get("call_control_id")
    if not isinstance(event_type, str) or not isinstance(call_control_id, str):
        logger.debug(f"[PHONE EVENT] Ignoring event without type or call_control_id: {event_type}")
        return None
    return PhoneEvent(event_type=event_type, call_control_id=call_control_id, payload=payload)
