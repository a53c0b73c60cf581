"""Media stream WebSocket endpoint."""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, status

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/media-stream")
async def media_stream(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Bidirectional call audio.

    The socket is closed with a policy-violation code before it is accepted
    when the token does not belong to an active call. Binary frames are
    ignored; the provider sends JSON text frames only.
    """
    service = getattr(websocket.app.state, "call_service", None)
    call_manager = service.call_manager if service is not None else None
    if call_manager is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    call_id = call_manager.authorize_media_socket(token)
    if call_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    if not call_manager.attach_media_socket(call_id, websocket):
        logger.warning(f"[MEDIA] {call_id} ended before its socket attached")
        await websocket.close()
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"[MEDIA] Socket disconnected for {call_id}")
                break
            text = message.get("text")
            if text is None:
                logger.debug(f"[MEDIA] Ignoring binary frame on {call_id}")
                continue
            await call_manager.handle_media_message(call_id, text)
    finally:
        call_manager.detach_media_socket(call_id, websocket)
