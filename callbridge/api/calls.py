"""Call control and status endpoints."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from callbridge.core.dependencies import get_call_service
from callbridge.core.exceptions import CallError, CallInProgressError, ProviderError
from callbridge.db.database import get_db
from callbridge.services.calls.service import CallService
from callbridge.services.persistence.calls import CallPersistenceService

router = APIRouter()
logger = logging.getLogger(__name__)


class TestCallRequest(BaseModel):
    """Test call request."""

    message: Optional[str] = None


class ConversationCallRequest(BaseModel):
    """Conversation call request. Session and window are required."""

    session: Optional[str] = None
    window: Optional[str] = None
    pane: Optional[str] = None


class CallRecordResponse(BaseModel):
    """Call record response model."""

    id: int
    call_id: str
    kind: str
    session_key: Optional[str] = None
    event_type: Optional[str] = None
    started_at: str
    ended_at: Optional[str] = None
    status: str
    transcript: Optional[str] = None
    final_response: Optional[str] = None


@router.get("/call-status.json")
async def call_status(request: Request):
    """Active calls, for the log viewer."""
    service = getattr(request.app.state, "call_service", None)
    manager = service.call_manager if service is not None else None
    return {"activeCalls": manager.snapshot() if manager is not None else []}


@router.post("/test-call")
async def test_call(
    body: Optional[TestCallRequest] = None,
    call_service: CallService = Depends(get_call_service),
):
    """Place a test call and return what the user said."""
    if not call_service.is_running:
        return JSONResponse(status_code=503, content={"success": False, "error": "Call subsystem is not running"})
    message = body.message if body else None
    logger.info("[TEST CALL] Initiating test call")
    try:
        call_id, response = await call_service.test_call(message)
    except (CallError, ProviderError) as e:
        logger.error(f"[TEST CALL] Failed: {type(e).__name__}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "callId": call_id, "response": response}


@router.post("/conversation-call")
async def conversation_call(
    body: ConversationCallRequest,
    call_service: CallService = Depends(get_call_service),
):
    """Start a conversation call about a tmux window."""
    if not body.session or not body.window:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Missing required fields: session, window"},
        )
    if call_service.conversation_service is None:
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Conversation service not available"},
        )

    logger.info(f"[CONVERSATION CALL] Starting for {body.session}:{body.window}")
    try:
        call_id = await call_service.start_conversation_call(body.session, body.window, body.pane)
    except CallInProgressError as e:
        return JSONResponse(status_code=409, content={"success": False, "error": str(e)})
    except (CallError, ProviderError) as e:
        logger.error(f"[CONVERSATION CALL] Failed: {type(e).__name__}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "callId": call_id, "message": "Conversation call started"}


@router.get("/api/calls/history", response_model=List[CallRecordResponse])
async def call_history(limit: int = 100, db: AsyncSession = Depends(get_db)):
    """Recent call records, newest first."""
    try:
        records = await CallPersistenceService(db).list_recent_calls(limit)
    except Exception as e:
        logger.error(f"[CALL HISTORY] Error loading history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error loading call history")

    return [
        CallRecordResponse(
            id=r.id,
            call_id=r.call_id,
            kind=r.kind,
            session_key=r.session_key,
            event_type=r.event_type,
            started_at=r.started_at.isoformat(),
            ended_at=r.ended_at.isoformat() if r.ended_at else None,
            status=r.status,
            transcript=r.transcript,
            final_response=r.final_response,
        )
        for r in records
    ]
