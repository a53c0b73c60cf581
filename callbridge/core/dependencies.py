"""Service construction and FastAPI dependencies."""
from typing import Optional

from fastapi import HTTPException
from fastapi.requests import HTTPConnection
from openai import AsyncOpenAI

from callbridge.core.config import EscalationConfig, Settings
from callbridge.db.database import AsyncSessionLocal
from callbridge.services.calls.manager import CallManager
from callbridge.services.calls.service import CallService
from callbridge.services.escalation.evaluator import EscalationEvaluator
from callbridge.services.escalation.judge import OpenAIEscalationJudge
from callbridge.services.terminal.tmux import TmuxResponder


def build_call_service(settings: Settings, config: EscalationConfig) -> CallService:
    """Build the call service and its collaborators from configuration."""
    client: Optional[AsyncOpenAI] = None
    if settings.openai_api_key:
        client = AsyncOpenAI(api_key=settings.openai_api_key)

    judge = None
    if client is not None and config.triggers.use_llm_for_escalation:
        judge = OpenAIEscalationJudge(client, model=settings.llm_model)

    return CallService(
        settings=settings,
        config=config,
        evaluator=EscalationEvaluator(config, judge=judge),
        responder=TmuxResponder(
            default_session=settings.tmux_default_session,
            response_delay_ms=settings.tmux_response_delay_ms,
        ),
        session_factory=AsyncSessionLocal,
        openai_client=client,
    )


def get_call_service(conn: HTTPConnection) -> CallService:
    """Get the application's call service."""
    service = getattr(conn.app.state, "call_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Call service not available")
    return service


def get_call_manager(conn: HTTPConnection) -> CallManager:
    """Get the running call manager."""
    service = get_call_service(conn)
    if service.call_manager is None:
        raise HTTPException(status_code=503, detail="Call subsystem is not running")
    return service.call_manager
