"""Health check endpoint."""
import logging

from fastapi import APIRouter, Request

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint, also probed through the tunnel."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    service = getattr(request.app.state, "call_service", None)
    manager = service.call_manager if service is not None else None
    return {
        "status": "ok",
        "activeCalls": manager.active_call_count if manager is not None else 0,
    }
