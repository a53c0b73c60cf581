"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from callbridge.api import calls, events, health, media
from callbridge.api.webhooks import phone
from callbridge.core.config import load_escalation_config, settings
from callbridge.core.dependencies import build_call_service
from callbridge.core.logging import setup_logging
from callbridge.db.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    escalation_config = load_escalation_config(settings.escalation_config_path)
    call_service = build_call_service(settings, escalation_config)
    await call_service.start()
    app.state.call_service = call_service
    yield
    # Shutdown
    await call_service.shutdown()


app = FastAPI(
    title="callbridge",
    description="Phone-call escalation for unattended terminal assistant sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(phone.router, tags=["webhooks"])
app.include_router(media.router, tags=["media"])
app.include_router(calls.router, tags=["calls"])
app.include_router(events.router, tags=["events"])


def run() -> None:
    """Console entry point."""
    uvicorn.run("callbridge.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
