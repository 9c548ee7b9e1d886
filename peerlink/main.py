"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging

from peerlink.core.config import settings
from peerlink.core.dependencies import get_data_store, get_media_devices, notifier
from peerlink.core.logging import setup_logging
from peerlink.db.database import init_db
from peerlink.api import health, signals, call_logs, calls, incoming_calls
from peerlink.services.call_session.manager import CallSessionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    logger.info(f"peerlink ready - media backend: {settings.media_backend}")
    yield
    # Shutdown
    manager = CallSessionManager(get_data_store(), get_media_devices(), config=settings)
    await manager.end_all()
    await notifier.close()


app = FastAPI(
    title="peerlink",
    description="Call signaling relay and hosted WebRTC call participants",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(signals.router, tags=["signals"])
app.include_router(call_logs.router, tags=["call-logs"])
app.include_router(calls.router, tags=["calls"])
app.include_router(incoming_calls.router, tags=["incoming-calls"])


@app.get("/")
async def root():
    return {
        "message": "peerlink API",
        "version": "0.1.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("peerlink.main:app", host=settings.host, port=settings.port)
