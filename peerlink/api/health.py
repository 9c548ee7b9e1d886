"""Health check endpoint."""
import logging
from fastapi import APIRouter, Request

from peerlink.core.dependencies import notifier
from peerlink.services.call_session import manager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    return {
        "status": "healthy",
        "hosted_sessions": len(manager._sessions),
        "signal_subscriptions": notifier.subscription_count,
    }
