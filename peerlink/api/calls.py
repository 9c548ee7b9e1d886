"""Hosted call session API endpoints."""
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from peerlink.core.dependencies import get_session_manager
from peerlink.services.call_session.errors import (
    CallError,
    MediaAccessError,
    NegotiationError,
    SignalDeliveryError,
)
from peerlink.services.call_session.manager import CallSessionManager, HostedCall
from peerlink.services.call_session.models import CallRole, MediaKind


router = APIRouter()
logger = logging.getLogger(__name__)


class SessionCreate(BaseModel):
    """Hosted session start request."""
    user_id: str
    role: CallRole
    media_kind: MediaKind = MediaKind.AUDIO
    peer_id: Optional[str] = None


class DeclineRequest(BaseModel):
    """Decline request."""
    user_id: str


def _status_for(error: CallError) -> int:
    if isinstance(error, MediaAccessError):
        return 422
    if isinstance(error, NegotiationError):
        return 502
    if isinstance(error, SignalDeliveryError):
        return 503
    return 500


def _snapshot(hosted: HostedCall) -> Dict[str, Any]:
    snapshot = hosted.view.render()
    snapshot["user_id"] = hosted.user_id
    snapshot["call_id"] = hosted.call_id
    return snapshot


async def _require_session(
    manager: CallSessionManager, call_id: str, user_id: str
) -> HostedCall:
    hosted = await manager.get_session(call_id, user_id)
    if hosted is None:
        raise HTTPException(status_code=404, detail="Call session not found")
    return hosted


@router.post("/api/calls/{call_id}/sessions", status_code=201)
async def start_session(
    call_id: str,
    body: SessionCreate,
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Join a call as a hosted participant."""
    logger.info(
        f"[CALLS] Start requested - call: {call_id}, user: {body.user_id}, "
        f"role: {body.role}, media: {body.media_kind}"
    )
    try:
        hosted = await manager.start_session(
            call_id, body.user_id, body.role, body.media_kind, peer_id=body.peer_id
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CallError as e:
        logger.error(
            f"[CALLS] Could not start call {call_id} for {body.user_id}: {type(e).__name__}: {e}",
            exc_info=True,
        )
        raise HTTPException(status_code=_status_for(e), detail=e.user_message)
    return _snapshot(hosted)


@router.get("/api/calls/{call_id}/sessions/{user_id}")
async def get_session(
    call_id: str,
    user_id: str,
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Current view of a hosted participant."""
    hosted = await _require_session(manager, call_id, user_id)
    return _snapshot(hosted)


@router.post("/api/calls/{call_id}/sessions/{user_id}/toggle/{control}")
async def press_control(
    call_id: str,
    user_id: str,
    control: str,
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Press a call control (mute, camera, speaker, screen_share, end)."""
    hosted = await _require_session(manager, call_id, user_id)
    try:
        await hosted.view.press(control)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[CALLS] {user_id} pressed {control} in call {call_id}")
    return _snapshot(hosted)


@router.delete("/api/calls/{call_id}/sessions/{user_id}")
async def end_session(
    call_id: str,
    user_id: str,
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Hang up a hosted participant."""
    duration = await manager.end_session(call_id, user_id)
    if duration is None:
        raise HTTPException(status_code=404, detail="Call session not found")
    return {"call_id": call_id, "user_id": user_id, "duration": duration}


@router.post("/api/calls/{call_id}/decline")
async def decline_call(
    call_id: str,
    body: DeclineRequest,
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Refuse an incoming call."""
    try:
        await manager.decline(call_id, body.user_id)
    except SignalDeliveryError as e:
        raise HTTPException(status_code=503, detail=e.user_message)
    return {"call_id": call_id, "user_id": body.user_id, "declined": True}
