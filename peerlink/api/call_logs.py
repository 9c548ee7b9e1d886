"""Call history API endpoints."""
import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from peerlink.db.database import get_db
from peerlink.db.models import CallLog
from peerlink.services.persistence.call_logs import CallLogPersistenceService


router = APIRouter()
logger = logging.getLogger(__name__)


class CallLogCreate(BaseModel):
    """Call log create request."""
    call_id: str
    caller_id: str
    receiver_id: Optional[str] = None
    call_type: str = "voice"


class CallLogUpdate(BaseModel):
    """Call log update request."""
    status: str
    duration: Optional[int] = None
    ended_at: Optional[datetime] = None


class CallLogResponse(BaseModel):
    """Call log response model."""
    id: int
    call_id: str
    caller_id: str
    receiver_id: Optional[str] = None
    call_type: str
    status: str
    duration: Optional[int] = None
    started_at: str
    ended_at: Optional[str] = None

    class Config:
        from_attributes = True


def _to_response(call_log: CallLog) -> CallLogResponse:
    return CallLogResponse(
        id=call_log.id,
        call_id=call_log.call_id,
        caller_id=call_log.caller_id,
        receiver_id=call_log.receiver_id,
        call_type=call_log.call_type,
        status=call_log.status,
        duration=call_log.duration,
        started_at=call_log.started_at.isoformat() if call_log.started_at else "",
        ended_at=call_log.ended_at.isoformat() if call_log.ended_at else None,
    )


@router.post("/api/call-logs", response_model=CallLogResponse, status_code=201)
async def create_call_log(
    body: CallLogCreate,
    db: AsyncSession = Depends(get_db),
):
    """Record a call as ringing."""
    if body.call_type not in ("voice", "video"):
        raise HTTPException(status_code=422, detail=f"Unknown call type: {body.call_type}")
    service = CallLogPersistenceService(db)
    call_log = await service.create_call_log(
        call_id=body.call_id,
        caller_id=body.caller_id,
        receiver_id=body.receiver_id,
        call_type=body.call_type,
    )
    logger.info(f"[CALL LOGS] Created call log {call_log.id} for call {body.call_id}")
    return _to_response(call_log)


@router.patch("/api/call-logs/{call_log_id}", response_model=CallLogResponse)
async def update_call_log(
    call_log_id: int,
    body: CallLogUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Record how a call ended."""
    service = CallLogPersistenceService(db)
    try:
        call_log = await service.update_call_log(
            call_log_id, body.status, duration=body.duration, ended_at=body.ended_at
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if call_log is None:
        raise HTTPException(status_code=404, detail="Call log not found")
    logger.info(f"[CALL LOGS] Call log {call_log_id} marked {body.status}")
    return _to_response(call_log)


@router.get("/api/call-logs", response_model=List[CallLogResponse])
async def list_call_logs(
    request: Request,
    user_id: str,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    """Get calls a user placed or received, newest first."""
    logger.info(
        f"[CALL LOGS] History requested - user: {user_id}, limit: {limit}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )
    try:
        service = CallLogPersistenceService(db)
        call_logs = await service.list_call_logs_for_user(user_id, limit=limit)
        return [_to_response(call_log) for call_log in call_logs]
    except Exception as e:
        logger.error(
            f"[CALL LOGS] Error fetching call history - user: {user_id}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Error fetching call history: {str(e)}")
