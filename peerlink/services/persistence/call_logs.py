"""Call log persistence service."""
from datetime import datetime
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc, or_

from peerlink.db.models import CallLog

CALL_LOG_STATUSES = ["ringing", "completed", "missed", "declined", "failed"]


class CallLogPersistenceService:
    """Service for persisting call history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_call_log(
        self,
        call_id: str,
        caller_id: str,
        receiver_id: Optional[str] = None,
        call_type: str = "voice",
    ) -> CallLog:
        """Create a new call log entry."""
        call_log = CallLog(
            call_id=call_id,
            caller_id=caller_id,
            receiver_id=receiver_id,
            call_type=call_type,
            status="ringing",
        )
        self.db.add(call_log)
        await self.db.commit()
        await self.db.refresh(call_log)
        return call_log

    async def get_call_log(self, call_log_id: int) -> Optional[CallLog]:
        """Get call log by ID."""
        result = await self.db.execute(
            select(CallLog).where(CallLog.id == call_log_id)
        )
        return result.scalar_one_or_none()

    async def update_call_log(
        self,
        call_log_id: int,
        status: str,
        duration: Optional[int] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[CallLog]:
        """Update call log status, duration and end time."""
        if status not in CALL_LOG_STATUSES:
            raise ValueError(f"Unknown call status: {status}")

        call_log = await self.get_call_log(call_log_id)
        if call_log:
            call_log.status = status
            if duration is not None:
                call_log.duration = duration
            call_log.ended_at = ended_at or datetime.utcnow()
            await self.db.commit()
            await self.db.refresh(call_log)
        return call_log

    async def list_call_logs_for_user(self, user_id: str, limit: int = 100) -> List[CallLog]:
        """List calls the user placed or received, newest first."""
        result = await self.db.execute(
            select(CallLog)
            .where(or_(CallLog.caller_id == user_id, CallLog.receiver_id == user_id))
            .order_by(desc(CallLog.started_at), desc(CallLog.id))
            .limit(limit)
        )
        return list(result.scalars().all())
