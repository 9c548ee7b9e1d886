"""Call signal persistence service."""
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from peerlink.db.models import CallSignal


class SignalPersistenceService:
    """Service for persisting signaling rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_signal(
        self,
        call_id: str,
        sender_id: str,
        signal_type: str,
        signal_data: Optional[Dict[str, Any]] = None,
    ) -> CallSignal:
        """Append a signal row."""
        signal = CallSignal(
            call_id=call_id,
            sender_id=sender_id,
            signal_type=signal_type,
            signal_data=signal_data,
        )
        self.db.add(signal)
        await self.db.commit()
        await self.db.refresh(signal)
        return signal

    async def list_signals(
        self,
        call_id: str,
        signal_type: Optional[str] = None,
        after_id: Optional[int] = None,
        limit: int = 500,
    ) -> List[CallSignal]:
        """List signals for a call in insertion order."""
        query = select(CallSignal).where(CallSignal.call_id == call_id)
        if signal_type:
            query = query.where(CallSignal.signal_type == signal_type)
        if after_id is not None:
            query = query.where(CallSignal.id > after_id)
        result = await self.db.execute(query.order_by(CallSignal.id).limit(limit))
        return list(result.scalars().all())
