"""Call signal API endpoints."""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, ValidationError

from peerlink.core.config import settings
from peerlink.core.dependencies import get_data_store
from peerlink.db.database import get_db
from peerlink.services.call_session.models import SignalMessage, SignalType
from peerlink.services.call_session.relay import SIGNALS_TABLE, rows_to_replay
from peerlink.services.datastore.base import DataStore
from peerlink.services.persistence.signals import SignalPersistenceService


router = APIRouter()
logger = logging.getLogger(__name__)


class SignalCreate(BaseModel):
    """Signal create request."""
    sender_id: str
    signal_type: SignalType
    signal_data: Dict[str, Any] = {}


class SignalResponse(BaseModel):
    """Signal response model."""
    id: int
    call_id: str
    sender_id: str
    signal_type: str
    signal_data: Optional[Dict[str, Any]] = None
    created_at: str


def _signal_response(row: Dict[str, Any]) -> SignalResponse:
    return SignalResponse(
        id=row["id"],
        call_id=row["call_id"],
        sender_id=row["sender_id"],
        signal_type=row["signal_type"],
        signal_data=row.get("signal_data"),
        created_at=row.get("created_at") or "",
    )


@router.post("/api/calls/{call_id}/signals", response_model=SignalResponse, status_code=201)
async def create_signal(
    call_id: str,
    signal: SignalCreate,
    store: DataStore = Depends(get_data_store),
):
    """Append a signal for a call and notify listeners."""
    logger.info(f"[SIGNALS] {signal.signal_type} for call {call_id} from {signal.sender_id}")
    try:
        message = SignalMessage(
            call_id=call_id,
            sender_id=signal.sender_id,
            signal_type=signal.signal_type,
            payload=signal.signal_data,
        )
        row = await store.insert(SIGNALS_TABLE, message.to_row())
        return _signal_response(row)
    except Exception as e:
        logger.error(
            f"[SIGNALS] Error storing signal - call: {call_id}, Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Error storing signal: {str(e)}")


@router.get("/api/calls/{call_id}/signals", response_model=List[SignalResponse])
async def list_signals(
    call_id: str,
    signal_type: Optional[SignalType] = None,
    after_id: Optional[int] = None,
    limit: int = 500,
    db: AsyncSession = Depends(get_db),
):
    """List signals for a call, oldest first."""
    service = SignalPersistenceService(db)
    signals = await service.list_signals(
        call_id,
        signal_type=signal_type.value if signal_type else None,
        after_id=after_id,
        limit=limit,
    )
    logger.debug(f"[SIGNALS] Listing {len(signals)} signals for call {call_id}")
    return [
        SignalResponse(
            id=signal.id,
            call_id=signal.call_id,
            sender_id=signal.sender_id,
            signal_type=signal.signal_type,
            signal_data=signal.signal_data,
            created_at=signal.created_at.isoformat() if signal.created_at else "",
        )
        for signal in signals
    ]


@router.websocket("/api/calls/{call_id}/signals/ws")
async def signal_feed(
    websocket: WebSocket,
    call_id: str,
    user_id: str = Query(...),
    after_id: Optional[int] = Query(None),
    store: DataStore = Depends(get_data_store),
):
    """Live signal feed for one participant.

    Pushes every signal for the call not sent by ``user_id``. On connect, rows
    stored after ``after_id`` are sent first. Without ``after_id`` the feed
    starts at the newest recent offer from another participant, if any.
    Messages received from the client (``{"signal_type", "signal_data"}``)
    are stored as signals sent by ``user_id``.
    """
    outbox: asyncio.Queue = asyncio.Queue()
    sent_ids: Set[int] = set()

    def _on_insert(row: Dict[str, Any]) -> None:
        if row.get("sender_id") != user_id:
            outbox.put_nowait(row)

    subscription = store.subscribe_to_inserts(SIGNALS_TABLE, {"call_id": call_id}, _on_insert)
    await websocket.accept()
    logger.info(f"[SIGNALS] WebSocket feed opened - call: {call_id}, user: {user_id}")

    try:
        stored = await store.query(SIGNALS_TABLE, {"call_id": call_id})
    except Exception as e:
        logger.error(f"[SIGNALS] Could not load stored signals for call {call_id}: {e}", exc_info=True)
        stored = []
    if after_id is not None:
        backlog = [row for row in stored if row["id"] > after_id]
    else:
        backlog = rows_to_replay(stored, user_id, SignalType.OFFER, settings.signal_replay_window)
    while not outbox.empty():
        backlog.append(outbox.get_nowait())
    for row in sorted(backlog, key=lambda r: r.get("id") or 0):
        if row.get("sender_id") != user_id:
            outbox.put_nowait(row)

    async def _push() -> None:
        while True:
            row = await outbox.get()
            if row.get("id") in sent_ids:
                continue
            sent_ids.add(row.get("id"))
            try:
                response = _signal_response(row)
            except (KeyError, ValidationError) as e:
                logger.warning(f"[SIGNALS] Skipping malformed signal row {row.get('id')}: {e}")
                continue
            await websocket.send_json(response.model_dump())

    def _push_done(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error(
            f"[SIGNALS] WebSocket push failed - call: {call_id}, user: {user_id}",
            exc_info=task.exception(),
        )

    pusher = asyncio.ensure_future(_push())
    pusher.add_done_callback(_push_done)
    try:
        while True:
            data = await websocket.receive_json()
            try:
                message = SignalMessage(
                    call_id=call_id,
                    sender_id=user_id,
                    signal_type=data.get("signal_type"),
                    payload=data.get("signal_data") or {},
                )
            except (ValidationError, AttributeError) as e:
                logger.warning(f"[SIGNALS] Rejected WebSocket message from {user_id}: {e}")
                await websocket.send_json({"error": "invalid signal"})
                continue
            await store.insert(SIGNALS_TABLE, message.to_row())
    except WebSocketDisconnect:
        logger.info(f"[SIGNALS] WebSocket feed closed - call: {call_id}, user: {user_id}")
    finally:
        store.remove_subscription(subscription)
        pusher.cancel()
