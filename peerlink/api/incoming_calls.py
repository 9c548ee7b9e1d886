"""Incoming call notification endpoints."""
import asyncio
import logging
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from peerlink.core.config import settings
from peerlink.core.dependencies import get_data_store, get_session_manager
from peerlink.services.call_session.errors import SignalDeliveryError
from peerlink.services.call_session.incoming import IncomingCallWatcher
from peerlink.services.call_session.manager import CallSessionManager
from peerlink.services.datastore.base import DataStore


router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/api/users/{user_id}/incoming-calls")
async def incoming_call_feed(
    websocket: WebSocket,
    user_id: str,
    store: DataStore = Depends(get_data_store),
    manager: CallSessionManager = Depends(get_session_manager),
):
    """Ringing calls for one user.

    Pushes ``{call_id, caller_id, call_type, timestamp}`` for each call
    addressed to ``user_id``, starting with calls still ringing. The client
    may answer ``{"action": "decline", "call_id": ...}`` to refuse one.
    """
    outbox: asyncio.Queue = asyncio.Queue()
    watcher = IncomingCallWatcher(store, user_id, outbox.put_nowait, max_age=settings.signal_replay_window)
    watcher.start()
    await websocket.accept()
    logger.info(f"[INCOMING] WebSocket feed opened - user: {user_id}")

    try:
        await watcher.announce_ringing()
    except Exception as e:
        logger.error(f"[INCOMING] Could not load ringing calls for {user_id}: {e}", exc_info=True)

    async def _push() -> None:
        while True:
            call = await outbox.get()
            await websocket.send_json(call.model_dump())

    def _push_done(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error(f"[INCOMING] WebSocket push failed - user: {user_id}", exc_info=task.exception())

    pusher = asyncio.ensure_future(_push())
    pusher.add_done_callback(_push_done)
    try:
        while True:
            data = await websocket.receive_json()
            call_id = data.get("call_id") if isinstance(data, dict) else None
            if not isinstance(data, dict) or data.get("action") != "decline" or not isinstance(call_id, str):
                await websocket.send_json({"error": "invalid request"})
                continue
            try:
                await manager.decline(call_id, user_id)
            except SignalDeliveryError as e:
                await websocket.send_json({"call_id": call_id, "error": e.user_message})
                continue
            await websocket.send_json({"call_id": call_id, "declined": True})
    except WebSocketDisconnect:
        logger.info(f"[INCOMING] WebSocket feed closed - user: {user_id}")
    finally:
        watcher.stop()
        pusher.cancel()
