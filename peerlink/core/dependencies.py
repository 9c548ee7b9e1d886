"""FastAPI dependencies."""
from fastapi import Depends

from peerlink.core.config import settings
from peerlink.db.database import AsyncSessionLocal
from peerlink.services.call_session.manager import CallSessionManager
from peerlink.services.call_session.media import MediaDevices, create_media_devices
from peerlink.services.datastore.base import DataStore
from peerlink.services.datastore.notifier import InsertNotifier
from peerlink.services.datastore.sql_store import SqlDataStore

# Shared so every request publishes to the same subscribers
notifier = InsertNotifier()


def get_data_store() -> DataStore:
    """Get data store instance."""
    return SqlDataStore(AsyncSessionLocal, notifier)


def get_media_devices() -> MediaDevices:
    """Get capture backend for hosted participants."""
    return create_media_devices(settings)


def get_session_manager(
    store: DataStore = Depends(get_data_store),
    media: MediaDevices = Depends(get_media_devices),
) -> CallSessionManager:
    """Get call session manager instance."""
    return CallSessionManager(store=store, media=media, config=settings)
