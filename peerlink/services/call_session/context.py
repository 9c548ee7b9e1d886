"""Per-participant call context."""
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from peerlink.core.config import Settings, settings as default_settings
from peerlink.services.call_session.media import MediaDevices
from peerlink.services.datastore.base import DataStore

# Called as factory(configuration=RTCConfiguration) to build the transport
TransportFactory = Callable[..., Any]


@dataclass
class CallContext:
    """Everything a controller needs from its surroundings.

    Passed explicitly to each controller so several participants can share
    one process without global client state.
    """

    store: DataStore
    media: MediaDevices
    user_id: str
    settings: Settings = field(default_factory=lambda: default_settings)
    transport_factory: Optional[TransportFactory] = None
