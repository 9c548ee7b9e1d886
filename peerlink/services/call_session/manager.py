"""Call session manager."""
import logging
from typing import Dict, List, Optional, Tuple, Union

from peerlink.core.config import Settings, settings as default_settings
from peerlink.services.call_session.context import CallContext, TransportFactory
from peerlink.services.call_session.controller import CallSessionController
from peerlink.services.call_session.errors import CallError
from peerlink.services.call_session.media import MediaDevices
from peerlink.services.call_session.models import CallRole, MediaKind
from peerlink.services.call_session.view import CallView, SinkFactory
from peerlink.services.datastore.base import DataStore

logger = logging.getLogger(__name__)


class HostedCall:
    """A participant run by this service, with its view."""

    def __init__(self, controller: CallSessionController, view: CallView):
        self.controller = controller
        self.view = view

    @property
    def call_id(self) -> Optional[str]:
        return self.controller.session.call_id if self.controller.session else None

    @property
    def user_id(self) -> str:
        return self.controller.user_id


# Module-level session storage (persists across requests)
_sessions: Dict[Tuple[str, str], HostedCall] = {}


class CallSessionManager:
    """Starts, looks up and ends hosted call participants."""

    def __init__(
        self,
        store: DataStore,
        media: MediaDevices,
        config: Optional[Settings] = None,
        transport_factory: Optional[TransportFactory] = None,
        sink_factory: Optional[SinkFactory] = None,
    ):
        self.store = store
        self.media = media
        self.config = config or default_settings
        self.transport_factory = transport_factory
        self.sink_factory = sink_factory

    def _context(self, user_id: str) -> CallContext:
        return CallContext(
            store=self.store,
            media=self.media,
            user_id=user_id,
            settings=self.config,
            transport_factory=self.transport_factory,
        )

    async def start_session(
        self,
        call_id: str,
        user_id: str,
        role: Union[CallRole, str],
        media_kind: Union[MediaKind, str] = MediaKind.AUDIO,
        peer_id: Optional[str] = None,
    ) -> HostedCall:
        """Create a participant and start its side of the call.

        Raises:
            ValueError: the participant is already in this call
            CallError: the call could not be started
        """
        key = (call_id, user_id)
        existing = _sessions.get(key)
        if existing is not None and not existing.controller.ended:
            raise ValueError(f"User {user_id} is already in call {call_id}")

        controller = CallSessionController(self._context(user_id), media_kind, peer_id=peer_id)
        view = CallView(controller, participant_name=peer_id, sink_factory=self.sink_factory)
        hosted = HostedCall(controller, view)
        _sessions[key] = hosted

        try:
            await controller.start(call_id, role)
        except CallError:
            _sessions.pop(key, None)
            await controller.end()
            raise

        logger.info(f"[SESSION MANAGER] Hosting {user_id} in call {call_id} ({len(_sessions)} active)")
        return hosted

    async def get_session(self, call_id: str, user_id: str) -> Optional[HostedCall]:
        """Get a hosted participant."""
        return _sessions.get((call_id, user_id))

    async def list_sessions(self, call_id: Optional[str] = None) -> List[HostedCall]:
        return [
            hosted for (session_call_id, _), hosted in _sessions.items()
            if call_id is None or session_call_id == call_id
        ]

    async def end_session(self, call_id: str, user_id: str) -> Optional[int]:
        """End and forget a hosted participant. Returns the call duration."""
        hosted = _sessions.pop((call_id, user_id), None)
        if hosted is None:
            return None
        await hosted.controller.end()
        return hosted.controller.final_duration

    async def decline(self, call_id: str, user_id: str) -> None:
        """Refuse a call on behalf of a user who has not joined it."""
        hosted = _sessions.pop((call_id, user_id), None)
        if hosted is not None:
            await hosted.controller.decline(call_id)
            return
        controller = CallSessionController(self._context(user_id))
        await controller.decline(call_id)

    async def end_all(self) -> None:
        """End every hosted participant."""
        for key in list(_sessions):
            hosted = _sessions.pop(key, None)
            if hosted is not None:
                await hosted.controller.end()
