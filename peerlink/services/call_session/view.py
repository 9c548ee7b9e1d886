"""Call view presentation model."""
import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from peerlink.services.call_session.controller import CallSessionController
from peerlink.services.call_session.errors import CallError
from peerlink.services.call_session.media import GatedTrack
from peerlink.services.call_session.models import CallViewState, ConnectionState

logger = logging.getLogger(__name__)

SinkFactory = Callable[[CallSessionController], Any]

CONTROLS = ("mute", "camera", "speaker", "screen_share", "end")


def format_duration(seconds: int) -> str:
    """Format seconds as MM:SS."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


def default_sink_factory(controller: CallSessionController):
    """Discard remote media, or record it when ``recording_dir`` is set."""
    directory = controller.settings.recording_dir
    if not directory:
        return MediaBlackhole()
    extension = "mp4" if controller.media_kind.has_video else "wav"
    call_id = controller.session.call_id if controller.session else "call"
    path = os.path.join(directory, f"{call_id}-{controller.user_id}.{extension}")
    logger.info(f"[VIEW] Recording remote media to {path}")
    return MediaRecorder(path)


class CallView:
    """Renders a controller's state for one participant.

    Status reads "Calling..." until the connection first comes up, then the
    elapsed time. Remote audio is gated by the speaker toggle before it
    reaches the sink.
    """

    def __init__(
        self,
        controller: CallSessionController,
        participant_name: Optional[str] = None,
        sink_factory: Optional[SinkFactory] = None,
    ):
        self.controller = controller
        self.participant_name = participant_name or controller.peer_id or "User"
        self.state: CallViewState = controller.view_state.model_copy()
        self.notices: List[str] = []
        self.last_duration = 0
        self.sink = None
        self._sink_factory = sink_factory or default_sink_factory
        self._sink_task: Optional[asyncio.Task] = None
        self._remote_audio: List[GatedTrack] = []

        controller.on("update", self._on_update)
        controller.on("notice", self._on_notice)
        controller.on("remote_track", self._on_remote_track)
        controller.on("ended", self._on_ended)

    @property
    def status_text(self) -> str:
        if self.state.ended:
            return "Call ended"
        if self.controller.was_connected:
            return format_duration(self.state.duration)
        return "Calling..."

    @property
    def call_type_label(self) -> str:
        return "Video Call" if self.state.media_kind.has_video else "Voice Call"

    def controls(self) -> List[Dict[str, Any]]:
        """Button states in display order."""
        state = self.state
        has_video = state.media_kind.has_video
        enabled = not state.ended
        buttons = [
            {"name": "mute", "active": state.muted, "label": "Unmute" if state.muted else "Mute"},
        ]
        if has_video:
            buttons.append({
                "name": "camera",
                "active": state.camera_off,
                "label": "Turn camera on" if state.camera_off else "Turn camera off",
            })
        buttons.append({
            "name": "speaker",
            "active": not state.speaker_enabled,
            "label": "Speaker on" if not state.speaker_enabled else "Speaker off",
        })
        if has_video:
            buttons.append({
                "name": "screen_share",
                "active": state.screen_sharing,
                "label": "Stop sharing" if state.screen_sharing else "Share screen",
            })
        buttons.append({"name": "end", "active": False, "label": "End call"})
        for button in buttons:
            button["enabled"] = enabled
        return buttons

    def render(self) -> Dict[str, Any]:
        """Snapshot of everything shown on screen."""
        return {
            "title": self.participant_name,
            "call_type": self.call_type_label,
            "status": self.status_text,
            "notice": self.state.notice,
            "controls": self.controls(),
            "state": self.state.model_dump(mode="json"),
        }

    async def press(self, control: str) -> Dict[str, Any]:
        """Handle a button press and return the new snapshot."""
        if control not in CONTROLS:
            raise ValueError(f"Unknown control: {control}")
        if control == "end":
            await self.controller.end()
        elif control == "mute":
            self.controller.toggle_mute()
        elif control == "camera":
            self.controller.toggle_camera()
        elif control == "speaker":
            self.controller.toggle_speaker()
        elif control == "screen_share":
            self.controller.toggle_screen_share()
        return self.render()

    def _on_update(self, state: CallViewState) -> None:
        self.state = state
        for track in self._remote_audio:
            track.enabled = state.speaker_enabled
        if (
            state.connection_state == ConnectionState.CONNECTED
            and self.sink is not None
            and self._sink_task is None
        ):
            self._sink_task = asyncio.ensure_future(self._start_sink())

    def _on_notice(self, error: CallError) -> None:
        self.notices.append(error.user_message)

    def _on_remote_track(self, track: MediaStreamTrack) -> None:
        if self._sink_task is not None:
            logger.warning(f"[VIEW] Remote {track.kind} track arrived after playback started")
            return
        if self.sink is None:
            self.sink = self._sink_factory(self.controller)
        if track.kind == "audio":
            track = GatedTrack(track)
            track.enabled = self.state.speaker_enabled
            self._remote_audio.append(track)
        self.sink.addTrack(track)

    async def _start_sink(self) -> None:
        try:
            await self.sink.start()
        except Exception as e:
            logger.error(f"[VIEW] Could not start remote media sink: {e}", exc_info=True)

    async def _on_ended(self, duration: int) -> None:
        self.last_duration = duration
        if self._sink_task is None:
            return
        if not self._sink_task.done():
            self._sink_task.cancel()
        try:
            await self.sink.stop()
        except Exception as e:
            logger.error(f"[VIEW] Could not stop remote media sink: {e}", exc_info=True)
