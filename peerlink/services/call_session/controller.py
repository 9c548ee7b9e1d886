"""Call session controller."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

from aiortc import MediaStreamTrack
from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from peerlink.services.call_session.context import CallContext
from peerlink.services.call_session.errors import (
    CallError,
    ConnectionLostError,
    MediaAccessError,
    NegotiationError,
    SignalDeliveryError,
)
from peerlink.services.call_session.media import LocalMediaStream, LocalTrack
from peerlink.services.call_session.models import (
    CallRole,
    CallSession,
    CallViewState,
    ConnectionState,
    MediaKind,
    SignalMessage,
    SignalType,
)
from peerlink.services.call_session.peer import PeerConnectionManager
from peerlink.services.call_session.relay import SignalRelayClient

logger = logging.getLogger(__name__)

CALL_LOGS_TABLE = "call_logs"


class CallSessionController(AsyncIOEventEmitter):
    """Runs one participant's side of a voice or video call.

    Owns the local media, the peer connection and the relay subscription,
    and tears all three down through ``end()``.

    Events:
        update(state: CallViewState): any observable state changed
        notice(error: CallError): something the user should be told about
        remote_track(track: MediaStreamTrack)
        connected(): the connection came up for the first time
        ended(duration: int)
    """

    def __init__(
        self,
        context: CallContext,
        media_kind: Union[MediaKind, str] = MediaKind.AUDIO,
        peer_id: Optional[str] = None,
    ):
        super().__init__()
        self.context = context
        self.settings = context.settings
        self.media_kind = MediaKind(media_kind)
        self.peer_id = peer_id
        self.relay = SignalRelayClient(context)
        self.peer: Optional[PeerConnectionManager] = None
        self.session: Optional[CallSession] = None
        self.local_stream: Optional[LocalMediaStream] = None
        self.remote_tracks: List[MediaStreamTrack] = []
        self.view_state = CallViewState(media_kind=self.media_kind)
        self.call_log_id: Optional[int] = None
        self.final_duration = 0

        self._camera_track: Optional[LocalTrack] = None
        self._screen_stream: Optional[LocalMediaStream] = None
        self._description_sent = False
        self._outgoing_candidates: List[Dict[str, Any]] = []
        self._offer_handled = False
        self._answer_handled = False
        self._was_connected = False
        self._start_failed = False
        self._ended = False
        self._duration_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        return self.session.state if self.session else ConnectionState.NEW

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def was_connected(self) -> bool:
        return self._was_connected

    @property
    def user_id(self) -> str:
        return self.context.user_id

    # Lifecycle

    async def start(self, call_id: str, role: Union[CallRole, str]) -> None:
        """Acquire media, open the connection and, as initiator, send the offer.

        Raises:
            MediaAccessError: microphone or camera unavailable
            NegotiationError: the peer connection could not be built
            SignalDeliveryError: the offer could not be sent
        """
        if self.session is not None:
            raise RuntimeError(f"Call {self.session.call_id} already started")
        role = CallRole(role)
        self.session = CallSession(call_id=call_id, local_role=role)
        self.view_state.call_id = call_id
        self.view_state.role = role
        logger.info(f"[CALL] Starting {self.media_kind} call {call_id} as {role} ({self.user_id})")
        self._update_view()

        try:
            stream = await self.context.media.get_user_media(
                audio=True, video=self.media_kind.has_video
            )
        except MediaAccessError as e:
            if self._ended:
                return
            self._fail_start(e)
            raise
        if self._ended:
            stream.stop()
            return

        self.local_stream = stream
        for track in stream.get_audio_tracks():
            track.enabled = not self.view_state.muted
        video_tracks = stream.get_video_tracks()
        if video_tracks:
            self._camera_track = video_tracks[0]
            self._camera_track.enabled = not self.view_state.camera_off

        peer = PeerConnectionManager(self.context.transport_factory)
        try:
            peer.initialize({"ice_servers": self.settings.ice_server_urls})
        except NegotiationError as e:
            stream.stop()
            self.local_stream = None
            self._fail_start(e)
            raise
        self.peer = peer
        peer.on("connectionstatechange", self._on_connection_state)
        peer.on("icecandidate", self._on_local_candidate)
        peer.on_remote_track(self._on_remote_track)
        peer.attach_local_stream(stream)
        self.relay.subscribe(call_id, self.handle_incoming_signal)

        if role != CallRole.INITIATOR:
            try:
                await self.relay.replay(SignalType.OFFER, self.settings.signal_replay_window)
            except Exception as e:
                logger.error(f"[CALL] Could not load stored signals for call {call_id}: {e}", exc_info=True)
            return

        await self._create_call_log()
        try:
            if self._ended:
                return
            offer = await peer.create_offer()
            if self._ended:
                return
            offer["video"] = self.media_kind.has_video
            await self._send_description(SignalType.OFFER, offer)
            logger.info(f"[CALL] Offer sent for call {call_id}")
        except (NegotiationError, SignalDeliveryError) as e:
            if self._ended:
                return
            self._fail_start(e)
            raise

    def _fail_start(self, error: CallError) -> None:
        logger.error(f"[CALL] Could not start call {self.session.call_id}: {error}")
        self._start_failed = True
        self._notify(error)
        self._close_task = asyncio.ensure_future(self._close_after_delay())

    async def _close_after_delay(self) -> None:
        await asyncio.sleep(self.settings.error_close_delay)
        await self.end()

    async def end(self, status: Optional[str] = None) -> None:
        """Tear the call down. Safe to call repeatedly and while ``start()`` runs.

        Order: stop local tracks, close the peer connection, unsubscribe the
        relay, stop the duration timer, then record the call log.
        """
        if self._ended:
            return
        self._ended = True
        call_id = self.session.call_id if self.session else None
        logger.info(f"[CALL] Ending call {call_id} ({self.user_id})")

        current = asyncio.current_task()
        for task in [self._close_task, self._duration_task, *self._tasks]:
            if task is not None and task is not current and not task.done():
                task.cancel()

        screen_stream, self._screen_stream = self._screen_stream, None
        if screen_stream is not None:
            screen_stream.stop()
        if self.local_stream is not None:
            self.local_stream.stop()
        if self.peer is not None:
            try:
                await self.peer.close()
            except Exception as e:
                logger.error(f"[CALL] Error closing peer connection for {call_id}: {e}", exc_info=True)
        self.relay.unsubscribe()

        self.final_duration = self.view_state.duration
        self.view_state.duration = 0
        await self._finish_call_log(status)

        self.view_state.screen_sharing = False
        self.view_state.connection_state = self.state
        self.view_state.ended = True
        self.emit("ended", self.final_duration)
        self._update_view()

    async def decline(self, call_id: Optional[str] = None) -> None:
        """Refuse an incoming call."""
        call_id = call_id or (self.session.call_id if self.session else None)
        if call_id is None:
            raise ValueError("No call to decline")
        await self.relay.send(call_id, self.user_id, SignalType.DECLINE, {})
        logger.info(f"[CALL] Declined call {call_id} ({self.user_id})")
        if self.session is not None:
            await self.end(status="declined")

    # Signaling

    async def handle_incoming_signal(self, message: Union[SignalMessage, Dict[str, Any]]) -> None:
        """Apply one signal from the other participant.

        Malformed or out-of-order signals are logged and dropped.
        """
        if not isinstance(message, SignalMessage):
            try:
                message = SignalMessage.from_row(message)
            except ValidationError as e:
                logger.warning(f"[CALL] Dropping malformed signal: {e}")
                return
        if message.sender_id == self.user_id:
            return
        if self._ended or self.session is None or self.peer is None:
            logger.debug(f"[CALL] No active call for {message.signal_type} from {message.sender_id}")
            return
        if message.call_id != self.session.call_id:
            return

        try:
            if message.signal_type == SignalType.OFFER:
                await self._handle_offer(message)
            elif message.signal_type == SignalType.ANSWER:
                await self._handle_answer(message)
            elif message.signal_type == SignalType.ICE_CANDIDATE:
                await self.peer.add_ice_candidate(message.payload)
            elif message.signal_type == SignalType.DECLINE:
                logger.info(f"[CALL] Call {message.call_id} declined by {message.sender_id}")
                self._notify(CallError("Call declined"))
                await self.end(status="declined")
        except SignalDeliveryError as e:
            if not self._ended:
                self._notify(e)
        except CallError as e:
            if not self._ended:
                logger.warning(
                    f"[CALL] Ignoring {message.signal_type} from {message.sender_id}: {e}"
                )

    async def _handle_offer(self, message: SignalMessage) -> None:
        if self.session.local_role != CallRole.RECEIVER or self._offer_handled:
            logger.warning(f"[CALL] Unexpected offer from {message.sender_id}")
            return
        self._offer_handled = True
        if bool(message.payload.get("video")) != self.media_kind.has_video:
            logger.info(
                f"[CALL] Offer video={message.payload.get('video')} but local call is {self.media_kind}"
            )
        try:
            await self.peer.set_remote_description(message.payload)
        except NegotiationError:
            self._offer_handled = False
            raise
        answer = await self.peer.create_answer()
        if self._ended:
            return
        await self._send_description(SignalType.ANSWER, answer)
        logger.info(f"[CALL] Answer sent for call {message.call_id}")

    async def _handle_answer(self, message: SignalMessage) -> None:
        if self.session.local_role != CallRole.INITIATOR or self._answer_handled:
            logger.warning(f"[CALL] Unexpected answer from {message.sender_id}")
            return
        self._answer_handled = True
        try:
            await self.peer.set_remote_description(message.payload)
        except NegotiationError:
            self._answer_handled = False
            raise

    async def _send(self, signal_type: SignalType, payload: Dict[str, Any]):
        return await self.relay.send(self.session.call_id, self.user_id, signal_type, payload)

    async def _send_description(self, signal_type: SignalType, description: Dict[str, Any]) -> None:
        await self._send(signal_type, description)
        self._description_sent = True
        pending, self._outgoing_candidates = self._outgoing_candidates, []
        for candidate in pending:
            self._spawn(self._send_candidate(candidate))

    def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self._ended:
            return
        # Candidates go out after the description they belong to
        if not self._description_sent:
            self._outgoing_candidates.append(candidate)
            return
        self._spawn(self._send_candidate(candidate))

    async def _send_candidate(self, candidate: Dict[str, Any]) -> None:
        try:
            await self._send(SignalType.ICE_CANDIDATE, candidate)
        except SignalDeliveryError as e:
            logger.warning(f"[CALL] Dropped ICE candidate: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Connection events

    def _on_connection_state(self, state: ConnectionState) -> None:
        if self.session is None:
            return
        self.session.state = state
        self.view_state.connection_state = state

        if state == ConnectionState.CONNECTED and not self._was_connected:
            self._was_connected = True
            self.session.started_at = datetime.utcnow()
            self._duration_task = asyncio.ensure_future(self._tick_duration())
            logger.info(f"[CALL] Call {self.session.call_id} connected ({self.user_id})")
            self.emit("connected")
        elif (
            state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED)
            and self._was_connected
            and not self._ended
        ):
            logger.warning(f"[CALL] Call {self.session.call_id} connection {state}")
            self._notify(ConnectionLostError(state.value))
            return
        self._update_view()

    async def _tick_duration(self) -> None:
        while True:
            await asyncio.sleep(self.settings.duration_tick_interval)
            self.view_state.duration += 1
            self._update_view()

    def _on_remote_track(self, track: MediaStreamTrack) -> None:
        self.remote_tracks.append(track)
        self.emit("remote_track", track)

    # Controls

    def toggle_mute(self) -> bool:
        """Flip the microphone. Returns True when muted."""
        muted = not self.view_state.muted
        if self.local_stream is not None:
            for track in self.local_stream.get_audio_tracks():
                track.enabled = not muted
        self.view_state.muted = muted
        self._update_view()
        return muted

    def toggle_camera(self) -> bool:
        """Flip the camera. Returns True when the camera is off."""
        if not self.media_kind.has_video:
            return False
        camera_off = not self.view_state.camera_off
        if self._camera_track is not None:
            self._camera_track.enabled = not camera_off
        self.view_state.camera_off = camera_off
        self._update_view()
        return camera_off

    def toggle_speaker(self) -> bool:
        """Flip remote audio playback. Returns True when the speaker is on."""
        self.view_state.speaker_enabled = not self.view_state.speaker_enabled
        self._update_view()
        return self.view_state.speaker_enabled

    def toggle_screen_share(self) -> bool:
        """Start or stop sharing the screen in place of the camera.

        Display capture is acquired in the background; the returned flag is
        the state shown to the user right away.
        """
        if not self.media_kind.has_video:
            return False
        if self.view_state.screen_sharing:
            self._stop_screen_share()
            return False
        if self.peer is None or self._ended:
            return False
        self.view_state.screen_sharing = True
        self._update_view()
        self._spawn(self._start_screen_share())
        return True

    async def _start_screen_share(self) -> None:
        try:
            stream = await self.context.media.get_display_media()
        except MediaAccessError as e:
            if not self._ended:
                self.view_state.screen_sharing = False
                self._notify(e)
            return
        if self._ended or not self.view_state.screen_sharing:
            stream.stop()
            return

        track = stream.get_video_tracks()[0]
        try:
            self.peer.replace_outbound_video_track(track)
        except NegotiationError as e:
            stream.stop()
            self.view_state.screen_sharing = False
            self._notify(e)
            return
        self._screen_stream = stream
        track.on("ended", self._on_screen_track_ended)
        logger.info(f"[CALL] Screen sharing started ({self.user_id})")

    def _on_screen_track_ended(self) -> None:
        if self._screen_stream is None:
            return
        logger.info(f"[CALL] Screen capture ended, restoring camera ({self.user_id})")
        self._stop_screen_share()

    def _stop_screen_share(self) -> None:
        stream, self._screen_stream = self._screen_stream, None
        if stream is not None and self.peer is not None and self._camera_track is not None:
            try:
                self.peer.replace_outbound_video_track(self._camera_track)
            except NegotiationError as e:
                logger.warning(f"[CALL] Could not restore camera: {e}")
        if stream is not None:
            stream.stop()
        self.view_state.screen_sharing = False
        self._update_view()

    # Call log

    async def _create_call_log(self) -> None:
        try:
            row = await self.context.store.insert(
                CALL_LOGS_TABLE,
                {
                    "call_id": self.session.call_id,
                    "caller_id": self.user_id,
                    "receiver_id": self.peer_id,
                    "call_type": self.media_kind.call_type,
                    "status": "ringing",
                },
            )
            self.call_log_id = row["id"]
        except Exception as e:
            logger.warning(f"[CALL] Could not create call log for {self.session.call_id}: {e}")
            return
        if self._ended:
            # end() already ran while the row was being written
            await self._finish_call_log(None)

    async def _finish_call_log(self, status: Optional[str]) -> None:
        if self.call_log_id is None:
            return
        if status is None:
            if self._start_failed:
                status = "failed"
            elif self._was_connected:
                status = "completed"
            else:
                status = "missed"
        try:
            await self.context.store.update(
                CALL_LOGS_TABLE,
                self.call_log_id,
                {"status": status, "duration": self.final_duration, "ended_at": datetime.utcnow()},
            )
            logger.info(f"[CALL] Call log {self.call_log_id} marked {status} ({self.final_duration}s)")
        except Exception as e:
            logger.warning(f"[CALL] Could not update call log {self.call_log_id}: {e}")

    # View

    def _notify(self, error: CallError) -> None:
        self.view_state.notice = error.user_message
        self.emit("notice", error)
        self._update_view()

    def _update_view(self) -> None:
        self.emit("update", self.view_state.model_copy())
