"""Peer connection management."""
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from peerlink.services.call_session.errors import NegotiationError
from peerlink.services.call_session.media import LocalMediaStream
from peerlink.services.call_session.models import ConnectionState

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ConnectionState.NEW: {ConnectionState.CONNECTING, ConnectionState.FAILED, ConnectionState.CLOSED},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED},
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED},
    ConnectionState.FAILED: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


def parse_sdp_candidates(sdp: str) -> List[Dict[str, Any]]:
    """Extract ``a=candidate`` lines as browser-style candidate dicts.

    Candidates repeated across bundled media sections are reported once,
    under the first section that carries them.
    """
    candidates = []
    seen = set()
    index = -1
    mid: Optional[str] = None
    pending: List[str] = []

    def _flush():
        for line in pending:
            if line not in seen:
                seen.add(line)
                candidates.append(
                    {"candidate": f"candidate:{line}", "sdpMid": mid, "sdpMLineIndex": index}
                )
        pending.clear()

    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            _flush()
            index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and index >= 0:
            pending.append(line[len("a=candidate:"):])
    _flush()
    return candidates


class PeerConnectionManager(AsyncIOEventEmitter):
    """Owns one ``RTCPeerConnection`` for one call.

    Events:
        connectionstatechange(state: ConnectionState)
        icecandidate(candidate: dict)
        track(track: MediaStreamTrack)
    """

    def __init__(self, transport_factory: Optional[Callable[..., Any]] = None):
        super().__init__()
        self._transport_factory = transport_factory or RTCPeerConnection
        self.pc = None
        self.state = ConnectionState.NEW
        self.remote_tracks: List[MediaStreamTrack] = []
        self._remote_track_callbacks: List[Callable[[MediaStreamTrack], Any]] = []
        self._pending_candidates: List[RTCIceCandidate] = []
        self._remote_description_set = False
        self._remote_candidates_complete = False
        self._offer_created = False
        self._answer_created = False
        self._video_sender = None
        self._closed = False

    def initialize(self, config: Dict[str, Any]):
        """Build the transport from ``{"ice_servers": [...]}``.

        Entries are URL strings or ``RTCIceServer`` keyword dicts.
        """
        ice_servers = []
        for entry in config.get("ice_servers", []):
            if isinstance(entry, str):
                ice_servers.append(RTCIceServer(urls=entry))
            else:
                ice_servers.append(RTCIceServer(**entry))

        try:
            self.pc = self._transport_factory(configuration=RTCConfiguration(iceServers=ice_servers))
        except Exception as e:
            logger.error(f"[PEER] Failed to create peer connection: {e}", exc_info=True)
            raise NegotiationError(f"Could not create peer connection: {e}") from e

        self.pc.on("connectionstatechange", self._on_transport_state_change)
        self.pc.on("track", self._on_track)
        logger.info(f"[PEER] Peer connection created with {len(ice_servers)} ICE servers")
        return self.pc

    def _require_pc(self):
        if self.pc is None or self._closed:
            raise NegotiationError("Peer connection is not open")
        return self.pc

    def attach_local_stream(self, stream: LocalMediaStream) -> None:
        pc = self._require_pc()
        for track in stream.get_tracks():
            sender = pc.addTrack(track)
            if track.kind == "video" and self._video_sender is None:
                self._video_sender = sender
        logger.debug(f"[PEER] Attached {len(stream.get_tracks())} local tracks")

    def on_remote_track(self, callback: Callable[[MediaStreamTrack], Any]) -> None:
        """Register a callback for remote tracks, replaying ones already received."""
        self._remote_track_callbacks.append(callback)
        for track in self.remote_tracks:
            callback(track)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info(f"[PEER] Remote {track.kind} track received")
        self.remote_tracks.append(track)
        for callback in list(self._remote_track_callbacks):
            callback(track)
        self.emit("track", track)

    def _on_transport_state_change(self) -> None:
        try:
            state = ConnectionState(self.pc.connectionState)
        except ValueError:
            logger.warning(f"[PEER] Unknown transport state: {self.pc.connectionState}")
            return
        self._transition(state)

    def _transition(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        if state not in _TRANSITIONS[self.state]:
            logger.debug(f"[PEER] Ignoring transition {self.state} -> {state}")
            return
        logger.info(f"[PEER] Connection state {self.state} -> {state}")
        self.state = state
        self.emit("connectionstatechange", state)

    def _description(self) -> Dict[str, str]:
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}

    def _emit_local_candidates(self) -> None:
        for candidate in parse_sdp_candidates(self.pc.localDescription.sdp):
            self.emit("icecandidate", candidate)

    async def create_offer(self) -> Dict[str, str]:
        """Create an offer and set it as the local description."""
        pc = self._require_pc()
        if self._offer_created:
            raise NegotiationError("Offer already created for this negotiation")
        self._offer_created = True
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"Could not create offer: {e}") from e
        self._emit_local_candidates()
        return self._description()

    async def create_answer(self) -> Dict[str, str]:
        """Create an answer to the remote offer and set it as the local description."""
        pc = self._require_pc()
        if not self._remote_description_set:
            raise NegotiationError("Cannot answer before the remote offer is set")
        if self._answer_created:
            raise NegotiationError("Answer already created for this negotiation")
        self._answer_created = True
        try:
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"Could not create answer: {e}") from e
        self._emit_local_candidates()
        return self._description()

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        pc = self._require_pc()
        sdp = description.get("sdp") if isinstance(description, dict) else None
        kind = description.get("type") if isinstance(description, dict) else None
        if kind not in ("offer", "answer") or not isinstance(sdp, str):
            raise NegotiationError(f"Invalid session description: type={kind!r}")
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))
        except Exception as e:
            raise NegotiationError(f"Could not apply remote {kind}: {e}") from e

        self._remote_description_set = True
        self._remote_candidates_complete = "a=end-of-candidates" in sdp
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"[PEER] Flushing {len(pending)} queued ICE candidates")
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def add_ice_candidate(self, candidate: Optional[Dict[str, Any]]) -> None:
        """Add a remote candidate, queueing it until the remote description is set.

        An empty candidate marks the end of the remote candidates and is ignored.
        """
        self._require_pc()
        if not candidate or not candidate.get("candidate"):
            return
        text = candidate["candidate"]
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        try:
            parsed = candidate_from_sdp(text)
        except (AssertionError, ValueError, IndexError) as e:
            raise NegotiationError(f"Malformed ICE candidate: {candidate['candidate']!r}") from e
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")

        if not self._remote_description_set:
            self._pending_candidates.append(parsed)
            return
        await self._apply_candidate(parsed)

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        if self._remote_candidates_complete:
            # Remote description already listed every candidate
            logger.debug(f"[PEER] Skipping trickled candidate {candidate.foundation}")
            return
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationError(f"Could not add ICE candidate: {e}") from e

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    @property
    def outbound_video_track(self) -> Optional[MediaStreamTrack]:
        return self._video_sender.track if self._video_sender else None

    def replace_outbound_video_track(self, track: MediaStreamTrack) -> None:
        """Swap the outgoing video without renegotiating."""
        self._require_pc()
        if self._video_sender is None:
            raise NegotiationError("No outbound video to replace")
        self._video_sender.replaceTrack(track)
        logger.info("[PEER] Outbound video track replaced")

    async def close(self) -> None:
        """Close the transport and release remote tracks. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        for track in self.remote_tracks:
            track.stop()
        self._pending_candidates = []
        if self.pc is not None:
            await self.pc.close()
        self._transition(ConnectionState.CLOSED)
        logger.info("[PEER] Peer connection closed")
