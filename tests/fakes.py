"""Test doubles for transports, capture devices and timing helpers."""
import asyncio
import time
from typing import Callable, List, Optional
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from peerlink.services.call_session.errors import MediaAccessError
from peerlink.services.call_session.media import (
    LocalMediaStream,
    MediaDevices,
    SyntheticMediaDevices,
)


def fake_sdp(host: str, media: List[str], end_of_candidates: bool = False) -> str:
    """Minimal bundled SDP with one host candidate per media section."""
    lines = [
        "v=0",
        "o=- 0 0 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE " + " ".join(str(i) for i in range(len(media))),
    ]
    for index, kind in enumerate(media):
        lines += [
            f"m={kind} 9 UDP/TLS/RTP/SAVPF 96",
            "c=IN IP4 0.0.0.0",
            f"a=mid:{index}",
            f"a=candidate:1 1 udp 2130706431 {host} 5000 typ host",
        ]
        if end_of_candidates:
            lines.append("a=end-of-candidates")
    return "\r\n".join(lines) + "\r\n"


class FakeSender:
    """Stands in for RTCRtpSender."""

    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakeTransport(AsyncIOEventEmitter):
    """In-memory RTCPeerConnection.

    Connects once it has both descriptions and at least one remote candidate.
    Emits a remote track per media section of the remote description.
    """

    def __init__(self, configuration=None, host: str = "10.0.0.1"):
        super().__init__()
        self.configuration = configuration
        self.host = host
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.senders: List[FakeSender] = []
        self.added_candidates = []
        self.closed = False

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def _media(self) -> List[str]:
        kinds = [sender.track.kind for sender in self.senders]
        return ["audio"] + (["video"] if "video" in kinds else [])

    async def createOffer(self):
        return RTCSessionDescription(sdp=fake_sdp(self.host, self._media()), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=fake_sdp(self.host, self._media()), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        for line in description.sdp.splitlines():
            if line.startswith("m=audio"):
                self.emit("track", AudioStreamTrack())
            elif line.startswith("m=video"):
                self.emit("track", VideoStreamTrack())

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)
        if self.localDescription and self.remoteDescription and self.connectionState == "new":
            self.set_state("connecting")
            self.set_state("connected")

    def set_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.set_state("closed")


class FakeTransportFactory:
    """Transport factory that records what it built."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, configuration=None):
        if self.fail_with is not None:
            raise self.fail_with
        transport = FakeTransport(configuration, host=f"10.0.0.{len(self.created) + 1}")
        self.created.append(transport)
        return transport


class DeniedMediaDevices(MediaDevices):
    """Capture backend that refuses every request."""

    def __init__(self, reason: str = MediaAccessError.PERMISSION_DENIED):
        self.reason = reason
        self.requests = 0

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalMediaStream:
        self.requests += 1
        raise MediaAccessError(self.reason, "camera" if video else "microphone")

    async def get_display_media(self) -> LocalMediaStream:
        self.requests += 1
        raise MediaAccessError(self.reason, "screen")


class SlowMediaDevices(SyntheticMediaDevices):
    """Synthetic capture that waits for ``release`` before answering."""

    def __init__(self):
        self.release = asyncio.Event()
        self.streams: List[LocalMediaStream] = []

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalMediaStream:
        await self.release.wait()
        stream = await super().get_user_media(audio, video)
        self.streams.append(stream)
        return stream


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Blocking variant of ``wait_for`` for TestClient tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.02)

