"""Local media capture."""
import errno
import fractions
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import av
import av.error
import numpy as np
from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer

from peerlink.core.config import Settings, settings as default_settings
from peerlink.services.call_session.errors import MediaAccessError

logger = logging.getLogger(__name__)


class GatedTrack(MediaStreamTrack):
    """Relays frames from a source track, blanking them while disabled.

    A disabled track keeps producing frames so the remote side sees silence
    or a black picture instead of a stalled stream.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return self._blank(frame)

    def _blank(self, frame):
        if isinstance(frame, av.AudioFrame):
            blank = av.AudioFrame.from_ndarray(
                np.zeros_like(frame.to_ndarray()),
                format=frame.format.name,
                layout=frame.layout.name,
            )
            blank.sample_rate = frame.sample_rate
        else:
            blank = av.VideoFrame.from_ndarray(
                np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24"
            )
        blank.pts = frame.pts
        blank.time_base = frame.time_base or fractions.Fraction(1, 90000)
        return blank

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class LocalTrack(GatedTrack):
    """Captured track with browser-like ``enabled`` and ``ready_state``."""

    def __init__(self, source: MediaStreamTrack, label: str = ""):
        super().__init__(source)
        self.label = label or source.kind

    @property
    def ready_state(self) -> str:
        return self.readyState

    def __repr__(self) -> str:
        return f"LocalTrack(kind={self.kind!r}, label={self.label!r}, ready_state={self.ready_state!r})"


class LocalMediaStream:
    """Group of local tracks acquired together."""

    def __init__(self, tracks: Optional[List[LocalTrack]] = None):
        self.tracks: List[LocalTrack] = list(tracks or [])

    def get_tracks(self) -> List[LocalTrack]:
        return list(self.tracks)

    def get_audio_tracks(self) -> List[LocalTrack]:
        return [track for track in self.tracks if track.kind == "audio"]

    def get_video_tracks(self) -> List[LocalTrack]:
        return [track for track in self.tracks if track.kind == "video"]

    def stop(self) -> None:
        """Stop every track. Safe to call more than once."""
        for track in self.tracks:
            if track.ready_state != "ended":
                track.stop()


class MediaDevices(ABC):
    """Abstract base class for local capture."""

    @abstractmethod
    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalMediaStream:
        """Open microphone and optionally camera.

        Raises:
            MediaAccessError: device missing, busy or access denied
        """
        pass

    @abstractmethod
    async def get_display_media(self) -> LocalMediaStream:
        """Open screen capture. The stream holds one video track."""
        pass


class PlayerMediaDevices(MediaDevices):
    """Capture through FFmpeg input devices via aiortc's MediaPlayer."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def _open(self, device: str, file: str, format: Optional[str], options: Dict[str, str]) -> MediaPlayer:
        try:
            return MediaPlayer(file, format=format, options=options)
        except PermissionError as e:
            raise MediaAccessError(MediaAccessError.PERMISSION_DENIED, device, str(e)) from e
        except FileNotFoundError as e:
            raise MediaAccessError(MediaAccessError.DEVICE_MISSING, device, str(e)) from e
        except (OSError, av.error.FFmpegError) as e:
            if getattr(e, "errno", None) == errno.EBUSY:
                raise MediaAccessError(MediaAccessError.DEVICE_BUSY, device, str(e)) from e
            if getattr(e, "errno", None) in (errno.EACCES, errno.EPERM):
                raise MediaAccessError(MediaAccessError.PERMISSION_DENIED, device, str(e)) from e
            raise MediaAccessError(MediaAccessError.DEVICE_MISSING, device, str(e)) from e

    def _video_options(self) -> Dict[str, str]:
        return {
            "video_size": self.config.capture_video_size,
            "framerate": self.config.capture_framerate,
        }

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalMediaStream:
        tracks: List[LocalTrack] = []
        try:
            if audio:
                player = self._open(
                    "microphone",
                    self.config.audio_capture_device,
                    self.config.audio_capture_format,
                    {},
                )
                if player.audio is None:
                    raise MediaAccessError(MediaAccessError.DEVICE_MISSING, "microphone")
                tracks.append(LocalTrack(player.audio, label=self.config.audio_capture_device))
            if video:
                player = self._open(
                    "camera",
                    self.config.video_capture_device,
                    self.config.video_capture_format,
                    self._video_options(),
                )
                if player.video is None:
                    raise MediaAccessError(MediaAccessError.DEVICE_MISSING, "camera")
                tracks.append(LocalTrack(player.video, label=self.config.video_capture_device))
        except MediaAccessError:
            LocalMediaStream(tracks).stop()
            raise

        logger.info(f"[MEDIA] Opened {[track.kind for track in tracks]} capture")
        return LocalMediaStream(tracks)

    async def get_display_media(self) -> LocalMediaStream:
        player = self._open(
            "screen",
            self.config.screen_capture_device,
            self.config.screen_capture_format,
            self._video_options(),
        )
        if player.video is None:
            raise MediaAccessError(MediaAccessError.DEVICE_MISSING, "screen")
        logger.info(f"[MEDIA] Opened screen capture {self.config.screen_capture_device}")
        return LocalMediaStream([LocalTrack(player.video, label="screen")])


class SyntheticMediaDevices(MediaDevices):
    """Generated silence and test-pattern video, for hosts without devices."""

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalMediaStream:
        tracks = []
        if audio:
            tracks.append(LocalTrack(AudioStreamTrack(), label="synthetic microphone"))
        if video:
            tracks.append(LocalTrack(VideoStreamTrack(), label="synthetic camera"))
        return LocalMediaStream(tracks)

    async def get_display_media(self) -> LocalMediaStream:
        return LocalMediaStream([LocalTrack(VideoStreamTrack(), label="synthetic screen")])


def create_media_devices(config: Optional[Settings] = None) -> MediaDevices:
    """Build the capture backend named by ``media_backend``."""
    config = config or default_settings
    if config.media_backend == "synthetic":
        return SyntheticMediaDevices()
    if config.media_backend == "devices":
        return PlayerMediaDevices(config)
    raise ValueError(f"Unknown media backend: {config.media_backend}")
