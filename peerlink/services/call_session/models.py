"""Call session models."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel


class CallRole(str, Enum):
    """Which side of the offer/answer handshake this participant plays."""

    INITIATOR = "initiator"
    RECEIVER = "receiver"

    def __str__(self) -> str:
        return self.value


class SignalType(str, Enum):
    """Kinds of rows exchanged through the signal relay."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    DECLINE = "decline"  # Receiver refused the incoming call

    def __str__(self) -> str:
        return self.value


class ConnectionState(str, Enum):
    """Peer connection state as reported by the transport."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


class MediaKind(str, Enum):
    """Media captured for a call."""

    AUDIO = "audio"
    AUDIO_VIDEO = "audio+video"

    @property
    def has_video(self) -> bool:
        return self is MediaKind.AUDIO_VIDEO

    @property
    def call_type(self) -> str:
        """Name used in call logs."""
        return "video" if self.has_video else "voice"

    def __str__(self) -> str:
        return self.value


class SignalMessage(BaseModel):
    """One row of the ``call_signals`` table."""

    call_id: str
    sender_id: str
    signal_type: SignalType
    payload: Dict[str, Any] = {}
    id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SignalMessage":
        """Build a message from a stored row (``signal_data`` holds the payload)."""
        return cls(
            id=row.get("id"),
            call_id=row.get("call_id"),
            sender_id=row.get("sender_id"),
            signal_type=row.get("signal_type"),
            payload=row.get("signal_data") or {},
            created_at=row.get("created_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        """Columns to insert for this message."""
        return {
            "call_id": self.call_id,
            "sender_id": self.sender_id,
            "signal_type": self.signal_type.value,
            "signal_data": self.payload,
        }


class IncomingCall(BaseModel):
    """An offer addressed to a user who has not joined the call yet."""

    call_id: str
    caller_id: str
    call_type: str  # voice, video
    timestamp: str
    signal_id: Optional[int] = None

    @classmethod
    def from_offer(cls, row: Dict[str, Any]) -> "IncomingCall":
        data = row.get("signal_data") or {}
        return cls(
            call_id=row["call_id"],
            caller_id=row["sender_id"],
            call_type="video" if data.get("video") else "voice",
            timestamp=row.get("created_at") or "",
            signal_id=row.get("id"),
        )


class CallSession(BaseModel):
    """Client-side record of one call, owned by a single controller."""

    call_id: str
    local_role: CallRole
    state: ConnectionState = ConnectionState.NEW
    started_at: Optional[datetime] = None  # Set when the connection first comes up


class CallViewState(BaseModel):
    """Observable state rendered by the call view."""

    call_id: Optional[str] = None
    role: Optional[CallRole] = None
    media_kind: MediaKind = MediaKind.AUDIO
    connection_state: ConnectionState = ConnectionState.NEW
    muted: bool = False
    camera_off: bool = False
    speaker_enabled: bool = True
    screen_sharing: bool = False
    duration: int = 0  # Seconds since the connection first came up
    notice: Optional[str] = None
    ended: bool = False
