"""Call session errors."""
from typing import Optional


class CallError(Exception):
    """Base class for call session failures."""

    @property
    def user_message(self) -> str:
        return str(self)


class MediaAccessError(CallError):
    """Local capture device could not be opened."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_MISSING = "device_missing"
    DEVICE_BUSY = "device_busy"

    _MESSAGES = {
        PERMISSION_DENIED: "{device} permission denied",
        DEVICE_MISSING: "No {device_lower} found",
        DEVICE_BUSY: "{device} is being used by another application",
    }

    def __init__(self, reason: str, device: str = "microphone", detail: Optional[str] = None):
        if reason not in self._MESSAGES:
            raise ValueError(f"Unknown media access failure: {reason}")
        self.reason = reason
        self.device = device
        self.detail = detail
        super().__init__(self.user_message if not detail else f"{self.user_message}: {detail}")

    @property
    def user_message(self) -> str:
        return self._MESSAGES[self.reason].format(
            device=self.device.capitalize(), device_lower=self.device.lower()
        )


class NegotiationError(CallError):
    """Transport construction or session description handling failed."""


class SignalDeliveryError(CallError):
    """Signal row could not be written to the shared store."""

    def __init__(self, call_id: str, signal_type: str, attempts: int, detail: str = ""):
        self.call_id = call_id
        self.signal_type = signal_type
        self.attempts = attempts
        message = f"Failed to deliver {signal_type} for call {call_id} after {attempts} attempts"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return "Could not reach the other participant"


class ConnectionLostError(CallError):
    """Transport dropped after having been connected."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Connection {state}")

    @property
    def user_message(self) -> str:
        return "The call was disconnected"
