"""Call error taxonomy."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    DEVICE_NOT_FOUND = "device-not-found"
    DEVICE_BUSY = "device-busy"
    UNKNOWN = "unknown"
    NEGOTIATION_TIMEOUT = "negotiation-timeout"
    NEGOTIATION_FAILED = "negotiation-failed"
    ICE_FAILURE = "ice-failure"
    CONNECTION_LOST = "connection-lost"
    SIGNALING_UNAVAILABLE = "signaling-unavailable"

    def describe(self) -> str:
        return _MESSAGES[self]

    @property
    def is_device_error(self) -> bool:
        return self in _DEVICE_KINDS


_MESSAGES = {
    ErrorKind.PERMISSION_DENIED: "Camera/microphone access denied. Please allow access and try again.",
    ErrorKind.DEVICE_NOT_FOUND: "No camera/microphone found. Please check your device.",
    ErrorKind.DEVICE_BUSY: "Camera/microphone is already in use by another application.",
    ErrorKind.UNKNOWN: "Failed to access camera/microphone.",
    ErrorKind.NEGOTIATION_TIMEOUT: "Connection timeout. Please try again.",
    ErrorKind.NEGOTIATION_FAILED: "Failed to establish connection. Please try again.",
    ErrorKind.ICE_FAILURE: "Connection failed. Please try again.",
    ErrorKind.CONNECTION_LOST: "Connection lost. Please try again.",
    ErrorKind.SIGNALING_UNAVAILABLE: "Not connected to the call server.",
}

_DEVICE_KINDS = frozenset(
    {ErrorKind.PERMISSION_DENIED, ErrorKind.DEVICE_NOT_FOUND, ErrorKind.DEVICE_BUSY, ErrorKind.UNKNOWN}
)


class CallError(Exception):
    def __init__(self, kind: ErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message or kind.describe()
        super().__init__(f"{kind.value}: {self.message}")


class MediaDeviceError(CallError):
    pass


class SignalingUnavailable(CallError):
    def __init__(self, message: Optional[str] = None):
        super().__init__(ErrorKind.SIGNALING_UNAVAILABLE, message)
