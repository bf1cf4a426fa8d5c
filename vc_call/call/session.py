"""Call session record."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Deque, Optional

from .errors import ErrorKind

if TYPE_CHECKING:
    from ..net.protocol import IceCandidateDict, SessionDescriptionDict
    from ..rtc.media import LocalStream, RemoteStream
    from ..rtc.transport import PeerTransportSession
    from .clock import Ticker, Timer


class CallState(str, Enum):
    IDLE = "idle"
    OUTGOING_RINGING = "outgoing-ringing"
    INCOMING_RINGING = "incoming-ringing"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    ENDED = "ended"


class CallKind(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


class CallRole(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


@dataclass(eq=False)
class CallSession:
    """One call attempt.

    Owned exclusively by the state machine; compared by identity so late
    completions can tell whether they still belong to the live attempt.
    """

    peer_id: str
    peer_name: str
    kind: CallKind
    role: CallRole
    state: CallState = CallState.IDLE
    attempt_count: int = 0

    local_stream: Optional["LocalStream"] = None
    remote_stream: Optional["RemoteStream"] = None
    transport: Optional["PeerTransportSession"] = None
    muted: bool = False
    video_off: bool = False
    duration_seconds: int = 0
    last_error: Optional[ErrorKind] = None

    # Stored offer while ringing (callee side).
    remote_offer: Optional["SessionDescriptionDict"] = None
    remote_description_applied: bool = False
    transport_connected: bool = False
    pending_candidates: Deque["IceCandidateDict"] = field(default_factory=deque)

    # Set once call-request / call-answered has gone out.
    signaled: bool = False
    # Name of an outstanding suspending operation ("initiate", "accept", "answer").
    pending: Optional[str] = None

    negotiation_timer: Optional["Timer"] = None
    duration_timer: Optional["Ticker"] = None

    def cancel_timers(self) -> None:
        if self.negotiation_timer is not None:
            self.negotiation_timer.cancel()
            self.negotiation_timer = None
        if self.duration_timer is not None:
            self.duration_timer.cancel()
            self.duration_timer = None


def format_duration(seconds: int) -> str:
    """Format a call duration as ``MM:SS``."""
    seconds = max(0, int(seconds))
    mins, secs = divmod(seconds, 60)
    return f"{mins:02d}:{secs:02d}"
