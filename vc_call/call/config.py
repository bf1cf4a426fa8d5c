"""Call configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    v = os.environ.get(name, "").strip()
    return v or None


def _parse_size(value: Optional[str]) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    try:
        w, h = value.lower().split("x", 1)
        return int(w), int(h)
    except ValueError:
        return None


@dataclass
class MediaConfig:
    """Capture device preferences.

    ``None`` means "pick the platform default" (see `rtc.media`).
    """

    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    video_size: Optional[Tuple[int, int]] = (640, 480)

    @classmethod
    def from_env(cls) -> "MediaConfig":
        return cls(
            audio_device=_env_str("VC_CALL_AUDIO_DEVICE"),
            audio_format=_env_str("VC_CALL_AUDIO_FORMAT"),
            video_device=_env_str("VC_CALL_VIDEO_DEVICE"),
            video_format=_env_str("VC_CALL_VIDEO_FORMAT"),
            video_size=_parse_size(_env_str("VC_CALL_VIDEO_SIZE")) or cls.video_size,
        )


@dataclass
class CallConfig:
    negotiation_timeout_sec: float = 30.0
    duration_tick_sec: float = 1.0
    ice_servers: Tuple[str, ...] = DEFAULT_ICE_SERVERS
    media: MediaConfig = field(default_factory=MediaConfig)

    @classmethod
    def from_env(cls) -> "CallConfig":
        servers = _env_str("VC_CALL_ICE_SERVERS")
        return cls(
            negotiation_timeout_sec=_env_float("VC_CALL_NEGOTIATION_TIMEOUT", cls.negotiation_timeout_sec),
            duration_tick_sec=_env_float("VC_CALL_TICK_SEC", cls.duration_tick_sec),
            ice_servers=tuple(s.strip() for s in servers.split(",") if s.strip()) if servers else DEFAULT_ICE_SERVERS,
            media=MediaConfig.from_env(),
        )

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
