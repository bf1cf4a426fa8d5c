"""One WebRTC connection for one call attempt."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import (
    MediaStreamTrack,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .media import RemoteMediaSink


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]

# ICE-level states that aiortc does not surface through connectionState.
_ICE_ALARM_STATES = ("disconnected", "failed")


def candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    try:
        cand = candidate_from_sdp(cand_sdp)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"malformed candidate: {cand_sdp!r}") from e
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class TransportCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (state: str)
    on_remote_track: Optional[AsyncPeerCallback] = None  # (track: MediaStreamTrack)
    on_local_candidate: Optional[AsyncPeerCallback] = None  # (candidate: dict)


class PeerTransportSession:
    """Wraps an RTCPeerConnection.

    Reports facts (states, tracks, candidates) through callbacks and never
    decides anything about the call itself.
    """

    def __init__(
        self,
        peer_id: str,
        callbacks: Optional[TransportCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        sink: Optional[RemoteMediaSink] = None,
    ):
        self.peer_id = peer_id
        self._callbacks = callbacks or TransportCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._sink = sink if sink is not None else RemoteMediaSink()
        self._last_state: Optional[str] = None
        self._closed = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(candidate) -> None:
            # aiortc bundles candidates into the SDP; this only fires for
            # implementations that trickle.
            candidate = getattr(candidate, "candidate", candidate)
            if candidate is None or self._closed:
                return
            if self._callbacks.on_local_candidate:
                await self._callbacks.on_local_candidate(candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            await self._report_state(self._pc.connectionState)

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            state = self._pc.iceConnectionState
            logger.debug("rtc ice state peer=%s state=%s", self.peer_id, state)
            if state in _ICE_ALARM_STATES:
                await self._report_state(state)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            await self._log(f"pc[{self.peer_id}] remote track kind={track.kind}")
            if self._closed:
                return
            await self._sink.add_track(track)
            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(track)

    @property
    def closed(self) -> bool:
        return self._closed

    def attach_local_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("rtc closing pc peer=%s", self.peer_id)
        try:
            await self._sink.stop()
        finally:
            await self._pc.close()

    async def create_offer(self) -> str:
        return await self._commit_local(await self._pc.createOffer())

    async def set_remote_description(self, sdp_type: str, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))

    async def create_answer(self, remote_offer_sdp: Optional[str] = None) -> str:
        """Answer the remote offer, applying it first when given."""
        if remote_offer_sdp is not None:
            await self.set_remote_description("offer", remote_offer_sdp)
        return await self._commit_local(await self._pc.createAnswer())

    async def add_ice_candidate(self, candidate_obj: Dict[str, Any]) -> None:
        """Add one remote candidate. Raises ValueError if it cannot be parsed."""
        if not isinstance(candidate_obj, dict):
            raise ValueError("candidate must be an object")
        cand = candidate_from_json(candidate_obj)
        await self._pc.addIceCandidate(cand)

    async def _commit_local(self, description: RTCSessionDescription) -> str:
        await self._pc.setLocalDescription(description)
        local = self._pc.localDescription
        assert local is not None
        return local.sdp

    async def _report_state(self, state: str) -> None:
        if state == self._last_state:
            return
        self._last_state = state
        await self._log(f"pc[{self.peer_id}] connectionState={state}")
        if self._callbacks.on_connection_state:
            await self._callbacks.on_connection_state(state)

    async def _log(self, msg: str) -> None:
        logger.debug("%s", msg)
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
