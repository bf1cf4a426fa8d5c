"""Shared fakes for the call tests."""

import itertools
import json

import pytest

from vc_call.call.config import CallConfig
from vc_call.call.errors import MediaDeviceError, SignalingUnavailable
from vc_call.call.machine import CallCallbacks, CallStateMachine, LocalUser
from vc_call.net import protocol
from vc_call.net.signaling_client import SignalingClient
from vc_call.rtc.media import LocalStream, MediaDeviceSource


class RecordingSignaling(SignalingClient):
    """Real dispatch and message builders, with the socket replaced by a list."""

    def __init__(self):
        super().__init__("ws://test.invalid/ws")
        self.sent = []
        self.online = True

    async def _send(self, payload):
        if not self.online:
            raise SignalingUnavailable("offline")
        self.sent.append(payload)

    def sent_types(self):
        return [m["type"] for m in self.sent]

    def sent_of(self, event):
        return [m["data"] for m in self.sent if m["type"] == event]


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.enabled = True
        self.stop_calls = 0

    def stop(self):
        self.stop_calls += 1


class FakeMediaSource(MediaDeviceSource):
    def __init__(self):
        super().__init__()
        self.error = None
        self.gate = None
        self.acquired = []
        self.released = []

    async def acquire(self, kind):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise MediaDeviceError(self.error)
        stream = LocalStream(
            kind=kind,
            audio=FakeTrack("audio"),
            video=FakeTrack("video") if kind == "video" else None,
        )
        self.acquired.append(stream)
        return stream

    def release(self, stream):
        self.released.append(stream)
        super().release(stream)


class FakeTransport:
    def __init__(self, peer_id, callbacks):
        self.peer_id = peer_id
        self.callbacks = callbacks
        self.local_tracks = []
        self.remote_descriptions = []
        self.candidates = []
        self.close_calls = 0
        self.remote_gate = None
        self.fail_offer = False

    def attach_local_track(self, track):
        self.local_tracks.append(track)

    async def create_offer(self):
        if self.fail_offer:
            raise RuntimeError("offer failed")
        return "v=0 local-offer"

    async def set_remote_description(self, sdp_type, sdp):
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        self.remote_descriptions.append((sdp_type, sdp))

    async def create_answer(self, remote_offer_sdp=None):
        return "v=0 local-answer"

    async def add_ice_candidate(self, candidate):
        if not self.remote_descriptions:
            raise RuntimeError("remote description not set")
        self.candidates.append(candidate)

    async def close(self):
        self.close_calls += 1

    async def report(self, state):
        await self.callbacks.on_connection_state(state)

    async def remote_track(self, kind="audio"):
        await self.callbacks.on_remote_track(FakeTrack(kind))


class _Handle:
    def __init__(self, when, seq, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock: callbacks run only inside advance()."""

    def __init__(self):
        self.now = 0.0
        self._handles = []
        self._seq = itertools.count()

    def time(self):
        return self.now

    def call_at(self, when, callback, *args):
        handle = _Handle(when, next(self._seq), callback, args)
        self._handles.append(handle)
        return handle

    def call_later(self, delay, callback, *args):
        return self.call_at(self.now + delay, callback, *args)

    def pending(self):
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self.now = handle.when
            handle.callback(*handle.args)
        self.now = target


class CallHarness:
    REMOTE_OFFER = {"type": "offer", "sdp": "v=0 remote-offer"}
    REMOTE_ANSWER = {"type": "answer", "sdp": "v=0 remote-answer"}

    def __init__(self):
        self.signaling = RecordingSignaling()
        self.media = FakeMediaSource()
        self.scheduler = FakeScheduler()
        self.transports = []
        self.states = []
        self.errors = []
        self.durations = []
        self.incoming = []
        self.flags = []
        self.remote_streams = []
        self.signaling_errors = []
        self.fail_offer = False
        self.signaling.callbacks.on_error = self._record_signaling_error
        self.machine = CallStateMachine(
            self.signaling,
            self.media,
            LocalUser(user_id="u1", name="Alice"),
            config=CallConfig(),
            transport_factory=self._make_transport,
            scheduler=self.scheduler,
            callbacks=CallCallbacks(
                on_state=self._record_state,
                on_error=self._record_error,
                on_duration=self._record_duration,
                on_incoming=self._record_incoming,
                on_flags=self._record_flags,
                on_remote_stream=self._record_remote_stream,
            ),
        )

    @property
    def transport(self):
        return self.transports[-1]

    def _make_transport(self, peer_id, callbacks):
        transport = FakeTransport(peer_id, callbacks)
        transport.fail_offer = self.fail_offer
        self.transports.append(transport)
        return transport

    async def deliver(self, event, data):
        await self.signaling.handle_raw(json.dumps(protocol.make_event(event, data)))

    async def outgoing_call(self, peer_id="u2", name="Bob", kind="voice"):
        await self.machine.initiate_call(peer_id, name, kind)

    async def answered(self):
        await self.deliver(protocol.CALL_ANSWERED, self.REMOTE_ANSWER)

    async def incoming_call(self, from_peer="u2", name="Bob", kind="voice"):
        await self.deliver(
            protocol.CALL_REQUEST,
            {
                "userToCall": "u1",
                "signalData": self.REMOTE_OFFER,
                "from": from_peer,
                "name": name,
                "callType": kind,
            },
        )

    async def candidate(self, n, from_peer=None):
        data = {"to": "u1", "candidate": {"candidate": f"candidate:{n} 1 udp 2130706431 10.0.0.{n} 5000{n} typ host", "sdpMid": "0", "sdpMLineIndex": 0}}
        if from_peer:
            data["from"] = from_peer
        await self.deliver(protocol.ICE_CANDIDATE, data)

    async def active_call(self, kind="voice"):
        await self.outgoing_call(kind=kind)
        await self.answered()
        await self.transport.report("connected")

    async def _record_state(self, state):
        self.states.append(state)

    async def _record_error(self, kind):
        self.errors.append(kind)

    async def _record_duration(self, seconds):
        self.durations.append(seconds)

    async def _record_incoming(self, peer_id, peer_name, kind):
        self.incoming.append((peer_id, peer_name, kind))

    async def _record_flags(self, muted, video_off):
        self.flags.append((muted, video_off))

    async def _record_remote_stream(self, stream):
        self.remote_streams.append(stream)

    async def _record_signaling_error(self, error, payload):
        self.signaling_errors.append(error)


@pytest.fixture
def harness():
    return CallHarness()


@pytest.fixture
def scheduler():
    return FakeScheduler()

