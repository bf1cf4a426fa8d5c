"""Call state machine (one-to-one voice/video calls).

Owns at most one CallSession, drives the media source and the peer transport
for it, and turns user actions plus inbound signaling events into state
transitions. All transitions run on one event loop. Every suspending step
re-checks session identity afterwards so completions that land after
teardown are discarded instead of being applied to a dead call.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set, Tuple

from ..net import protocol
from ..rtc.media import AUDIO, VIDEO, LocalStream, MediaDeviceSource, RemoteStream
from ..rtc.transport import PeerTransportSession, TransportCallbacks
from .clock import Scheduler, Ticker, Timer, default_scheduler
from .config import CallConfig
from .errors import CallError, ErrorKind, SignalingUnavailable
from .session import CallKind, CallRole, CallSession, CallState


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
TransportFactory = Callable[[str, TransportCallbacks], PeerTransportSession]

_FAILED_STATES = ("failed", "disconnected", "closed")


@dataclass
class LocalUser:
    user_id: str
    name: str


@dataclass
class CallCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_state: Optional[AsyncCallback] = None  # (state: CallState)
    on_incoming: Optional[AsyncCallback] = None  # (peer_id: str, peer_name: str, kind: CallKind)
    on_duration: Optional[AsyncCallback] = None  # (seconds: int)
    on_flags: Optional[AsyncCallback] = None  # (muted: bool, video_off: bool)
    on_error: Optional[AsyncCallback] = None  # (kind: ErrorKind)
    on_remote_stream: Optional[AsyncCallback] = None  # (stream: RemoteStream)


class CallStateMachine:
    def __init__(
        self,
        signaling: Any,
        media: MediaDeviceSource,
        local_user: LocalUser,
        *,
        config: Optional[CallConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        scheduler: Optional[Scheduler] = None,
        callbacks: Optional[CallCallbacks] = None,
    ):
        self._signaling = signaling
        self._media = media
        self._local = local_user
        self._config = config or CallConfig()
        self._transport_factory = transport_factory or self._default_transport
        self._scheduler = scheduler
        self._callbacks = callbacks or CallCallbacks()

        self._session: Optional[CallSession] = None
        self._state = CallState.IDLE
        self._last_error: Optional[ErrorKind] = None
        self._attempts = 0
        self._tasks: Set[asyncio.Future[Any]] = set()

        # One dispatch table for the lifetime of the machine.
        dispatch = {
            protocol.CALL_REQUEST: self._on_call_request,
            protocol.CALL_ANSWERED: self._on_call_answered,
            protocol.CALL_DECLINED: self._on_call_declined,
            protocol.CALL_ENDED: self._on_call_ended,
            protocol.ICE_CANDIDATE: self._on_ice_candidate,
        }
        for event, handler in dispatch.items():
            self._signaling.on(event, handler)

    # ----------------------
    # Observers
    # ----------------------
    @property
    def state(self) -> CallState:
        return self._state

    @property
    def last_error(self) -> Optional[ErrorKind]:
        return self._last_error

    @property
    def duration_seconds(self) -> int:
        return self._session.duration_seconds if self._session else 0

    @property
    def muted(self) -> bool:
        return bool(self._session and self._session.muted)

    @property
    def video_off(self) -> bool:
        return bool(self._session and self._session.video_off)

    @property
    def local_stream(self) -> Optional[LocalStream]:
        return self._session.local_stream if self._session else None

    @property
    def remote_stream(self) -> Optional[RemoteStream]:
        return self._session.remote_stream if self._session else None

    @property
    def peer(self) -> Optional[Tuple[str, str]]:
        s = self._session
        return (s.peer_id, s.peer_name) if s else None

    @property
    def kind(self) -> Optional[CallKind]:
        return self._session.kind if self._session else None

    @property
    def role(self) -> Optional[CallRole]:
        return self._session.role if self._session else None

    @property
    def incoming(self) -> Optional[Tuple[str, str, CallKind]]:
        s = self._session
        if s is None or s.state != CallState.INCOMING_RINGING:
            return None
        return s.peer_id, s.peer_name, s.kind

    @property
    def attempt_count(self) -> int:
        return self._attempts

    # ----------------------
    # User actions
    # ----------------------
    async def initiate_call(self, peer_id: str, peer_name: str, kind: str = "voice") -> None:
        call_kind = CallKind(kind)
        if self._session is not None:
            logger.warning("call initiate ignored, call in progress state=%s", self._state.value)
            return
        if not peer_id or peer_id == self._local.user_id:
            raise ValueError(f"invalid peer id: {peer_id!r}")

        await self._leave_ended()
        self._attempts += 1
        session = CallSession(
            peer_id=peer_id,
            peer_name=peer_name or peer_id,
            kind=call_kind,
            role=CallRole.CALLER,
            attempt_count=self._attempts,
            pending="initiate",
        )
        self._session = session
        logger.info("call initiate peer=%s kind=%s attempt=%s", peer_id, call_kind.value, self._attempts)
        await self._log(f"Calling {session.peer_name} ({call_kind.value})")
        await self._transition(session, CallState.OUTGOING_RINGING)

        if not await self._acquire_media(session):
            return

        transport = self._open_transport(session)
        try:
            self._attach_tracks(session, transport)
            offer_sdp = await transport.create_offer()
        except Exception:
            logger.exception("call offer failed peer=%s", peer_id)
            await self._fail(session, ErrorKind.NEGOTIATION_FAILED)
            return
        if not self._is_current(session):
            return

        session.signaled = True
        try:
            await self._signaling.send_call_request(
                peer_id, offer_sdp, self._local.user_id, self._local.name, call_kind.value
            )
        except SignalingUnavailable:
            await self._fail(session, ErrorKind.SIGNALING_UNAVAILABLE)
            return
        if self._is_current(session) and session.pending == "initiate":
            session.pending = None

    async def accept_call(self) -> None:
        session = self._session
        if session is None or session.state != CallState.INCOMING_RINGING or session.pending:
            logger.debug("call accept ignored state=%s", self._state.value)
            return
        offer = session.remote_offer
        assert offer is not None

        self._attempts += 1
        session.attempt_count = self._attempts
        session.pending = "accept"
        logger.info("call accept peer=%s kind=%s attempt=%s", session.peer_id, session.kind.value, self._attempts)

        decline = self._signaling.send_call_declined
        if not await self._acquire_media(session, notify=decline):
            return

        transport = self._open_transport(session)
        try:
            self._attach_tracks(session, transport)
            await transport.set_remote_description(offer["type"], offer["sdp"])
            if not self._is_current(session):
                return
            await self._flush_candidates(session)
            if not self._is_current(session):
                return
            answer_sdp = await transport.create_answer()
        except Exception:
            logger.exception("call answer failed peer=%s", session.peer_id)
            await self._fail(session, ErrorKind.NEGOTIATION_FAILED, notify=decline)
            return
        if not self._is_current(session):
            return

        session.signaled = True
        try:
            await self._signaling.send_call_answered(session.peer_id, answer_sdp)
        except SignalingUnavailable:
            await self._fail(session, ErrorKind.SIGNALING_UNAVAILABLE)
            return
        if not self._is_current(session):
            return
        session.pending = None
        session.remote_offer = None
        await self._enter_negotiating(session)

    async def decline_call(self) -> None:
        session = self._session
        if session is None:
            return
        if session.state != CallState.INCOMING_RINGING or session.signaled:
            await self.end_call()
            return
        logger.info("call decline peer=%s", session.peer_id)
        await self._teardown(session, notify=self._signaling.send_call_declined)

    async def end_call(self) -> None:
        session = self._session
        if session is None:
            return
        if session.state == CallState.INCOMING_RINGING and not session.signaled:
            await self.decline_call()
            return
        logger.info("call end peer=%s state=%s", session.peer_id, session.state.value)
        notify = self._signaling.send_call_ended if session.signaled else None
        await self._teardown(session, notify=notify)

    async def toggle_mute(self) -> bool:
        session = self._session
        if session is None or session.state != CallState.ACTIVE:
            return False
        muted = not session.muted
        if self._media.set_track_enabled(session.local_stream, AUDIO, not muted):
            session.muted = muted
            logger.info("call mute=%s", muted)
            await self._emit_flags(session)
        return session.muted

    async def toggle_video(self) -> bool:
        session = self._session
        if session is None or session.state != CallState.ACTIVE or session.kind != CallKind.VIDEO:
            return False
        video_off = not session.video_off
        if self._media.set_track_enabled(session.local_stream, VIDEO, not video_off):
            session.video_off = video_off
            logger.info("call video_off=%s", video_off)
            await self._emit_flags(session)
        return session.video_off

    async def dismiss(self) -> None:
        """Clear a finished call's error and return to Idle."""
        if self._session is None and self._state == CallState.ENDED:
            await self._enter_idle()

    async def shutdown(self) -> None:
        await self.end_call()
        await self.drain()

    async def drain(self) -> None:
        """Wait for background work spawned by timers and callbacks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----------------------
    # Inbound signaling
    # ----------------------
    async def _on_call_request(self, data: Any) -> None:
        try:
            req = protocol.parse_call_request(data)
        except protocol.ProtocolError as e:
            logger.warning("call-request dropped: %s", e.message)
            return

        current = self._session
        if current is not None and current.peer_id == req.from_peer and current.state == CallState.INCOMING_RINGING:
            logger.debug("call-request duplicate from=%s", req.from_peer)
            return
        if current is not None and current.peer_id == req.from_peer and current.state == CallState.OUTGOING_RINGING:
            # Both sides called each other: the lower user id drops its own call.
            if self._local.user_id > req.from_peer:
                logger.info("call glare with=%s, keeping our call", req.from_peer)
                return
            logger.info("call glare with=%s, answering theirs", req.from_peer)
            await self._teardown(current)
            current = self._session
        if current is not None:
            # No call waiting: tell the new caller we are busy.
            logger.info("call-request while busy from=%s state=%s, declining", req.from_peer, current.state.value)
            await self._send_best_effort(self._signaling.send_call_declined, req.from_peer)
            return

        await self._leave_ended()
        session = CallSession(
            peer_id=req.from_peer,
            peer_name=req.name,
            kind=CallKind(req.call_type),
            role=CallRole.CALLEE,
            remote_offer=req.offer,
        )
        self._session = session
        logger.info("call-request from=%s name=%s kind=%s", req.from_peer, req.name, req.call_type)
        await self._log(f"Incoming {req.call_type} call from {req.name}")
        await self._transition(session, CallState.INCOMING_RINGING)
        if self._is_current(session):
            await self._notify(self._callbacks.on_incoming, session.peer_id, session.peer_name, session.kind)

    async def _on_call_answered(self, data: Any) -> None:
        session = self._session
        if (
            session is None
            or session.state != CallState.OUTGOING_RINGING
            or not session.signaled
            or session.pending == "answer"
        ):
            logger.debug("call-answered ignored state=%s", self._state.value)
            return
        try:
            answer = protocol.parse_call_answered(data)
        except protocol.ProtocolError as e:
            logger.warning("call-answered malformed: %s", e.message)
            await self._fail(session, ErrorKind.NEGOTIATION_FAILED)
            return

        logger.info("call-answered from=%s sdp_len=%s", session.peer_id, len(answer["sdp"]))
        session.pending = "answer"
        transport = session.transport
        assert transport is not None
        try:
            await transport.set_remote_description(answer["type"], answer["sdp"])
        except Exception:
            logger.exception("call remote answer rejected peer=%s", session.peer_id)
            await self._fail(session, ErrorKind.NEGOTIATION_FAILED)
            return
        if not self._is_current(session):
            return
        await self._flush_candidates(session)
        if not self._is_current(session):
            return
        session.pending = None
        await self._enter_negotiating(session)

    async def _on_call_declined(self, data: Any) -> None:
        session = self._matching_session(data, protocol.CALL_DECLINED)
        if session is None:
            return
        if session.state != CallState.OUTGOING_RINGING:
            logger.info("call-declined ignored state=%s", session.state.value)
            return
        logger.info("call-declined by=%s", session.peer_id)
        await self._log(f"{session.peer_name} declined the call")
        await self._teardown(session)

    async def _on_call_ended(self, data: Any) -> None:
        session = self._matching_session(data, protocol.CALL_ENDED)
        if session is None:
            return
        logger.info("call-ended by=%s", session.peer_id)
        await self._log(f"{session.peer_name} ended the call")
        await self._teardown(session)

    async def _on_ice_candidate(self, data: Any) -> None:
        session = self._matching_session(data, protocol.ICE_CANDIDATE)
        if session is None:
            return
        try:
            candidate = protocol.parse_ice_candidate(data)
        except protocol.ProtocolError as e:
            logger.warning("ice-candidate dropped: %s", e.message)
            return

        if session.transport is None or not session.remote_description_applied:
            session.pending_candidates.append(candidate)
            logger.debug("ice-candidate queued count=%s", len(session.pending_candidates))
            return
        await self._add_candidate(session, candidate)

    def _matching_session(self, data: Any, event: str) -> Optional[CallSession]:
        session = self._session
        if session is None:
            logger.debug("%s ignored, no call", event)
            return None
        sender = protocol.sender_of(data)
        if sender is not None and sender != session.peer_id:
            logger.info("%s ignored from=%s (call is with %s)", event, sender, session.peer_id)
            return None
        return session

    # ----------------------
    # Transport facts
    # ----------------------
    async def _on_transport_state(self, session: CallSession, state: str) -> None:
        if not self._is_current(session):
            return
        logger.info("call transport state=%s call_state=%s", state, session.state.value)
        if state == "connected":
            if session.state == CallState.NEGOTIATING:
                await self._activate(session)
            else:
                session.transport_connected = True
            return
        if state not in _FAILED_STATES:
            return
        if session.state == CallState.NEGOTIATING:
            kind = ErrorKind.ICE_FAILURE if state == "failed" else ErrorKind.CONNECTION_LOST
        elif session.state == CallState.ACTIVE:
            kind = ErrorKind.CONNECTION_LOST
        else:
            return
        await self._fail(session, kind)

    async def _on_remote_track(self, session: CallSession, track: Any) -> None:
        if not self._is_current(session):
            return
        first = session.remote_stream is None
        if first:
            session.remote_stream = RemoteStream()
        assert session.remote_stream is not None
        session.remote_stream.add(track)
        logger.info("call remote track kind=%s", getattr(track, "kind", None))
        if first:
            await self._notify(self._callbacks.on_remote_stream, session.remote_stream)
        if self._is_current(session) and session.state == CallState.NEGOTIATING:
            await self._activate(session)

    async def _on_local_candidate(self, session: CallSession, candidate: protocol.IceCandidateDict) -> None:
        if not self._is_current(session):
            return
        await self._send_best_effort(self._signaling.send_ice_candidate, session.peer_id, candidate)

    # ----------------------
    # Internals
    # ----------------------
    def _is_current(self, session: CallSession) -> bool:
        return self._session is session

    def _sched(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = default_scheduler()
        return self._scheduler

    def _default_transport(self, peer_id: str, callbacks: TransportCallbacks) -> PeerTransportSession:
        return PeerTransportSession(peer_id, callbacks, rtc_config=self._config.rtc_configuration())

    def _open_transport(self, session: CallSession) -> PeerTransportSession:
        callbacks = TransportCallbacks(
            on_log=self._log,
            on_connection_state=functools.partial(self._on_transport_state, session),
            on_remote_track=functools.partial(self._on_remote_track, session),
            on_local_candidate=functools.partial(self._on_local_candidate, session),
        )
        transport = self._transport_factory(session.peer_id, callbacks)
        session.transport = transport
        return transport

    @staticmethod
    def _attach_tracks(session: CallSession, transport: PeerTransportSession) -> None:
        assert session.local_stream is not None
        for track in session.local_stream.tracks():
            transport.attach_local_track(track)

    async def _acquire_media(self, session: CallSession, notify: Optional[AsyncCallback] = None) -> bool:
        try:
            stream = await self._media.acquire(session.kind.value)
        except CallError as e:
            logger.warning("call media acquire failed kind=%s error=%s", session.kind.value, e.kind.value)
            await self._fail(session, e.kind, notify=notify)
            return False
        except Exception:
            logger.exception("call media acquire crashed kind=%s", session.kind.value)
            await self._fail(session, ErrorKind.UNKNOWN, notify=notify)
            return False

        if not self._is_current(session):
            # Torn down while the device was opening.
            logger.debug("call media acquired after teardown, releasing")
            self._media.release(stream)
            return False
        session.local_stream = stream
        return True

    async def _flush_candidates(self, session: CallSession) -> None:
        # Candidates that arrive while flushing join the same queue, so the
        # order seen by the transport stays FIFO.
        while session.pending_candidates:
            candidate = session.pending_candidates.popleft()
            await self._add_candidate(session, candidate)
            if not self._is_current(session):
                return
        session.remote_description_applied = True

    async def _add_candidate(self, session: CallSession, candidate: protocol.IceCandidateDict) -> None:
        transport = session.transport
        if transport is None:
            return
        try:
            await transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning("call ice candidate rejected peer=%s: %s", session.peer_id, e)

    async def _enter_negotiating(self, session: CallSession) -> None:
        await self._transition(session, CallState.NEGOTIATING)
        if not self._is_current(session):
            return
        if session.transport_connected or session.remote_stream is not None:
            await self._activate(session)

    async def _activate(self, session: CallSession) -> None:
        if session.state != CallState.NEGOTIATING:
            return
        session.duration_seconds = 0
        await self._transition(session, CallState.ACTIVE)

    async def _transition(self, session: CallSession, new_state: CallState) -> None:
        prev = session.state
        if prev == new_state:
            return
        self._exit_state(session, prev)
        session.state = new_state
        self._state = new_state
        self._enter_state(session, new_state)
        logger.info("call state %s -> %s peer=%s", prev.value, new_state.value, session.peer_id)
        await self._emit_state()

    def _exit_state(self, session: CallSession, state: CallState) -> None:
        if state == CallState.NEGOTIATING and session.negotiation_timer is not None:
            session.negotiation_timer.cancel()
            session.negotiation_timer = None
        elif state == CallState.ACTIVE and session.duration_timer is not None:
            session.duration_timer.cancel()
            session.duration_timer = None

    def _enter_state(self, session: CallSession, state: CallState) -> None:
        if state == CallState.NEGOTIATING:
            session.negotiation_timer = Timer(
                self._sched(),
                self._config.negotiation_timeout_sec,
                functools.partial(self._on_negotiation_timeout, session),
                name="negotiation-timeout",
            )
        elif state == CallState.ACTIVE:
            session.duration_timer = Ticker(
                self._sched(),
                self._config.duration_tick_sec,
                functools.partial(self._on_duration_tick, session),
                name="call-duration",
            )

    def _on_negotiation_timeout(self, session: CallSession) -> None:
        if not self._is_current(session) or session.state != CallState.NEGOTIATING:
            return
        logger.warning("call negotiation timeout peer=%s after=%ss", session.peer_id, self._config.negotiation_timeout_sec)
        self._spawn(self._expire(session))

    async def _expire(self, session: CallSession) -> None:
        if session.state == CallState.NEGOTIATING:
            await self._fail(session, ErrorKind.NEGOTIATION_TIMEOUT)

    def _on_duration_tick(self, session: CallSession, ticks: int) -> None:
        if not self._is_current(session) or session.state != CallState.ACTIVE:
            return
        session.duration_seconds = ticks
        self._spawn(self._notify(self._callbacks.on_duration, ticks))

    async def _fail(self, session: CallSession, kind: ErrorKind, notify: Optional[AsyncCallback] = None) -> None:
        """Attach the error, surface it, then tear down.

        Unless told otherwise, the peer gets a best-effort call-ended once it
        has seen our call-request/call-answered.
        """
        if not self._is_current(session):
            return
        session.last_error = kind
        self._last_error = kind
        logger.warning("call failed peer=%s state=%s error=%s", session.peer_id, session.state.value, kind.value)
        if notify is None and session.signaled:
            notify = self._signaling.send_call_ended
        try:
            await self._log(f"Call error: {kind.describe()}")
            await self._notify(self._callbacks.on_error, kind)
        finally:
            await self._teardown(session, notify=notify)

    async def _teardown(self, session: CallSession, notify: Optional[AsyncCallback] = None) -> None:
        """Stop tracks, close the transport, clear timers. Runs once per session."""
        if not self._is_current(session):
            return
        self._session = None
        session.pending = None
        session.pending_candidates.clear()
        session.cancel_timers()

        prev = session.state
        error = session.last_error
        session.state = CallState.ENDED
        self._state = CallState.ENDED
        self._last_error = error
        logger.info("call state %s -> ended peer=%s error=%s", prev.value, session.peer_id, error.value if error else None)

        stream, session.local_stream = session.local_stream, None
        try:
            self._media.release(stream)
        except Exception:
            logger.warning("call media release failed peer=%s", session.peer_id, exc_info=True)
        transport, session.transport = session.transport, None
        session.remote_stream = None
        session.muted = session.video_off = False

        if notify is not None:
            await self._send_best_effort(notify, session.peer_id)
        if transport is not None:
            try:
                await transport.close()
            except Exception:
                logger.warning("call transport close failed peer=%s", session.peer_id, exc_info=True)

        await self._emit_state()
        if error is None and self._session is None and self._state == CallState.ENDED:
            await self._enter_idle()

    async def _leave_ended(self) -> None:
        if self._state == CallState.ENDED:
            await self._enter_idle()

    async def _enter_idle(self) -> None:
        self._state = CallState.IDLE
        self._last_error = None
        logger.debug("call state -> idle")
        await self._emit_state()

    async def _send_best_effort(self, send: AsyncCallback, *args: Any) -> None:
        try:
            await send(*args)
        except SignalingUnavailable as e:
            logger.info("signaling send skipped: %s", e.message)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("call background task failed", exc_info=task.exception())

    async def _notify(self, callback: Optional[AsyncCallback], *args: Any) -> None:
        # Observers never get to abort a transition or a teardown.
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception:
            logger.exception("call observer failed callback=%s", getattr(callback, "__name__", callback))

    async def _emit_state(self) -> None:
        await self._notify(self._callbacks.on_state, self._state)

    async def _emit_flags(self, session: CallSession) -> None:
        await self._notify(self._callbacks.on_flags, session.muted, session.video_off)

    async def _log(self, message: str) -> None:
        await self._notify(self._callbacks.on_log, message)
