from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

from PySide6 import QtCore, QtWidgets

from ..call.config import CallConfig
from ..call.errors import ErrorKind
from ..call.machine import CallCallbacks, CallStateMachine, LocalUser
from ..call.session import CallKind, CallRole, CallState, format_duration
from ..net.signaling_client import SignalingCallbacks, SignalingClient
from ..rtc.media import MediaDeviceSource, RemoteStream
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread(threading.Thread):
    """Hosts the call loop next to Qt's main loop.

    Everything touching signaling, media or the call machine runs on this
    loop; Qt slots hand work over with `submit`.
    """

    def __init__(self):
        super().__init__(name="call-loop", daemon=True)
        self._loop = asyncio.new_event_loop()
        self._running = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def start(self) -> None:
        if self.is_alive():
            return
        super().start()
        if not self._running.wait(timeout=5):
            raise RuntimeError("call loop did not start")

    def run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._running.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
            logger.debug("call loop closed")

    def stop(self) -> None:
        if self.is_alive():
            self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        if not self._running.is_set():
            coro.close()
            raise RuntimeError("call loop not started")
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        fut.add_done_callback(_log_failure)
        return fut


def _log_failure(fut: Future) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        logger.error("ui action failed", exc_info=fut.exception())


class UiBridge(QtCore.QObject):
    """Qt signals emitted from the call loop, delivered on the GUI thread."""

    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    connection = QtCore.Signal(str)
    call_state = QtCore.Signal(str)
    peer = QtCore.Signal(str)
    duration = QtCore.Signal(str)
    error = QtCore.Signal(str)
    incoming = QtCore.Signal(str, str)
    flags = QtCore.Signal(bool, bool)


@dataclass
class AppConfig:
    server_url: str
    user_id: str
    name: str


class VCCallApp(QtCore.QObject):
    def __init__(self, cfg: AppConfig, call_config: Optional[CallConfig] = None):
        super().__init__()
        self.cfg = cfg
        self.call_config = call_config or CallConfig.from_env()
        self.local_user = LocalUser(user_id=cfg.user_id, name=cfg.name)

        self.window = MainWindow()
        self.bridge = UiBridge()
        self.loop_thread = AsyncioThread()

        self.signaling = SignalingClient(
            cfg.server_url,
            SignalingCallbacks(
                on_log=self._log,
                on_welcome=self._registered,
                on_closed=self._channel_closed,
                on_error=self._channel_error,
            ),
        )
        self.calls = CallStateMachine(
            self.signaling,
            MediaDeviceSource(self.call_config.media),
            self.local_user,
            config=self.call_config,
            callbacks=CallCallbacks(
                on_log=self._log,
                on_state=self._call_state,
                on_incoming=self._incoming,
                on_duration=self._duration,
                on_flags=self._flags,
                on_error=self._call_error,
                on_remote_stream=self._remote_stream,
            ),
        )

        self._connect_window()
        self._connect_bridge()

        w = self.window
        w.server_url_edit.setText(cfg.server_url)
        w.user_id_edit.setText(cfg.user_id)
        w.name_edit.setText(cfg.name)

    def start(self) -> None:
        self.loop_thread.start()
        self.window.show()
        self.bridge.status.emit("Ready")
        logger.info("ui started url=%s user=%s", self.cfg.server_url, self.cfg.user_id)

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        try:
            self.loop_thread.submit(self._hang_up_and_disconnect()).result(timeout=5)
        except Exception:
            logger.warning("ui shutdown incomplete", exc_info=True)
        self.loop_thread.stop()

    def _run(self, coro: Coroutine[Any, Any, Any]) -> None:
        self.loop_thread.submit(coro)

    async def _hang_up_and_disconnect(self) -> None:
        await self.calls.shutdown()
        await self.signaling.disconnect()

    async def _connect_and_register(self) -> None:
        await self.signaling.connect()
        if self.signaling.is_connected:
            await self.signaling.register(self.local_user.user_id, self.local_user.name)

    def _connect_window(self) -> None:
        w = self.window
        w.connect_clicked.connect(self._on_connect_clicked)
        w.disconnect_clicked.connect(self._on_disconnect_clicked)
        w.call_clicked.connect(self._on_call_clicked)
        w.accept_clicked.connect(lambda: self._run(self.calls.accept_call()))
        w.decline_clicked.connect(lambda: self._run(self.calls.decline_call()))
        w.end_clicked.connect(lambda: self._run(self.calls.end_call()))
        w.mute_clicked.connect(lambda: self._run(self.calls.toggle_mute()))
        w.camera_clicked.connect(lambda: self._run(self.calls.toggle_video()))

    def _connect_bridge(self) -> None:
        w, card, b = self.window, self.window.status_card, self.bridge
        b.log.connect(w.log_panel.append_log)
        b.status.connect(w.set_status)
        b.connection.connect(card.set_connection_state)
        b.call_state.connect(self._render_call_state)
        b.peer.connect(card.set_peer)
        b.duration.connect(card.set_duration)
        b.error.connect(card.set_error)
        b.incoming.connect(w.incoming_banner.show_call)
        b.flags.connect(w.set_flags)

    @QtCore.Slot()
    def _on_connect_clicked(self) -> None:
        w = self.window
        user_id = w.user_id_edit.text().strip()
        if not user_id:
            self.bridge.log.emit("User id is required")
            return
        self.signaling.url = w.server_url_edit.text().strip()
        self.local_user.user_id = user_id
        self.local_user.name = w.name_edit.text().strip() or user_id
        logger.info("ui connect url=%s user=%s", self.signaling.url, user_id)
        self.bridge.connection.emit("Connecting...")
        self._run(self._connect_and_register())

    @QtCore.Slot()
    def _on_disconnect_clicked(self) -> None:
        logger.info("ui disconnect")
        self.bridge.status.emit("Disconnecting...")
        self._run(self._hang_up_and_disconnect())

    @QtCore.Slot(str)
    def _on_call_clicked(self, kind: str) -> None:
        peer_id = self.window.peer_id_edit.text().strip()
        if not peer_id:
            self.bridge.log.emit("Peer id is required")
            return
        peer_name = self.window.peer_name_edit.text().strip() or peer_id
        logger.info("ui call peer=%s kind=%s", peer_id, kind)
        self.bridge.error.emit("")
        self._run(self.calls.initiate_call(peer_id, peer_name, kind))

    @QtCore.Slot(str)
    def _render_call_state(self, state: str) -> None:
        card = self.window.status_card
        card.set_call_state(state)
        self.window.set_call_controls(state, video=self.calls.kind == CallKind.VIDEO)
        if state == CallState.IDLE.value:
            card.set_duration(format_duration(0))
            card.set_peer("")

    # Callbacks below run on the call loop; they only emit bridge signals.

    async def _log(self, message: str) -> None:
        self.bridge.log.emit(message)

    async def _registered(self, peer_id: str) -> None:
        self.bridge.status.emit(f"Registered as {peer_id}")
        self.bridge.connection.emit("Connected")

    async def _channel_closed(self) -> None:
        self.bridge.status.emit("Disconnected")
        self.bridge.connection.emit("Disconnected")

    async def _channel_error(self, error: str, payload: dict) -> None:
        self.bridge.log.emit(f"Signaling error: {error} {payload}")
        self.bridge.status.emit(f"Signaling error: {error}")

    async def _call_state(self, state: CallState) -> None:
        self.bridge.call_state.emit(state.value)
        peer, role = self.calls.peer, self.calls.role
        if peer is not None and role is not None:
            peer_id, peer_name = peer
            direction = "outgoing" if role == CallRole.CALLER else "incoming"
            self.bridge.peer.emit(f"{peer_name} ({peer_id}, {direction})")

    async def _incoming(self, peer_id: str, peer_name: str, kind: CallKind) -> None:
        self.bridge.incoming.emit(f"{peer_name} ({peer_id})", kind.value)

    async def _duration(self, seconds: int) -> None:
        self.bridge.duration.emit(format_duration(seconds))

    async def _flags(self, muted: bool, video_off: bool) -> None:
        self.bridge.flags.emit(muted, video_off)

    async def _call_error(self, kind: ErrorKind) -> None:
        self.bridge.error.emit(kind.describe())

    async def _remote_stream(self, stream: RemoteStream) -> None:
        self.bridge.log.emit(f"Receiving remote media ({', '.join(sorted(stream.tracks))})")


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
    return app  # type: ignore[return-value]
