"""WebSocket signaling channel for calls.

Knows nothing about aiortc or call state. Frames are JSON objects (see
`protocol.py`); channel messages are handled here, call events are routed
through one table of handlers keyed by event name.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from ..call.errors import SignalingUnavailable
from . import protocol


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
EventHandler = Callable[[Any], Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_welcome: Optional[AsyncCallback] = None  # (peer_id: str)
	on_closed: Optional[AsyncCallback] = None  # ()
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class SignalingClient:
	def __init__(self, url: str, callbacks: Optional[SignalingCallbacks] = None):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()
		self.peer_id: Optional[str] = None

		self._handlers: Dict[str, EventHandler] = {}
		self._channel: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
			protocol.PING: self._on_ping,
			protocol.WELCOME: self._on_welcome,
			protocol.ERROR: self._on_server_error,
		}
		# The connection object's class differs across websockets releases.
		self._ws: Optional[Any] = None
		self._reader: Optional[asyncio.Task[None]] = None
		self._write_lock = asyncio.Lock()
		self._open = asyncio.Event()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._open.is_set()

	def on(self, event: str, handler: EventHandler) -> None:
		"""Register the handler for one inbound call event.

		Each event has exactly one handler for the client's lifetime.
		"""
		if event in self._handlers:
			raise ValueError(f"handler already registered for {event!r}")
		self._handlers[event] = handler

	async def connect(self) -> None:
		if self._reader is not None and not self._reader.done():
			return
		logger.info("signaling connect url=%s", self.url)
		await self._log(f"Connecting to {self.url}")
		try:
			ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("signaling connect failed url=%s", self.url)
			await self._report("connect-failed", {"url": self.url})
			return
		self._ws = ws
		self._open.set()
		self._reader = asyncio.create_task(self._read_frames(ws), name="signaling-reader")

	async def disconnect(self) -> None:
		logger.info("signaling disconnect")
		await self._log("Disconnecting")
		self._open.clear()
		reader, self._reader = self._reader, None
		if reader is not None:
			reader.cancel()
			try:
				await reader
			except asyncio.CancelledError:
				pass

		ws, self._ws = self._ws, None
		if ws is not None:
			await self._close_quietly(ws)
		self.peer_id = None

	async def register(self, user_id: str, name: str) -> None:
		await self._send(protocol.make_register(user_id, name))

	async def send_call_request(self, to_peer: str, offer_sdp: str, from_peer: str, from_name: str, call_type: str) -> None:
		await self._send(protocol.make_call_request(to_peer, offer_sdp, from_peer, from_name, call_type))

	async def send_call_answered(self, to_peer: str, answer_sdp: str) -> None:
		await self._send(protocol.make_call_answered(to_peer, answer_sdp))

	async def send_call_declined(self, to_peer: str) -> None:
		await self._send(protocol.make_call_declined(to_peer))

	async def send_call_ended(self, to_peer: str) -> None:
		await self._send(protocol.make_call_ended(to_peer))

	async def send_ice_candidate(self, to_peer: str, candidate: protocol.IceCandidateDict) -> None:
		await self._send(protocol.make_ice_candidate(to_peer, candidate))

	async def _send(self, payload: Dict[str, Any]) -> None:
		ws = self._ws
		if ws is None or not self._open.is_set():
			raise SignalingUnavailable("Signaling not connected")

		event = payload.get("type")
		data = payload.get("data")
		to_peer = None
		if isinstance(data, dict):
			to_peer = data.get("userToCall") or data.get("to")
		# Candidates are frequent; keep them at DEBUG.
		level = logging.DEBUG if event in (protocol.ICE_CANDIDATE, protocol.PONG) else logging.INFO
		logger.log(level, "signaling send event=%s to=%s", event, to_peer)

		frame = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		try:
			async with self._write_lock:
				await ws.send(frame)
		except websockets.ConnectionClosed as e:
			raise SignalingUnavailable(f"Signaling connection closed: {e}") from e

	async def handle_raw(self, raw: Any) -> None:
		"""Decode one inbound frame and route it."""
		try:
			msg = json.loads(raw)
		except (TypeError, json.JSONDecodeError):
			await self._report("invalid-json", {"raw": raw})
			return
		if not isinstance(msg, dict):
			await self._report("invalid-message", {"msg": msg})
			return
		event = msg.get("type")
		if not isinstance(event, str):
			await self._report("missing-type", msg)
			return

		channel = self._channel.get(event)
		if channel is not None:
			await channel(msg)
			return

		handler = self._handlers.get(event)
		if handler is None:
			await self._report("unknown-type", msg)
			return
		logger.debug("signaling recv event=%s", event)
		try:
			await handler(msg.get("data"))
		except Exception as e:
			logger.exception("signaling handler failed event=%s", event)
			await self._report(f"handler-exception: {e}", {"type": event})

	async def _on_ping(self, msg: Dict[str, Any]) -> None:
		await self._send(protocol.make_pong(msg.get("ts")))

	async def _on_welcome(self, msg: Dict[str, Any]) -> None:
		self.peer_id = str(msg.get("peer_id") or "") or None
		logger.info("signaling registered peer_id=%s", self.peer_id)
		if self.peer_id and self.callbacks.on_welcome:
			await self.callbacks.on_welcome(self.peer_id)

	async def _on_server_error(self, msg: Dict[str, Any]) -> None:
		await self._report(str(msg.get("error") or "error"), msg)

	async def _read_frames(self, ws: Any) -> None:
		logger.debug("signaling reader started")
		try:
			async for raw in ws:
				await self.handle_raw(raw)
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.exception("signaling reader crashed")
			await self._report(f"recv-loop-exception: {e}", {})
		finally:
			self._open.clear()
			logger.debug("signaling reader stopped")
			await self._close_quietly(ws)
			# A newer connect() may have replaced the socket already.
			if self._ws is ws:
				self._ws = None
				if self.callbacks.on_closed:
					await self.callbacks.on_closed()

	@staticmethod
	async def _close_quietly(ws: Any) -> None:
		try:
			await ws.close()
		except Exception:
			logger.debug("signaling close failed", exc_info=True)

	async def _report(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
