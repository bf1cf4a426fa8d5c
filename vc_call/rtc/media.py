"""Local capture devices and remote media for aiortc.

Scope:
- Acquire microphone (and camera for video calls) as aiortc tracks.
- Mute / camera-off by flipping a pass-through track's enabled flag, so the
  transport never has to renegotiate.
- Provide a best-effort sink for remote media (playback if possible, else discard).
"""

from __future__ import annotations

import asyncio
import errno
import logging
import platform
from dataclasses import dataclass, field
from fractions import Fraction
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Tuple

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from ..call.config import MediaConfig
from ..call.errors import ErrorKind, MediaDeviceError

try:
	import numpy as np  # type: ignore
except Exception:  # pragma: no cover
	np = None  # type: ignore

try:
	import sounddevice as sd  # type: ignore
except Exception:  # pragma: no cover
	# PortAudio missing on the host raises OSError at import time.
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


AUDIO = "audio"
VIDEO = "video"

# Most specific first when several candidate devices fail differently.
_ERROR_RANK = (
	ErrorKind.PERMISSION_DENIED,
	ErrorKind.DEVICE_BUSY,
	ErrorKind.DEVICE_NOT_FOUND,
	ErrorKind.UNKNOWN,
)


def _is_windows() -> bool:
	return platform.system().lower().startswith("win")


def _is_macos() -> bool:
	return platform.system() == "Darwin"


def classify_device_error(exc: BaseException) -> ErrorKind:
	"""Map a capture backend exception onto the device error taxonomy."""
	if isinstance(exc, MediaDeviceError):
		return exc.kind
	if isinstance(exc, PermissionError):
		return ErrorKind.PERMISSION_DENIED
	if isinstance(exc, FileNotFoundError):
		return ErrorKind.DEVICE_NOT_FOUND

	code = getattr(exc, "errno", None)
	if code in (errno.EACCES, errno.EPERM):
		return ErrorKind.PERMISSION_DENIED
	if code == errno.EBUSY:
		return ErrorKind.DEVICE_BUSY
	if code in (errno.ENOENT, errno.ENODEV, errno.ENXIO):
		return ErrorKind.DEVICE_NOT_FOUND

	# PortAudio and some ffmpeg demuxers only report via the message.
	text = str(exc).casefold()
	if "permission" in text or "denied" in text:
		return ErrorKind.PERMISSION_DENIED
	if "busy" in text or "unavailable" in text or "in use" in text:
		return ErrorKind.DEVICE_BUSY
	if "not found" in text or "no such" in text or "no default" in text or "invalid device" in text:
		return ErrorKind.DEVICE_NOT_FOUND
	return ErrorKind.UNKNOWN


def _most_specific(kinds: List[ErrorKind]) -> ErrorKind:
	for k in _ERROR_RANK:
		if k in kinds:
			return k
	return ErrorKind.UNKNOWN


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
	silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
	for plane in silent.planes:
		plane.update(bytes(plane.buffer_size))
	silent.sample_rate = frame.sample_rate
	_copy_timing(frame, silent)
	return silent


def _black_like(frame: av.VideoFrame) -> av.VideoFrame:
	black = av.VideoFrame(frame.width, frame.height, "rgb24")
	for plane in black.planes:
		plane.update(bytes(plane.buffer_size))
	_copy_timing(frame, black)
	return black


def _copy_timing(src: av.frame.Frame, dst: av.frame.Frame) -> None:
	# Newer PyAV rejects None for time_base; leave the default in place.
	if src.pts is not None:
		dst.pts = src.pts
	if src.time_base is not None:
		dst.time_base = src.time_base


class SwitchableTrack(MediaStreamTrack):
	"""Pass-through track whose output can be blanked without detaching it.

	While disabled, audio frames are replaced by silence and video frames by
	black frames of the same geometry and timing. The sender keeps running,
	so toggling never touches the negotiated session.
	"""

	def __init__(self, source: MediaStreamTrack, *, owner: Any = None):
		super().__init__()
		self.kind = source.kind
		self.enabled = True
		self._source = source
		# Keeps a MediaPlayer alive for as long as its track is.
		self._owner = owner

	@property
	def source(self) -> MediaStreamTrack:
		return self._source

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled:
			return frame
		if isinstance(frame, av.AudioFrame):
			return _silence_like(frame)
		if isinstance(frame, av.VideoFrame):
			return _black_like(frame)
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


class SoundDeviceAudioTrack(MediaStreamTrack):
	"""Microphone capture through PortAudio (Windows path)."""

	kind = "audio"

	def __init__(
		self,
		*,
		device: Any = None,
		samplerate: int = 48000,
		channels: int = 1,
		blocksize: int = 960,
	):
		super().__init__()
		self._samplerate = int(samplerate)
		self._channels = int(channels)
		self._queue: Queue[bytes] = Queue(maxsize=50)
		self._timestamp = 0
		self._time_base = Fraction(1, self._samplerate)
		self._stream = None

		if sd is None or np is None:
			raise RuntimeError("sounddevice/numpy not available")

		def _callback(indata, frames, time, status) -> None:  # noqa: ANN001
			try:
				self._queue.put_nowait(bytes(indata))
			except Exception:
				# Drop if consumer is too slow.
				pass

		# Raw stream gives us bytes directly (int16 PCM).
		self._stream = sd.RawInputStream(
			samplerate=self._samplerate,
			channels=self._channels,
			dtype="int16",
			blocksize=int(blocksize),
			device=device,
			callback=_callback,
		)
		self._stream.start()
		logger.info("local audio using sounddevice device=%s rate=%s ch=%s", device, self._samplerate, self._channels)

	async def recv(self):  # type: ignore[override]
		if self.readyState != "live":
			raise asyncio.CancelledError
		assert np is not None

		loop = asyncio.get_running_loop()
		data = await loop.run_in_executor(None, self._next_block)
		if data is None:
			raise asyncio.CancelledError

		samples = len(data) // (self._channels * 2)
		arr = np.frombuffer(data, dtype=np.int16).reshape((1, samples * self._channels))
		layout = "mono" if self._channels == 1 else "stereo"
		frame = av.AudioFrame.from_ndarray(arr, format="s16", layout=layout)
		frame.sample_rate = self._samplerate
		frame.pts = self._timestamp
		frame.time_base = self._time_base
		self._timestamp += samples
		return frame

	def _next_block(self) -> Optional[bytes]:
		while self.readyState == "live":
			try:
				return self._queue.get(timeout=0.5)
			except Empty:
				continue
		return None

	def stop(self) -> None:  # type: ignore[override]
		try:
			if self._stream is not None:
				self._stream.stop()
				self._stream.close()
		except Exception:
			logger.debug("sounddevice stream close failed", exc_info=True)
		finally:
			self._stream = None
			super().stop()


@dataclass
class LocalStream:
	"""Owns the capture tracks of one call attempt."""

	kind: str
	audio: Optional[SwitchableTrack] = None
	video: Optional[SwitchableTrack] = None
	released: bool = False

	def tracks(self) -> List[SwitchableTrack]:
		return [t for t in (self.audio, self.video) if t is not None]

	def track(self, track_type: str) -> Optional[SwitchableTrack]:
		if track_type == AUDIO:
			return self.audio
		if track_type == VIDEO:
			return self.video
		raise ValueError(f"unknown track type: {track_type!r}")

	def stop(self) -> None:
		"""Stop every capture track. Safe to call more than once."""
		if self.released:
			return
		self.released = True
		for t in self.tracks():
			try:
				t.stop()
			except Exception:
				logger.warning("local %s track stop failed", t.kind, exc_info=True)


@dataclass
class RemoteStream:
	"""Incoming media of one call attempt, keyed by track kind."""

	tracks: Dict[str, MediaStreamTrack] = field(default_factory=dict)

	@property
	def audio(self) -> Optional[MediaStreamTrack]:
		return self.tracks.get(AUDIO)

	@property
	def video(self) -> Optional[MediaStreamTrack]:
		return self.tracks.get(VIDEO)

	def add(self, track: MediaStreamTrack) -> bool:
		if track.kind in self.tracks:
			return False
		self.tracks[track.kind] = track
		return True


class RemoteMediaSink:
	"""Consumes remote tracks.

	Audio goes to the system output if ffmpeg supports it, else everything is
	discarded. Rendering video is left to the UI.
	"""

	def __init__(self) -> None:
		self._recorders: List[Any] = []

	async def add_track(self, track: MediaStreamTrack) -> str:
		recorder, sink = self._create_recorder(track.kind)
		logger.info("remote media sink=%s track_kind=%s", sink, track.kind)
		recorder.addTrack(track)
		await recorder.start()
		self._recorders.append(recorder)
		return sink

	@staticmethod
	def _create_recorder(kind: str) -> Tuple[Any, str]:
		if kind == AUDIO and not _is_windows():
			for fmt in ("pulse", "alsa"):
				try:
					return MediaRecorder("default", format=fmt), f"{fmt}:default"
				except Exception:
					logger.debug("remote audio sink %s unavailable", fmt, exc_info=True)
		return MediaBlackhole(), "blackhole"

	async def stop(self) -> None:
		recorders, self._recorders = self._recorders, []
		for recorder in recorders:
			try:
				await recorder.stop()
			except Exception:
				logger.debug("remote sink stop failed", exc_info=True)


def _audio_candidates(config: MediaConfig) -> List[Tuple[str, Optional[str]]]:
	if config.audio_device:
		return [(config.audio_device, config.audio_format)]
	if _is_macos():
		return [(":default", "avfoundation")]
	# PulseAudio is typical on desktop Linux, ALSA as fallback.
	return [("default", "pulse"), ("default", "alsa")]


def _video_candidates(config: MediaConfig) -> List[Tuple[str, Optional[str]]]:
	if config.video_device:
		return [(config.video_device, config.video_format)]
	if _is_macos():
		return [("default:none", "avfoundation")]
	if _is_windows():
		return [("video=Integrated Camera", "dshow")]
	return [("/dev/video0", "v4l2")]


class MediaDeviceSource:
	"""Acquires and releases local capture devices for a call."""

	def __init__(self, config: Optional[MediaConfig] = None):
		self._config = config or MediaConfig()

	async def acquire(self, kind: str) -> LocalStream:
		"""Open the microphone, plus the camera for video calls.

		Raises MediaDeviceError; nothing is left open on failure.
		"""
		loop = asyncio.get_running_loop()
		return await loop.run_in_executor(None, self._open, kind)

	def release(self, stream: Optional[LocalStream]) -> None:
		if stream is None:
			return
		stream.stop()

	def set_track_enabled(self, stream: Optional[LocalStream], track_type: str, enabled: bool) -> bool:
		"""Flip one track's enabled flag. Returns False when there is no such track."""
		if stream is None or stream.released:
			return False
		track = stream.track(track_type)
		if track is None:
			return False
		track.enabled = bool(enabled)
		logger.debug("local %s track enabled=%s", track_type, track.enabled)
		return True

	def _open(self, kind: str) -> LocalStream:
		audio = self._open_audio()
		video: Optional[SwitchableTrack] = None
		if kind == VIDEO:
			try:
				video = self._open_video()
			except Exception:
				audio.stop()
				raise
		logger.info("local media acquired kind=%s audio=%s video=%s", kind, bool(audio), bool(video))
		return LocalStream(kind=kind, audio=audio, video=video)

	def _open_audio(self) -> SwitchableTrack:
		# Windows-first: capture via sounddevice to get real device selection.
		if _is_windows() and sd is not None and np is not None:
			device = self._config.audio_device
			try:
				return SwitchableTrack(SoundDeviceAudioTrack(device=device))
			except Exception as e:
				logger.warning("sounddevice capture init failed: %s", e)
				raise MediaDeviceError(classify_device_error(e), str(e)) from e
		return self._open_player(AUDIO, _audio_candidates(self._config), {})

	def _open_video(self) -> SwitchableTrack:
		options: Dict[str, str] = {"framerate": "30"}
		if self._config.video_size:
			options["video_size"] = "%dx%d" % self._config.video_size
		return self._open_player(VIDEO, _video_candidates(self._config), options)

	def _open_player(self, kind: str, candidates: List[Tuple[str, Optional[str]]], options: Dict[str, str]) -> SwitchableTrack:
		failures: List[ErrorKind] = []
		last_exc: Optional[BaseException] = None
		for device, fmt in candidates:
			try:
				player = MediaPlayer(device, format=fmt, options=options or None)
			except Exception as e:
				logger.debug("local %s open failed device=%s format=%s: %s", kind, device, fmt, e)
				failures.append(classify_device_error(e))
				last_exc = e
				continue
			track = player.audio if kind == AUDIO else player.video
			if track is None:
				for other in (player.audio, player.video):
					if other is not None:
						other.stop()
				failures.append(ErrorKind.DEVICE_NOT_FOUND)
				continue
			logger.info("local %s backend=%s device=%s", kind, fmt, device)
			return SwitchableTrack(track, owner=player)

		err = _most_specific(failures)
		raise MediaDeviceError(err, f"{kind} capture unavailable ({last_exc or 'no stream'})")
