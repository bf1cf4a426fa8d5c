"""Signaling protocol helpers.

The coordination server relays JSON objects over a single WebSocket.
Call events travel as ``{"type": <event>, "data": <payload>}``; the channel
level messages (register/welcome/ping/pong/error) are flat objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, TypedDict


# Channel message type constants
REGISTER = "register"
WELCOME = "welcome"
PING = "ping"
PONG = "pong"
ERROR = "error"

# Call events
CALL_REQUEST = "call-request"
CALL_ANSWERED = "call-answered"
CALL_DECLINED = "call-declined"
CALL_ENDED = "call-ended"
ICE_CANDIDATE = "ice-candidate"

CALL_TYPES = ("voice", "video")


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


@dataclass(frozen=True)
class CallRequest:
	"""Inbound ``call-request``."""

	from_peer: str
	name: str
	call_type: str
	offer: SessionDescriptionDict


def make_register(user_id: str, name: str) -> Dict[str, Any]:
	return {"type": REGISTER, "userId": user_id, "name": name}


def make_pong(ts: Optional[int] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": PONG}
	if ts is not None:
		msg["ts"] = ts
	return msg


def make_event(event: str, data: Any) -> Dict[str, Any]:
	return {"type": event, "data": data}


def make_description(sdp_type: str, sdp: str) -> SessionDescriptionDict:
	return {"type": sdp_type, "sdp": sdp}


def make_call_request(to_peer: str, offer_sdp: str, from_peer: str, from_name: str, call_type: str) -> Dict[str, Any]:
	if call_type not in CALL_TYPES:
		raise ProtocolError(f"invalid callType: {call_type!r}")
	return make_event(
		CALL_REQUEST,
		{
			"userToCall": to_peer,
			"signalData": make_description("offer", offer_sdp),
			"from": from_peer,
			"name": from_name,
			"callType": call_type,
		},
	)


def make_call_answered(to_peer: str, answer_sdp: str) -> Dict[str, Any]:
	return make_event(CALL_ANSWERED, {"to": to_peer, "signal": make_description("answer", answer_sdp)})


def make_call_declined(to_peer: str) -> Dict[str, Any]:
	return make_event(CALL_DECLINED, {"to": to_peer})


def make_call_ended(to_peer: str) -> Dict[str, Any]:
	return make_event(CALL_ENDED, {"to": to_peer})


def make_ice_candidate(to_peer: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return make_event(ICE_CANDIDATE, {"to": to_peer, "candidate": candidate})


def _parse_description(obj: Any, expected_type: str) -> SessionDescriptionDict:
	if isinstance(obj, str):
		return make_description(expected_type, obj)
	if not isinstance(obj, dict):
		raise ProtocolError(f"{expected_type}: description must be an object")
	sdp = obj.get("sdp")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"{expected_type}: missing sdp")
	sdp_type = str(obj.get("type") or expected_type)
	if sdp_type != expected_type:
		raise ProtocolError(f"expected {expected_type} description, got {sdp_type}")
	return make_description(sdp_type, sdp)


def parse_call_request(data: Any) -> CallRequest:
	if not isinstance(data, dict):
		raise ProtocolError("call-request: payload must be an object")
	from_peer = str(data.get("from") or "")
	if not from_peer:
		raise ProtocolError("call-request: missing from")
	call_type = str(data.get("callType") or "voice")
	if call_type not in CALL_TYPES:
		raise ProtocolError(f"call-request: invalid callType {call_type!r}")
	# The relay may rename signalData to signal.
	raw_offer = data.get("signalData", data.get("signal"))
	return CallRequest(
		from_peer=from_peer,
		name=str(data.get("name") or from_peer),
		call_type=call_type,
		offer=_parse_description(raw_offer, "offer"),
	)


def parse_call_answered(data: Any) -> SessionDescriptionDict:
	if isinstance(data, dict) and "sdp" not in data and "signal" in data:
		data = data["signal"]
	return _parse_description(data, "answer")


def parse_ice_candidate(data: Any) -> IceCandidateDict:
	if not isinstance(data, dict):
		raise ProtocolError("ice-candidate: payload must be an object")
	cand = data.get("candidate")
	# Accept both {to, candidate: {...}} and a bare candidate object.
	if isinstance(cand, dict):
		data = cand
		cand = data.get("candidate")
	if not isinstance(cand, str) or not cand:
		raise ProtocolError("ice-candidate: missing candidate")
	out: IceCandidateDict = {"candidate": cand}
	if "sdpMid" in data:
		out["sdpMid"] = data.get("sdpMid")
	if "sdpMLineIndex" in data:
		idx = data.get("sdpMLineIndex")
		out["sdpMLineIndex"] = int(idx) if idx is not None else None
	return out


def sender_of(data: Any) -> Optional[str]:
	"""Return the optional ``from`` field of an inbound payload."""
	if isinstance(data, dict):
		sender = data.get("from")
		if sender:
			return str(sender)
	return None
