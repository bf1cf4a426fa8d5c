import pytest

from vc_call.net import protocol


def test_call_request_schema_is_field_exact():
    msg = protocol.make_call_request("u2", "v=0", "u1", "Alice", "video")
    assert msg == {
        "type": "call-request",
        "data": {
            "userToCall": "u2",
            "signalData": {"type": "offer", "sdp": "v=0"},
            "from": "u1",
            "name": "Alice",
            "callType": "video",
        },
    }


def test_call_request_rejects_unknown_call_type():
    with pytest.raises(protocol.ProtocolError):
        protocol.make_call_request("u2", "v=0", "u1", "Alice", "fax")


def test_simple_event_payloads():
    assert protocol.make_call_declined("u2") == {"type": "call-declined", "data": {"to": "u2"}}
    assert protocol.make_call_ended("u2") == {"type": "call-ended", "data": {"to": "u2"}}
    assert protocol.make_call_answered("u2", "v=0") == {
        "type": "call-answered",
        "data": {"to": "u2", "signal": {"type": "answer", "sdp": "v=0"}},
    }
    cand = {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    assert protocol.make_ice_candidate("u2", cand) == {"type": "ice-candidate", "data": {"to": "u2", "candidate": cand}}


def test_make_pong_echoes_timestamp():
    assert protocol.make_pong(12) == {"type": "pong", "ts": 12}
    assert protocol.make_pong() == {"type": "pong"}


def test_parse_call_request_accepts_relayed_signal_key():
    req = protocol.parse_call_request(
        {"from": "u1", "name": "Alice", "signal": {"type": "offer", "sdp": "v=0"}, "callType": "voice"}
    )
    assert req.from_peer == "u1"
    assert req.name == "Alice"
    assert req.call_type == "voice"
    assert req.offer == {"type": "offer", "sdp": "v=0"}


def test_parse_call_request_defaults_name_to_sender():
    req = protocol.parse_call_request({"from": "u1", "signalData": {"type": "offer", "sdp": "v=0"}, "callType": "video"})
    assert req.name == "u1"


@pytest.mark.parametrize(
    "data",
    [
        None,
        {"signalData": {"type": "offer", "sdp": "v=0"}},
        {"from": "u1", "signalData": {"type": "answer", "sdp": "v=0"}},
        {"from": "u1", "signalData": {"type": "offer"}},
        {"from": "u1", "signalData": {"type": "offer", "sdp": "v=0"}, "callType": "fax"},
    ],
)
def test_parse_call_request_rejects_malformed(data):
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_call_request(data)


def test_parse_call_answered_bare_and_wrapped():
    assert protocol.parse_call_answered({"type": "answer", "sdp": "v=0"}) == {"type": "answer", "sdp": "v=0"}
    assert protocol.parse_call_answered({"to": "u1", "signal": {"type": "answer", "sdp": "v=0"}}) == {
        "type": "answer",
        "sdp": "v=0",
    }


def test_parse_ice_candidate_nested_and_bare():
    nested = protocol.parse_ice_candidate(
        {"to": "u1", "candidate": {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host", "sdpMid": "0", "sdpMLineIndex": "0"}}
    )
    assert nested == {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    bare = protocol.parse_ice_candidate({"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host"})
    assert bare == {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host"}

    with pytest.raises(protocol.ProtocolError):
        protocol.parse_ice_candidate({"to": "u1"})


def test_sender_of():
    assert protocol.sender_of({"to": "u1", "from": "u2"}) == "u2"
    assert protocol.sender_of({"to": "u1"}) is None
    assert protocol.sender_of("v=0") is None
