from vc_call.call.config import DEFAULT_ICE_SERVERS, CallConfig
from vc_call.call.errors import ErrorKind
from vc_call.call.session import format_duration


def test_defaults():
    cfg = CallConfig()
    assert cfg.negotiation_timeout_sec == 30.0
    assert cfg.duration_tick_sec == 1.0
    assert cfg.ice_servers == DEFAULT_ICE_SERVERS


def test_from_env(monkeypatch):
    monkeypatch.setenv("VC_CALL_NEGOTIATION_TIMEOUT", "12.5")
    monkeypatch.setenv("VC_CALL_TICK_SEC", "not-a-number")
    monkeypatch.setenv("VC_CALL_ICE_SERVERS", "stun:a.example:3478, turn:b.example:3478")
    monkeypatch.setenv("VC_CALL_VIDEO_DEVICE", "/dev/video2")
    monkeypatch.setenv("VC_CALL_VIDEO_SIZE", "1280x720")

    cfg = CallConfig.from_env()

    assert cfg.negotiation_timeout_sec == 12.5
    assert cfg.duration_tick_sec == 1.0
    assert cfg.ice_servers == ("stun:a.example:3478", "turn:b.example:3478")
    assert cfg.media.video_device == "/dev/video2"
    assert cfg.media.video_size == (1280, 720)


def test_rtc_configuration():
    rtc = CallConfig(ice_servers=("stun:a.example:3478",)).rtc_configuration()
    assert [s.urls for s in rtc.iceServers] == ["stun:a.example:3478"]


def test_format_duration():
    assert format_duration(0) == "00:00"
    assert format_duration(65) == "01:05"
    assert format_duration(3600) == "60:00"
    assert format_duration(-3) == "00:00"


def test_error_messages_cover_every_kind():
    for kind in ErrorKind:
        assert kind.describe()
    assert ErrorKind.DEVICE_BUSY.is_device_error
    assert not ErrorKind.NEGOTIATION_TIMEOUT.is_device_error
