import orjson
import pytest

from pb_wiretap.capture_log import CaptureLog
from pb_wiretap.classify import Classification
from pb_wiretap.control import (
    ControlDecodeError,
    decode_event,
    decode_request,
    encode_event,
    encode_request,
    encode_upstream_request,
    message_to_json,
    parse_upstream_text,
)
from pb_wiretap.events import Channels, Closed, Connect, Connected, Error, Frame, GetChannels, Subscribe
from pb_wiretap.wire import NestedMessage


def test_frame_event_carries_base64_payload():
    event = Frame(b"\x08\x96\x01", rx_mono_ns=5, rx_wall_ns_utc=6)
    payload = orjson.loads(encode_event(event))
    assert payload == {
        "type": "frame",
        "payload_b64": "CJYB",
        "rx_mono_ns": 5,
        "rx_wall_ns_utc": 6,
        "text": False,
    }
    assert decode_event(encode_event(event)) == event


def test_other_events_decode_back():
    for event in (
        Connected("ws://a:1"),
        Error("OSError: refused"),
        Closed(code=1006, reason=None),
        Channels(("book", "trades")),
    ):
        assert decode_event(encode_event(event)) == event


def test_decode_event_rejects_bad_input():
    with pytest.raises(ControlDecodeError):
        decode_event(b"{")
    with pytest.raises(ControlDecodeError):
        decode_event(b"[]")
    with pytest.raises(ControlDecodeError):
        decode_event(b'{"type": "frame", "payload_b64": "***"}')
    with pytest.raises(ControlDecodeError):
        decode_event(b'{"type": "bogus"}')


def test_decode_request_variants():
    assert decode_request(b'{"type": "connect", "host": "127.0.0.1", "port": 9000}') == Connect(
        "127.0.0.1", 9000
    )
    assert decode_request('{"type": "connect", "host": "box", "port": "81"}') == Connect("box", 81)
    assert decode_request(b'{"type": "get_channels"}') == GetChannels()
    assert decode_request(b'{"type": "subscribe", "channel": "book"}') == Subscribe("book")


@pytest.mark.parametrize(
    "raw",
    [
        b'{"type": "connect", "port": 1}',
        b'{"type": "connect", "host": "h", "port": 0}',
        b'{"type": "connect", "host": "h", "port": 70000}',
        b'{"type": "connect", "host": "h", "port": true}',
        b'{"type": "connect", "host": "h", "port": "http"}',
        b'{"type": "subscribe"}',
        b'{"type": "unsubscribe"}',
        b"not json",
    ],
)
def test_decode_request_rejects_malformed(raw):
    with pytest.raises(ControlDecodeError):
        decode_request(raw)


def test_connect_target_brackets_ipv6_hosts():
    assert Connect("::1", 8080).target == "[::1]:8080"
    assert Connect("box", 8080).target == "box:8080"


def test_upstream_relay_frames():
    assert encode_upstream_request(GetChannels()) == '{"type":"get_channels"}'
    assert encode_upstream_request(Subscribe("book")) == '{"type":"subscribe","channel":"book"}'
    with pytest.raises(ValueError):
        encode_upstream_request(Connect("box", 1))
    assert decode_request(encode_request(Connect("box", 1))) == Connect("box", 1)


def test_parse_upstream_text():
    assert parse_upstream_text('{"type": "channels", "channels": ["a", "b"]}') == Channels(("a", "b"))
    assert parse_upstream_text('{"type": "channels", "channels": "a"}') is None
    assert parse_upstream_text('{"type": "tick"}') is None
    assert parse_upstream_text("hello") is None


def test_message_to_json_renders_nested_spans():
    log = CaptureLog()
    decoded = {"inner": NestedMessage("Inner", b"\x08\x01"), "blob": b"\xff", "n": [1, 2]}
    message = log.append(
        b"\x2a\x02\x08\x01",
        Classification("Outer", decoded, None, 1),
        rx_mono_ns=1,
        rx_wall_ns_utc=2,
    )
    assert message_to_json(message) == {
        "seq": 1,
        "rx_mono_ns": 1,
        "rx_wall_ns_utc": 2,
        "raw_b64": "KgIIAQ==",
        "type": "Outer",
        "decoded": {
            "inner": {"type_name": "Inner", "raw_b64": "CAE="},
            "blob": "/w==",
            "n": [1, 2],
        },
        "error": None,
    }
