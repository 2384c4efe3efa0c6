"""JSON codec for the host control channel and upstream control frames.

Host side (presentation layer <-> capture core):
  requests  {"type": "connect", "host": ..., "port": ...}
            {"type": "get_channels"}
            {"type": "subscribe", "channel": ...}
  events    {"type": "connected", "target": ...}
            {"type": "frame", "payload_b64": ..., "rx_mono_ns": ..., ...}
            {"type": "error", "message": ...}
            {"type": "closed", "code": ..., "reason": ...}
            {"type": "channels", "channels": [...]}

Upstream, get_channels/subscribe are relayed verbatim as JSON text frames
and a ``{"type": "channels"}`` text frame comes back as a Channels event.
"""

from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING, Any

import orjson

from .events import (
    Channels,
    Closed,
    Connect,
    Connected,
    Error,
    Event,
    Frame,
    GetChannels,
    Request,
    Subscribe,
)
from .wire import NestedMessage

if TYPE_CHECKING:
    from .capture_log import CapturedMessage


class ControlDecodeError(ValueError):
    pass


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def jsonable(value: Any) -> Any:
    """Render decoded field values for JSON output (bytes become base64)."""
    if isinstance(value, NestedMessage):
        return {"type_name": value.type_name, "raw_b64": _b64(value.raw)}
    if isinstance(value, (bytes, bytearray)):
        return _b64(bytes(value))
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value


def event_to_dict(event: Event) -> dict[str, Any]:
    if isinstance(event, Connected):
        return {"type": "connected", "target": event.target}
    if isinstance(event, Frame):
        return {
            "type": "frame",
            "payload_b64": _b64(event.payload),
            "rx_mono_ns": event.rx_mono_ns,
            "rx_wall_ns_utc": event.rx_wall_ns_utc,
            "text": event.text,
        }
    if isinstance(event, Error):
        return {"type": "error", "message": event.message}
    if isinstance(event, Closed):
        return {"type": "closed", "code": event.code, "reason": event.reason}
    if isinstance(event, Channels):
        return {"type": "channels", "channels": list(event.channels)}
    raise TypeError(f"not an event: {event!r}")


def encode_event(event: Event) -> bytes:
    return orjson.dumps(event_to_dict(event))


def decode_event(data: bytes | str) -> Event:
    payload = _load_object(data)
    kind = payload.get("type")
    try:
        if kind == "connected":
            return Connected(str(payload["target"]))
        if kind == "frame":
            return Frame(
                payload=base64.b64decode(payload["payload_b64"], validate=True),
                rx_mono_ns=int(payload.get("rx_mono_ns", 0)),
                rx_wall_ns_utc=int(payload.get("rx_wall_ns_utc", 0)),
                text=bool(payload.get("text", False)),
            )
        if kind == "error":
            return Error(str(payload["message"]))
        if kind == "closed":
            return Closed(code=payload.get("code"), reason=payload.get("reason"))
        if kind == "channels":
            return Channels(_channel_list(payload))
    except (KeyError, TypeError, ValueError, binascii.Error) as exc:
        raise ControlDecodeError(f"malformed {kind} event: {exc}") from exc
    raise ControlDecodeError(f"unknown event type: {kind!r}")


def _load_object(data: bytes | str) -> dict[str, Any]:
    try:
        payload = orjson.loads(data)
    except orjson.JSONDecodeError as exc:
        raise ControlDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ControlDecodeError("control message must be a JSON object")
    return payload


def _channel_list(payload: dict[str, Any]) -> tuple[str, ...]:
    channels = payload.get("channels")
    if not isinstance(channels, list):
        raise ControlDecodeError("channels must be a list")
    return tuple(str(item) for item in channels)


def decode_request(data: bytes | str) -> Request:
    payload = _load_object(data)
    kind = payload.get("type")
    if kind == "connect":
        host = payload.get("host")
        port = payload.get("port")
        if not isinstance(host, str) or not host:
            raise ControlDecodeError("connect requires a host")
        if isinstance(port, bool) or not isinstance(port, (int, str)):
            raise ControlDecodeError("connect requires a port")
        try:
            port_num = int(port)
        except ValueError as exc:
            raise ControlDecodeError(f"invalid port: {port!r}") from exc
        if not 0 < port_num < 65536:
            raise ControlDecodeError(f"port out of range: {port_num}")
        return Connect(host=host, port=port_num)
    if kind == "get_channels":
        return GetChannels()
    if kind == "subscribe":
        channel = payload.get("channel")
        if not isinstance(channel, str) or not channel:
            raise ControlDecodeError("subscribe requires a channel")
        return Subscribe(channel=channel)
    raise ControlDecodeError(f"unknown request type: {kind!r}")


def encode_request(request: Request) -> bytes:
    if isinstance(request, Connect):
        return orjson.dumps({"type": "connect", "host": request.host, "port": request.port})
    return encode_upstream_request(request).encode("utf-8")


def encode_upstream_request(request: Request) -> str:
    if isinstance(request, GetChannels):
        payload: dict[str, Any] = {"type": "get_channels"}
    elif isinstance(request, Subscribe):
        payload = {"type": "subscribe", "channel": request.channel}
    else:
        raise ValueError(f"request is not relayed upstream: {request!r}")
    return orjson.dumps(payload).decode("utf-8")


def parse_upstream_text(text: str) -> Channels | None:
    """Return a Channels event for a channel-list text frame, else None."""
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("type") != "channels":
        return None
    try:
        return Channels(_channel_list(payload))
    except ControlDecodeError:
        return None


def message_to_json(message: CapturedMessage) -> dict[str, Any]:
    return {
        "seq": message.seq,
        "rx_mono_ns": message.rx_mono_ns,
        "rx_wall_ns_utc": message.rx_wall_ns_utc,
        "raw_b64": _b64(message.raw),
        "type": message.resolved_type,
        "decoded": jsonable(message.decoded),
        "error": message.error,
    }
