from __future__ import annotations

import struct
from typing import Any

from .descriptors import FieldDescriptor, FieldKind, MessageTypeDescriptor

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5
KNOWN_WIRE_TYPES = (WIRE_VARINT, WIRE_FIXED64, WIRE_LENGTH_DELIMITED, WIRE_FIXED32)

# A 64-bit value needs at most 10 seven-bit groups; excess high bits are dropped.
MAX_VARINT_BYTES = 10

STRING_LENGTH_MODES = ("varint", "fixed32")

_UINT64_MASK = (1 << 64) - 1
_FIXED32 = struct.Struct("<I")
_FIXED64 = struct.Struct("<Q")
_PACKABLE_KINDS = (FieldKind.INT32, FieldKind.INT64, FieldKind.BOOL)


class WireDecodeError(ValueError):
    pass


class MalformedInput(WireDecodeError):
    pass


class UnknownWireType(WireDecodeError):
    def __init__(self, wire_type: int, offset: int) -> None:
        super().__init__(f"unknown wire type {wire_type} at offset {offset}")
        self.wire_type = wire_type
        self.offset = offset


class NestedMessage:
    """Undecoded span of a message-typed field."""

    __slots__ = ("type_name", "raw")

    def __init__(self, type_name: str, raw: bytes) -> None:
        self.type_name = type_name
        self.raw = bytes(raw)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NestedMessage):
            return NotImplemented
        return self.type_name == other.type_name and self.raw == other.raw

    def __hash__(self) -> int:
        return hash((self.type_name, self.raw))

    def __repr__(self) -> str:
        return f"NestedMessage({self.type_name!r}, {self.raw!r})"


def read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    """Read a varint starting at ``pos``; return ``(value, next_pos)``."""
    result = 0
    shift = 0
    end = len(buf)
    for _ in range(MAX_VARINT_BYTES):
        if pos >= end:
            raise MalformedInput(f"truncated varint at offset {pos}")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _UINT64_MASK, pos
        shift += 7
    raise MalformedInput(f"varint longer than {MAX_VARINT_BYTES} bytes ending at offset {pos}")


def encode_varint(value: int) -> bytes:
    if value < 0:
        # Negative int32/int64 values are sign-extended to 64 bits on the wire.
        value &= _UINT64_MASK
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def encode_tag(number: int, wire_type: int) -> bytes:
    return encode_varint((number << 3) | wire_type)


def _take(buf: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(buf):
        raise MalformedInput(
            f"length {size} at offset {pos} overruns buffer of {len(buf)} bytes"
        )
    return buf[pos:end], end


def _read_length(buf: bytes, pos: int, mode: str) -> tuple[int, int]:
    if mode == "fixed32":
        raw, pos = _take(buf, pos, 4)
        return _FIXED32.unpack(raw)[0], pos
    return read_varint(buf, pos)


def skip_field(buf: bytes, pos: int, wire_type: int) -> int:
    """Advance past one value of ``wire_type``; return the next offset."""
    if wire_type == WIRE_VARINT:
        return read_varint(buf, pos)[1]
    if wire_type == WIRE_FIXED64:
        return _take(buf, pos, 8)[1]
    if wire_type == WIRE_LENGTH_DELIMITED:
        length, pos = read_varint(buf, pos)
        return _take(buf, pos, length)[1]
    if wire_type == WIRE_FIXED32:
        return _take(buf, pos, 4)[1]
    raise UnknownWireType(wire_type, pos)


def _expect_wire(field: FieldDescriptor, wire_type: int, allowed: int, pos: int) -> None:
    if wire_type != allowed:
        raise MalformedInput(
            f"field {field.name} ({field.kind.value}) cannot use wire type {wire_type} "
            f"at offset {pos}"
        )


def _read_generic(buf: bytes, pos: int, wire_type: int) -> tuple[Any, int]:
    if wire_type == WIRE_VARINT:
        return read_varint(buf, pos)
    if wire_type == WIRE_FIXED64:
        raw, pos = _take(buf, pos, 8)
        return _FIXED64.unpack(raw)[0], pos
    if wire_type == WIRE_FIXED32:
        raw, pos = _take(buf, pos, 4)
        return _FIXED32.unpack(raw)[0], pos
    length, pos = read_varint(buf, pos)
    return _take(buf, pos, length)


def _read_packed(buf: bytes, pos: int, field: FieldDescriptor) -> tuple[list[Any], int]:
    length, pos = read_varint(buf, pos)
    chunk, end = _take(buf, pos, length)
    values: list[Any] = []
    cursor = 0
    while cursor < len(chunk):
        value, cursor = read_varint(chunk, cursor)
        values.append(value != 0 if field.kind is FieldKind.BOOL else value)
    return values, end


def _read_value(
    buf: bytes,
    pos: int,
    field: FieldDescriptor,
    wire_type: int,
    string_length: str,
) -> tuple[Any, int]:
    kind = field.kind
    if kind is FieldKind.STRING:
        _expect_wire(field, wire_type, WIRE_LENGTH_DELIMITED, pos)
        length, pos = _read_length(buf, pos, string_length)
        raw, pos = _take(buf, pos, length)
        try:
            return raw.decode("utf-8"), pos
        except UnicodeDecodeError as exc:
            raise MalformedInput(f"field {field.name} is not valid UTF-8: {exc.reason}") from exc
    if kind is FieldKind.INT32 or kind is FieldKind.INT64:
        _expect_wire(field, wire_type, WIRE_VARINT, pos)
        return read_varint(buf, pos)
    if kind is FieldKind.BOOL:
        _expect_wire(field, wire_type, WIRE_VARINT, pos)
        value, pos = read_varint(buf, pos)
        return value != 0, pos
    if kind is FieldKind.MESSAGE:
        _expect_wire(field, wire_type, WIRE_LENGTH_DELIMITED, pos)
        length, pos = read_varint(buf, pos)
        raw, pos = _take(buf, pos, length)
        return NestedMessage(field.type_name, raw), pos
    if kind is FieldKind.UNKNOWN:
        return _read_generic(buf, pos, wire_type)
    raise AssertionError(f"unhandled field kind: {kind!r}")


def decode_message(
    buffer: bytes | bytearray | memoryview,
    descriptor: MessageTypeDescriptor,
    *,
    string_length: str = "varint",
) -> dict[str, Any]:
    """Decode one message body against ``descriptor``.

    Fields not declared in the descriptor are skipped. Message-typed fields
    come back as :class:`NestedMessage` placeholders without recursing.

    Raises :class:`MalformedInput` for truncated or inconsistent input and
    :class:`UnknownWireType` for wire types outside {0, 1, 2, 5}.
    """
    if string_length not in STRING_LENGTH_MODES:
        raise ValueError(f"unknown string length mode: {string_length}")
    buf = buffer if isinstance(buffer, bytes) else bytes(buffer)
    pos = 0
    end = len(buf)
    result: dict[str, Any] = {}
    while pos < end:
        tag_pos = pos
        tag, pos = read_varint(buf, pos)
        number = tag >> 3
        wire_type = tag & 0x7
        if wire_type not in KNOWN_WIRE_TYPES:
            raise UnknownWireType(wire_type, tag_pos)
        if number == 0:
            raise MalformedInput(f"field number 0 at offset {tag_pos}")
        field = descriptor.field(number)
        if field is None:
            pos = skip_field(buf, pos, wire_type)
            continue
        if not field.repeated:
            result[field.name], pos = _read_value(buf, pos, field, wire_type, string_length)
            continue
        values = result.setdefault(field.name, [])
        if field.kind in _PACKABLE_KINDS and wire_type == WIRE_LENGTH_DELIMITED:
            packed, pos = _read_packed(buf, pos, field)
            values.extend(packed)
            continue
        value, pos = _read_value(buf, pos, field, wire_type, string_length)
        values.append(value)
    return result


def encode_message(values: dict[str, Any], descriptor: MessageTypeDescriptor) -> bytes:
    """Encode ``values`` in declaration order; the inverse of :func:`decode_message`.

    Only the varint string-length convention is produced. ``NestedMessage``
    and ``bytes`` values are written as length-delimited spans.
    """
    out = bytearray()
    for field in descriptor.fields:
        if field.name not in values:
            continue
        value = values[field.name]
        items = value if field.repeated else [value]
        for item in items:
            out += _encode_value(field, item)
    return bytes(out)


def _encode_value(field: FieldDescriptor, value: Any) -> bytes:
    kind = field.kind
    if kind is FieldKind.STRING:
        raw = value.encode("utf-8")
        return encode_tag(field.number, WIRE_LENGTH_DELIMITED) + encode_varint(len(raw)) + raw
    if kind in _PACKABLE_KINDS:
        return encode_tag(field.number, WIRE_VARINT) + encode_varint(int(value))
    if isinstance(value, NestedMessage):
        value = value.raw
    if isinstance(value, (bytes, bytearray)):
        return (
            encode_tag(field.number, WIRE_LENGTH_DELIMITED)
            + encode_varint(len(value))
            + bytes(value)
        )
    if kind is FieldKind.UNKNOWN and isinstance(value, int):
        return encode_tag(field.number, WIRE_VARINT) + encode_varint(value)
    raise TypeError(f"cannot encode {type(value).__name__} for field {field.name}")
