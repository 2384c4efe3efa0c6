import pytest

from pb_wiretap.descriptors import FieldDescriptor, FieldKind, MessageTypeDescriptor
from pb_wiretap.wire import (
    MalformedInput,
    NestedMessage,
    UnknownWireType,
    decode_message,
    encode_message,
    encode_varint,
    read_varint,
    skip_field,
)


def _message_m():
    return MessageTypeDescriptor.build(
        "M",
        [
            FieldDescriptor(1, "text", FieldKind.STRING, "string"),
            FieldDescriptor(2, "number", FieldKind.INT32, "int32"),
        ],
    )


def _rich():
    return MessageTypeDescriptor.build(
        "Rich",
        [
            FieldDescriptor(1, "text", FieldKind.STRING, "string"),
            FieldDescriptor(3, "sizes", FieldKind.INT32, "int32", repeated=True),
            FieldDescriptor(4, "live", FieldKind.BOOL, "bool"),
            FieldDescriptor(5, "inner", FieldKind.MESSAGE, "Inner"),
            FieldDescriptor(6, "price", FieldKind.UNKNOWN, "double"),
            FieldDescriptor(7, "flags", FieldKind.BOOL, "bool", repeated=True),
        ],
    )


def test_decode_text_and_number():
    raw = bytes.fromhex("0A 02 68 69 10 2A")
    assert decode_message(raw, _message_m()) == {"text": "hi", "number": 42}


def test_unknown_field_99_is_skipped():
    # tag for field 99, wire type 0 is the two-byte varint 0x98 0x06
    raw = bytes.fromhex("0A026869102A") + b"\x98\x06\x01"
    assert decode_message(raw, _message_m()) == {"text": "hi", "number": 42}


def test_unknown_fields_of_every_known_wire_type_are_skipped():
    raw = (
        b"\x19" + b"\x00" * 8  # field 3 fixed64
        + b"\x22\x03abc"  # field 4 length-delimited
        + b"\x2d" + b"\x00" * 4  # field 5 fixed32
        + b"\x10\x07"
    )
    assert decode_message(raw, _message_m()) == {"number": 7}


def test_empty_buffer_decodes_to_empty_dict():
    assert decode_message(b"", _message_m()) == {}


def test_singular_field_last_occurrence_wins():
    assert decode_message(b"\x10\x01\x10\x02", _message_m()) == {"number": 2}


def test_truncated_length_prefix_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x0a\x05hi", _message_m())


def test_truncated_varint_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x10\x80", _message_m())


def test_varint_longer_than_ten_bytes_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x10" + b"\xff" * 10 + b"\x01", _message_m())


def test_ten_byte_varint_is_accepted():
    value, pos = read_varint(encode_varint(-1), 0)
    assert value == (1 << 64) - 1
    assert pos == 10


def test_unknown_wire_type_raises_even_for_undeclared_field():
    with pytest.raises(UnknownWireType) as excinfo:
        decode_message(b"\x10\x01\x4b", _message_m())
    assert excinfo.value.wire_type == 3
    assert excinfo.value.offset == 2


def test_field_number_zero_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x00\x01", _message_m())


def test_invalid_utf8_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x0a\x01\xff", _message_m())


def test_wire_type_mismatch_for_declared_kind_is_malformed():
    with pytest.raises(MalformedInput):
        decode_message(b"\x08\x01", _message_m())


def test_fixed32_string_length_mode():
    raw = b"\x0a\x02\x00\x00\x00hi\x10\x2a"
    assert decode_message(raw, _message_m(), string_length="fixed32") == {
        "text": "hi",
        "number": 42,
    }
    with pytest.raises(ValueError):
        decode_message(raw, _message_m(), string_length="utf16")


def test_repeated_packed_and_unpacked_values_accumulate():
    raw = b"\x18\x01" + b"\x1a\x03\x02\x96\x01" + b"\x3a\x02\x01\x00"
    decoded = decode_message(raw, _rich())
    assert decoded["sizes"] == [1, 2, 150]
    assert decoded["flags"] == [True, False]


def test_bool_nested_and_unknown_kinds():
    raw = (
        b"\x20\x02"
        + b"\x2a\x02\x08\x07"
        + b"\x31" + b"\x00\x00\x00\x00\x00\x00\xf0\x3f"
    )
    decoded = decode_message(raw, _rich())
    assert decoded["live"] is True
    assert decoded["inner"] == NestedMessage("Inner", b"\x08\x07")
    # unknown-kind fixed64 comes back as the little-endian integer
    assert decoded["price"] == 0x3FF0000000000000


def test_decoded_nested_span_is_independent_copy():
    buf = bytearray(b"\x2a\x02\x08\x07")
    decoded = decode_message(buf, _rich())
    buf[2] = 0xFF
    assert decoded["inner"].raw == b"\x08\x07"


def test_skip_field_returns_next_offset():
    assert skip_field(b"\x96\x01\x00", 0, 0) == 2
    assert skip_field(b"\x02ab", 0, 2) == 3
    with pytest.raises(UnknownWireType):
        skip_field(b"", 0, 4)


def test_encode_then_decode_preserves_values():
    values = {
        "text": "héllo",
        "sizes": [3, 300],
        "live": False,
        "inner": NestedMessage("Inner", b"\x08\x01"),
    }
    assert decode_message(encode_message(values, _rich()), _rich()) == values


def test_duplicate_field_numbers_last_declaration_wins():
    descriptor = MessageTypeDescriptor.build(
        "Dup",
        [
            FieldDescriptor(1, "a", FieldKind.STRING),
            FieldDescriptor(2, "b", FieldKind.INT32),
            FieldDescriptor(1, "c", FieldKind.INT64),
        ],
    )
    assert descriptor.field_names() == ["c", "b"]
    assert descriptor.field(1).kind is FieldKind.INT64
    assert decode_message(b"\x08\x05", descriptor) == {"c": 5}
