import pytest
from google.protobuf import descriptor_pb2

from pb_wiretap.descriptor_set import parse_descriptor_set
from pb_wiretap.descriptors import FieldKind
from pb_wiretap.schema import SchemaParseError, SchemaRegistry
from pb_wiretap.wire import NestedMessage

_FDP = descriptor_pb2.FieldDescriptorProto


def _quotes_set() -> bytes:
    file_proto = descriptor_pb2.FileDescriptorProto(name="quotes.proto", package="md")
    quote = file_proto.message_type.add(name="Quote")
    quote.field.add(name="symbol", number=1, type=_FDP.TYPE_STRING, label=_FDP.LABEL_OPTIONAL)
    quote.field.add(name="bid", number=2, type=_FDP.TYPE_DOUBLE, label=_FDP.LABEL_OPTIONAL)
    quote.field.add(
        name="levels",
        number=3,
        type=_FDP.TYPE_MESSAGE,
        type_name=".md.Quote.Level",
        label=_FDP.LABEL_REPEATED,
    )
    quote.field.add(
        name="tags",
        number=4,
        type=_FDP.TYPE_MESSAGE,
        type_name=".md.Quote.TagsEntry",
        label=_FDP.LABEL_REPEATED,
    )
    level = quote.nested_type.add(name="Level")
    level.field.add(name="size", number=1, type=_FDP.TYPE_UINT64, label=_FDP.LABEL_OPTIONAL)
    entry = quote.nested_type.add(name="TagsEntry")
    entry.options.map_entry = True
    entry.field.add(name="key", number=1, type=_FDP.TYPE_STRING, label=_FDP.LABEL_OPTIONAL)
    entry.field.add(name="value", number=2, type=_FDP.TYPE_STRING, label=_FDP.LABEL_OPTIONAL)
    return descriptor_pb2.FileDescriptorSet(file=[file_proto]).SerializeToString()


def _descriptor_proto_set() -> bytes:
    file_proto = descriptor_pb2.FileDescriptorProto()
    descriptor_pb2.DESCRIPTOR.CopyToProto(file_proto)
    return descriptor_pb2.FileDescriptorSet(file=[file_proto]).SerializeToString()


def test_parse_descriptor_set_qualifies_nested_names_and_skips_map_entries():
    types = parse_descriptor_set(_quotes_set())
    assert [item.name for item in types] == ["md.Quote", "md.Quote.Level"]
    quote = types[0]
    assert quote.field(1).kind is FieldKind.STRING
    assert quote.field(2).kind is FieldKind.UNKNOWN
    assert quote.field(2).type_name == "double"
    assert quote.field(3).kind is FieldKind.MESSAGE
    assert quote.field(3).type_name == "md.Quote.Level"
    assert quote.field(3).repeated is True
    assert types[1].field(1).kind is FieldKind.INT64


def test_parse_descriptor_set_rejects_garbage():
    with pytest.raises(SchemaParseError):
        parse_descriptor_set(b"\x0a\x05ab")


def test_decode_real_protobuf_message_with_compiled_descriptor():
    registry = SchemaRegistry()
    added = registry.load_descriptor_set("descriptor.pb", _descriptor_proto_set())
    assert "google.protobuf.FieldDescriptorProto" in added

    message = _FDP(
        name="price",
        number=7,
        label=_FDP.LABEL_REPEATED,
        type=_FDP.TYPE_STRING,
        json_name="price",
    )
    decoder = registry.get_decoder("google.protobuf.FieldDescriptorProto")
    assert decoder(message.SerializeToString()) == {
        "name": "price",
        "number": 7,
        "label": _FDP.LABEL_REPEATED,
        "type": _FDP.TYPE_STRING,
        "json_name": "price",
    }


def test_nested_messages_expand_through_registry():
    registry = SchemaRegistry()
    registry.load_descriptor_set("descriptor.pb", _descriptor_proto_set())
    message = descriptor_pb2.DescriptorProto(name="Quote")
    message.field.add(name="bid", number=1)
    message.field.add(name="ask", number=2)

    decoded = registry.get_decoder("google.protobuf.DescriptorProto")(message.SerializeToString())
    assert decoded["name"] == "Quote"
    assert all(isinstance(item, NestedMessage) for item in decoded["field"])
    assert registry.expand(decoded, 1)["field"] == [
        {"name": "bid", "number": 1},
        {"name": "ask", "number": 2},
    ]
