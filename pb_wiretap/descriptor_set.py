"""Load message shapes from a compiled ``FileDescriptorSet``.

This is the schema-compiler path (``protoc --descriptor_set_out``). It yields
the same :class:`MessageTypeDescriptor` objects as the text parser, so both
sources share one wire decoder.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2
from google.protobuf.message import DecodeError

from .descriptors import FieldDescriptor, FieldKind, MessageTypeDescriptor
from .schema import SchemaParseError

_FDP = descriptor_pb2.FieldDescriptorProto

_TYPE_KINDS = {
    _FDP.TYPE_STRING: FieldKind.STRING,
    _FDP.TYPE_INT32: FieldKind.INT32,
    _FDP.TYPE_UINT32: FieldKind.INT32,
    _FDP.TYPE_ENUM: FieldKind.INT32,
    _FDP.TYPE_INT64: FieldKind.INT64,
    _FDP.TYPE_UINT64: FieldKind.INT64,
    _FDP.TYPE_BOOL: FieldKind.BOOL,
    _FDP.TYPE_MESSAGE: FieldKind.MESSAGE,
}

_SCALAR_NAMES = {
    _FDP.TYPE_DOUBLE: "double",
    _FDP.TYPE_FLOAT: "float",
    _FDP.TYPE_INT64: "int64",
    _FDP.TYPE_UINT64: "uint64",
    _FDP.TYPE_INT32: "int32",
    _FDP.TYPE_FIXED64: "fixed64",
    _FDP.TYPE_FIXED32: "fixed32",
    _FDP.TYPE_BOOL: "bool",
    _FDP.TYPE_STRING: "string",
    _FDP.TYPE_BYTES: "bytes",
    _FDP.TYPE_UINT32: "uint32",
    _FDP.TYPE_SFIXED32: "sfixed32",
    _FDP.TYPE_SFIXED64: "sfixed64",
    _FDP.TYPE_SINT32: "sint32",
    _FDP.TYPE_SINT64: "sint64",
}


def _field_from_proto(proto: descriptor_pb2.FieldDescriptorProto) -> FieldDescriptor:
    kind = _TYPE_KINDS.get(proto.type, FieldKind.UNKNOWN)
    if proto.type_name:
        type_name = proto.type_name.lstrip(".")
    else:
        type_name = _SCALAR_NAMES.get(proto.type, "")
    return FieldDescriptor(
        number=proto.number,
        name=proto.name,
        kind=kind,
        type_name=type_name,
        repeated=proto.label == _FDP.LABEL_REPEATED,
    )


def _walk(
    message: descriptor_pb2.DescriptorProto,
    prefix: str,
    out: list[MessageTypeDescriptor],
) -> None:
    full_name = f"{prefix}.{message.name}" if prefix else message.name
    # Map entry types are synthetic; their parent field stays a nested span.
    if not message.options.map_entry:
        fields = [_field_from_proto(item) for item in message.field]
        out.append(MessageTypeDescriptor.build(full_name, fields))
    for nested in message.nested_type:
        _walk(nested, full_name, out)


def parse_descriptor_set(data: bytes) -> list[MessageTypeDescriptor]:
    descriptor_set = descriptor_pb2.FileDescriptorSet()
    try:
        descriptor_set.ParseFromString(data)
    except DecodeError as exc:
        raise SchemaParseError(f"invalid FileDescriptorSet: {exc}") from exc
    out: list[MessageTypeDescriptor] = []
    for file_proto in descriptor_set.file:
        for message in file_proto.message_type:
            _walk(message, file_proto.package, out)
    return out
