"""Schema text parsing and the per-type decoder registry."""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from .descriptors import FieldDescriptor, FieldKind, MessageTypeDescriptor
from .wire import STRING_LENGTH_MODES, NestedMessage, WireDecodeError, decode_message

Decoder = Callable[[bytes], dict[str, Any]]

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"//[^\n]*")
_STATEMENT_SPLIT = re.compile(r"[\n;{}]")
_MESSAGE_RE = re.compile(r"^message\s+([A-Za-z_]\w*)$")
_ENUM_RE = re.compile(r"^enum\s+([A-Za-z_]\w*)$")
_FIELD_RE = re.compile(
    r"^(?:(optional|required|repeated)\s+)?"
    r"(\.?[A-Za-z_][\w.]*)\s+"
    r"([A-Za-z_]\w*)\s*=\s*(\d+)"
    r"\s*(?:\[[^\]]*\])?$"
)

# Largest field number the wire format can carry (2^29 - 1).
MAX_FIELD_NUMBER = (1 << 29) - 1

_SCALAR_KINDS = {
    "string": FieldKind.STRING,
    "int32": FieldKind.INT32,
    "uint32": FieldKind.INT32,
    "int64": FieldKind.INT64,
    "uint64": FieldKind.INT64,
    "bool": FieldKind.BOOL,
    "double": FieldKind.UNKNOWN,
    "float": FieldKind.UNKNOWN,
    "bytes": FieldKind.UNKNOWN,
    "fixed32": FieldKind.UNKNOWN,
    "fixed64": FieldKind.UNKNOWN,
    "sfixed32": FieldKind.UNKNOWN,
    "sfixed64": FieldKind.UNKNOWN,
    "sint32": FieldKind.UNKNOWN,
    "sint64": FieldKind.UNKNOWN,
}


class UnknownType(KeyError):
    def __init__(self, type_name: str) -> None:
        super().__init__(type_name)
        self.type_name = type_name

    def __str__(self) -> str:
        return f"unknown message type: {self.type_name}"


class SchemaParseError(ValueError):
    pass


def _kind_for(type_token: str, enum_names: set[str]) -> FieldKind:
    kind = _SCALAR_KINDS.get(type_token)
    if kind is not None:
        return kind
    short = type_token.lstrip(".").rsplit(".", 1)[-1]
    if short in enum_names:
        return FieldKind.INT32
    return FieldKind.MESSAGE


def _statements(text: str) -> list[str]:
    stripped = _LINE_COMMENT.sub("", _BLOCK_COMMENT.sub(" ", text))
    out: list[str] = []
    for chunk in _STATEMENT_SPLIT.split(stripped):
        statement = " ".join(chunk.split())
        if statement:
            out.append(statement)
    return out


def parse_schema_text(text: str) -> list[MessageTypeDescriptor]:
    """Extract message shapes from proto-like text.

    Best effort: ``message X`` opens a type, ``[label] <type> <name> = <n>``
    adds a field to the most recently opened type, everything else is
    ignored. Braces are statement separators only, so a nested message
    simply becomes the current type.
    """
    if not isinstance(text, str):
        raise SchemaParseError(f"schema text must be str, got {type(text).__name__}")
    if "\x00" in text:
        raise SchemaParseError("schema text contains NUL characters; is it a binary file?")
    statements = _statements(text)
    enum_names: set[str] = set()
    for statement in statements:
        match = _ENUM_RE.match(statement)
        if match:
            enum_names.add(match.group(1))

    order: list[str] = []
    pending: dict[str, list[FieldDescriptor]] = {}
    current: list[FieldDescriptor] | None = None
    for statement in statements:
        match = _MESSAGE_RE.match(statement)
        if match:
            name = match.group(1)
            if name not in pending:
                order.append(name)
            # A repeated declaration starts over, same as re-registration.
            current = pending[name] = []
            continue
        if _ENUM_RE.match(statement):
            continue
        if current is None:
            continue
        match = _FIELD_RE.match(statement)
        if not match:
            continue
        label, type_token, field_name, number_text = match.groups()
        number = int(number_text)
        if not 0 < number <= MAX_FIELD_NUMBER:
            continue
        current.append(
            FieldDescriptor(
                number=number,
                name=field_name,
                kind=_kind_for(type_token, enum_names),
                type_name=type_token.lstrip("."),
                repeated=label == "repeated",
            )
        )
    return [MessageTypeDescriptor.build(name, pending[name]) for name in order]


class SchemaRegistry:
    """Named message descriptors plus lazily built, memoized decoders.

    Not thread-safe: the decoder cache is shared mutable state and is only
    safe with a single event loop driving the registry.
    """

    def __init__(self, *, string_length: str = "varint") -> None:
        if string_length not in STRING_LENGTH_MODES:
            raise ValueError(f"unknown string length mode: {string_length}")
        self.string_length = string_length
        self._types: dict[str, MessageTypeDescriptor] = {}
        self._decoders: dict[str, Decoder] = {}
        self._sources: dict[str, list[str]] = {}

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._types

    def __len__(self) -> int:
        return len(self._types)

    def register(self, source: str, descriptors: Iterable[MessageTypeDescriptor]) -> list[str]:
        added: list[str] = []
        for descriptor in descriptors:
            # dict keeps first-insertion order, so replacing keeps the original slot.
            self._types[descriptor.name] = descriptor
            self._decoders.pop(descriptor.name, None)
            added.append(descriptor.name)
        self._sources[source] = list(added)
        return added

    def load_schema(self, name: str, text: str) -> list[str]:
        return self.register(name, parse_schema_text(text))

    def load_descriptor_set(self, name: str, data: bytes) -> list[str]:
        from .descriptor_set import parse_descriptor_set

        return self.register(name, parse_descriptor_set(data))

    def type_names(self) -> list[str]:
        return list(self._types)

    def sources(self) -> dict[str, list[str]]:
        return {name: list(types) for name, types in self._sources.items()}

    def descriptor(self, type_name: str) -> MessageTypeDescriptor:
        try:
            return self._types[type_name]
        except KeyError:
            raise UnknownType(type_name) from None

    def get_decoder(self, type_name: str) -> Decoder:
        decoder = self._decoders.get(type_name)
        if decoder is not None:
            return decoder
        descriptor = self.descriptor(type_name)
        string_length = self.string_length

        def decoder(raw: bytes) -> dict[str, Any]:
            return decode_message(raw, descriptor, string_length=string_length)

        self._decoders[type_name] = decoder
        return decoder

    def resolve_name(self, type_name: str) -> str | None:
        """Find a registered type for a field's type token (full or short name)."""
        candidate = type_name.lstrip(".")
        if candidate in self._types:
            return candidate
        short = candidate.rsplit(".", 1)[-1]
        if short in self._types:
            return short
        suffix = "." + short
        for name in self._types:
            if name.endswith(suffix):
                return name
        return None

    def expand(self, value: Any, depth: int) -> Any:
        """Replace resolvable ``NestedMessage`` placeholders with decoded dicts.

        Walks at most ``depth`` levels. Placeholders whose type is not
        registered, or whose bytes do not decode, are left as they are.
        """
        if depth <= 0:
            return value
        if isinstance(value, NestedMessage):
            type_name = self.resolve_name(value.type_name)
            if type_name is None:
                return value
            try:
                decoded = self.get_decoder(type_name)(value.raw)
            except WireDecodeError:
                return value
            return self.expand(decoded, depth - 1)
        if isinstance(value, dict):
            return {key: self.expand(item, depth) for key, item in value.items()}
        if isinstance(value, list):
            return [self.expand(item, depth) for item in value]
        return value
