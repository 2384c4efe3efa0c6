from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable


class FieldKind(enum.Enum):
    STRING = "string"
    INT32 = "int32"
    INT64 = "int64"
    BOOL = "bool"
    MESSAGE = "message"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    number: int
    name: str
    kind: FieldKind
    type_name: str = ""
    repeated: bool = False


@dataclass(frozen=True)
class MessageTypeDescriptor:
    """Named message shape: ordered fields plus a by-number lookup table.

    Duplicate field numbers collapse to the last declaration, which takes the
    position of the first one in ``fields``.
    """

    name: str
    fields: tuple[FieldDescriptor, ...] = ()
    _by_number: dict[int, FieldDescriptor] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        by_number: dict[int, FieldDescriptor] = {}
        for item in self.fields:
            by_number[item.number] = item
        ordered: list[FieldDescriptor] = []
        seen: set[int] = set()
        for item in self.fields:
            if item.number in seen:
                continue
            seen.add(item.number)
            ordered.append(by_number[item.number])
        object.__setattr__(self, "fields", tuple(ordered))
        object.__setattr__(self, "_by_number", by_number)

    @classmethod
    def build(cls, name: str, fields: Iterable[FieldDescriptor]) -> MessageTypeDescriptor:
        return cls(name=name, fields=tuple(fields))

    def field(self, number: int) -> FieldDescriptor | None:
        return self._by_number.get(number)

    def field_names(self) -> list[str]:
        return [item.name for item in self.fields]
