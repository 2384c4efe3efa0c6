from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from .schema import SchemaRegistry, UnknownType
from .wire import WireDecodeError

NO_CANDIDATES = "no candidate types"


@dataclass(frozen=True, slots=True)
class Classification:
    resolved_type: str | None
    decoded: dict[str, Any] | None
    error: str | None
    candidates_tried: int = 0

    @property
    def ok(self) -> bool:
        return self.decoded is not None


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class Classifier:
    """Resolve which registered type a frame decodes as.

    Blind mode accepts the first candidate that decodes without error. Short
    or empty frames often decode under several types, in which case the
    earliest registered one wins; that is a tie-break, not type identity.
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def classify(self, raw: bytes, type_name: str) -> Classification:
        try:
            decoder = self.registry.get_decoder(type_name)
            decoded = decoder(raw)
        except (UnknownType, WireDecodeError) as exc:
            return Classification(None, None, _describe(exc), candidates_tried=1)
        return Classification(type_name, decoded, None, candidates_tried=1)

    def classify_any(
        self,
        raw: bytes,
        candidates: Sequence[str] | None = None,
    ) -> Classification:
        names = self.registry.type_names() if candidates is None else list(candidates)
        last_error = NO_CANDIDATES
        for tried, type_name in enumerate(names, start=1):
            result = self.classify(raw, type_name)
            if result.ok:
                return Classification(type_name, result.decoded, None, candidates_tried=tried)
            last_error = f"{type_name}: {result.error}"
        return Classification(None, None, last_error, candidates_tried=len(names))
