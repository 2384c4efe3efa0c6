from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from .classify import Classification


def monotonic_ns() -> int:
    # perf_counter_ns is higher resolution than monotonic_ns on some platforms.
    return time.perf_counter_ns()


@dataclass(frozen=True, slots=True)
class CapturedMessage:
    seq: int
    rx_mono_ns: int
    rx_wall_ns_utc: int
    raw: bytes
    resolved_type: str | None
    decoded: dict[str, Any] | None
    error: str | None

    @property
    def ok(self) -> bool:
        return self.decoded is not None


class CaptureLog:
    """Append-only, arrival-ordered record of captured frames.

    Sequence numbers start at 1, increase by one per append and survive
    ``clear()`` and eviction, so a number is never handed out twice.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: deque[CapturedMessage] = deque()
        self._next_seq = 1
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(
        self,
        raw: bytes | bytearray | memoryview,
        classification: Classification,
        *,
        rx_mono_ns: int | None = None,
        rx_wall_ns_utc: int | None = None,
    ) -> CapturedMessage:
        message = CapturedMessage(
            seq=self._next_seq,
            rx_mono_ns=monotonic_ns() if rx_mono_ns is None else rx_mono_ns,
            rx_wall_ns_utc=time.time_ns() if rx_wall_ns_utc is None else rx_wall_ns_utc,
            raw=bytes(raw),
            resolved_type=classification.resolved_type,
            decoded=classification.decoded,
            error=classification.error,
        )
        self._next_seq += 1
        self._entries.append(message)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.popleft()
                self.evicted += 1
        return message

    def all(self) -> tuple[CapturedMessage, ...]:
        return tuple(self._entries)

    def get(self, seq: int) -> CapturedMessage | None:
        if not self._entries:
            return None
        # Retained entries are contiguous in seq, so the offset is direct.
        index = seq - self._entries[0].seq
        if 0 <= index < len(self._entries):
            return self._entries[index]
        return None

    def latest(self) -> CapturedMessage | None:
        return self._entries[-1] if self._entries else None

    def clear(self) -> int:
        dropped = len(self._entries)
        self._entries.clear()
        return dropped
