from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import orjson

from .capture_log import monotonic_ns

_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE
if hasattr(orjson, "OPT_ESCAPE_NON_ASCII"):
    _ORJSON_NDJSON_OPTIONS |= orjson.OPT_ESCAPE_NON_ASCII


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return _normalize_orjson(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, memoryview):
        return value.tobytes().hex()
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


class RunLog:
    """Structured operational log: one dict per event, ``record_type`` keyed.

    Recent records stay in memory; when ``path`` is set each record is also
    appended there as one NDJSON line. A failing write disables the file
    sink for the rest of the run instead of interrupting capture.
    """

    def __init__(self, path: str | Path | None = None, *, max_records: int = 1000) -> None:
        self.path = Path(path) if path is not None else None
        self.records: deque[dict[str, Any]] = deque(maxlen=max(1, max_records))
        self.failed = False
        self.failure: str | None = None

    def write(self, record_type: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "record_type": record_type,
            "ts_mono_ns": monotonic_ns(),
            "ts_wall_ns_utc": time.time_ns(),
        }
        record.update(fields)
        normalized = _normalize_orjson(record)
        self.records.append(normalized)
        if self.path is not None and not self.failed:
            self._append(normalized)
        return normalized

    def _append(self, record: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("ab") as handle:
                handle.write(orjson.dumps(record, option=_ORJSON_NDJSON_OPTIONS))
        except OSError as exc:
            self.failed = True
            self.failure = f"{type(exc).__name__}: {exc}"

    def of_type(self, record_type: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("record_type") == record_type]
