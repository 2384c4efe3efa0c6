from __future__ import annotations

from dataclasses import dataclass, fields
import types
import typing
from typing import Any, get_args, get_origin

ENV_PREFIX = "PB_WIRETAP_"


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    if isinstance(field_type, str):
        # String annotations under `from __future__ import annotations`.
        parts = [part.strip() for part in field_type.split("|")]
        if len(parts) == 2 and "None" in parts:
            base = parts[0] if parts[1] == "None" else parts[1]
            return base, True
        return field_type, False
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _base_type(field_type: Any) -> type | None:
    for expected, name in ((bool, "bool"), (int, "int"), (float, "float")):
        if _is_field_type(field_type, expected, name):
            return expected
    return None


def _parse_optional(raw: str, target_type: type | None) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type is bool:
        return _parse_bool(text)
    if target_type is None:
        return text
    return _parse_number(text, target_type)


def coerce_field_value(field_type: Any, raw: Any) -> Any:
    """Parse a raw CLI/env string into the type a Config field declares."""
    if not isinstance(raw, str):
        return raw
    _base, is_optional = _unwrap_optional(field_type)
    target = _base_type(field_type)
    if is_optional:
        return _parse_optional(raw, target)
    if target is bool:
        return _parse_bool(raw)
    if target is int or target is float:
        return _parse_number(raw, target)
    return raw


@dataclass
class Config:
    ws_url: str = "ws://localhost:5000"
    ws_reconnect_delay_seconds: float = 2.0
    ws_reconnect_max: int | None = None
    ws_open_timeout_seconds: float = 10.0
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    ws_close_timeout_seconds: float = 5.0
    ws_max_frame_bytes: int = 16 * 1024 * 1024
    ws_user_agent: str = "pb_wiretap"
    subscriber_queue_max: int = 1000
    capture_log_max_entries: int | None = None
    string_length_prefix: str = "varint"
    nested_expand_depth: int = 0
    runlog_path: str | None = None
    runlog_max_records: int = 1000

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls().apply_overrides(cli_overrides)
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            setattr(cfg, field.name, coerce_field_value(field.type, env[env_key]))
        return cfg
