from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import websockets

from .config import Config

CONNECT_SUPPORTS_CLOSE_TIMEOUT = (
    "close_timeout" in inspect.signature(websockets.connect).parameters
)
CONNECT_HEADERS_PARAM: str | None
if "extra_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "extra_headers"
elif "additional_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "additional_headers"
else:
    CONNECT_HEADERS_PARAM = None


@dataclass(slots=True)
class DropCounter:
    total: int = 0

    def bump(self, count: int = 1) -> None:
        self.total += count


@dataclass(slots=True)
class ReconnectPolicy:
    """Fixed-delay retry; ``max_reconnects=None`` retries forever."""

    max_reconnects: int | None
    backoff_seconds: float

    def can_reconnect(self, reconnects: int) -> bool:
        if self.max_reconnects is None:
            return True
        if self.max_reconnects <= 0:
            return False
        return reconnects <= self.max_reconnects

    def backoff(self) -> float:
        return max(0.0, self.backoff_seconds)


def normalize_ws_keepalive(config: Config) -> tuple[float | None, float | None]:
    ping_interval: float | None = config.ws_ping_interval_seconds
    if ping_interval is not None and ping_interval <= 0:
        ping_interval = None
    ping_timeout: float | None = config.ws_ping_timeout_seconds
    if ping_timeout is not None and ping_timeout <= 0:
        ping_timeout = None
    return ping_interval, ping_timeout


def normalize_target(target: str) -> str:
    """Accept ``ws://``/``wss://`` URLs or bare ``host:port``."""
    text = target.strip()
    if not text:
        raise ValueError("empty connection target")
    if "://" in text:
        scheme = urlsplit(text).scheme.lower()
        if scheme not in {"ws", "wss"}:
            raise ValueError(f"unsupported target scheme: {scheme}")
        return text
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"target must be ws://host:port or host:port, got {target!r}")
    return f"ws://{host}:{int(port)}"


def build_connect_kwargs(config: Config) -> dict[str, Any]:
    ping_interval, ping_timeout = normalize_ws_keepalive(config)
    connect_kwargs: dict[str, Any] = {
        "ping_interval": ping_interval,
        "ping_timeout": ping_timeout,
        "open_timeout": config.ws_open_timeout_seconds,
        "max_size": config.ws_max_frame_bytes,
    }
    if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
        connect_kwargs["close_timeout"] = config.ws_close_timeout_seconds
    if config.ws_user_agent and CONNECT_HEADERS_PARAM is not None:
        connect_kwargs[CONNECT_HEADERS_PARAM] = [("User-Agent", config.ws_user_agent)]
    return connect_kwargs
