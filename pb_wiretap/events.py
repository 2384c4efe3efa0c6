from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Connected:
    target: str


@dataclass(frozen=True, slots=True)
class Frame:
    payload: bytes
    rx_mono_ns: int
    rx_wall_ns_utc: int
    text: bool = False


@dataclass(frozen=True, slots=True)
class Error:
    message: str


@dataclass(frozen=True, slots=True)
class Closed:
    code: int | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Channels:
    channels: tuple[str, ...]


Event = Connected | Frame | Error | Closed | Channels


@dataclass(frozen=True, slots=True)
class Connect:
    host: str
    port: int

    @property
    def target(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True, slots=True)
class GetChannels:
    pass


@dataclass(frozen=True, slots=True)
class Subscribe:
    channel: str


Request = Connect | GetChannels | Subscribe
