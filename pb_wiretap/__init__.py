"""Live protobuf-over-WebSocket capture and inspection."""

__all__ = [
    "cli",
    "config",
    "descriptors",
    "wire",
    "schema",
    "descriptor_set",
    "classify",
    "capture_log",
    "events",
    "control",
    "connection",
    "session",
    "runlog",
    "ws_primitives",
]
