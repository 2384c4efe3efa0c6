from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .capture_log import CapturedMessage, CaptureLog
from .classify import Classification, Classifier
from .config import Config
from .connection import ConnectionManager, SubscriberHandle
from .events import Closed, Connected, Error, Event, Frame
from .runlog import RunLog
from .schema import SchemaParseError, SchemaRegistry, UnknownType

MessageListener = Callable[[CapturedMessage], None]

ERROR_TRANSPORT = "transport"
ERROR_DECODE = "decode"
ERROR_SCHEMA = "schema"


@dataclass(frozen=True, slots=True)
class ErrorState:
    kind: str
    message: str


def _read_schema_file(path: Path) -> tuple[str, bytes | str]:
    data = path.read_bytes()
    if path.suffix.lower() in {".pb", ".desc", ".protoset", ".bin"}:
        return "descriptor_set", data
    try:
        return "text", data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SchemaParseError(f"{path.name} is not UTF-8 text: {exc.reason}") from exc


class CaptureSession:
    """Frame -> classification -> capture log, with one current error.

    With a selected type every frame is decoded as that type; without one the
    classifier tries every registered type in registration order.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        registry: SchemaRegistry | None = None,
        runlog: RunLog | None = None,
    ) -> None:
        self.config = config or Config()
        self.registry = registry or SchemaRegistry(string_length=self.config.string_length_prefix)
        self.classifier = Classifier(self.registry)
        self.log = CaptureLog(self.config.capture_log_max_entries)
        self.runlog = runlog or RunLog(
            self.config.runlog_path, max_records=self.config.runlog_max_records
        )
        self.selected_type: str | None = None
        self.current_error: ErrorState | None = None
        self.connected_target: str | None = None
        self._listeners: list[MessageListener] = []
        self._handle: SubscriberHandle | None = None
        self._manager: ConnectionManager | None = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self, manager: ConnectionManager) -> SubscriberHandle:
        if self._handle is not None:
            raise RuntimeError("session is already attached")
        self._manager = manager
        self._handle = manager.subscribe(self.on_event)
        return self._handle

    async def detach(self) -> None:
        if self._manager is None or self._handle is None:
            return
        manager, handle = self._manager, self._handle
        self._manager = None
        self._handle = None
        self.connected_target = None
        await manager.unsubscribe(handle)

    def add_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_event(self, event: Event) -> None:
        if isinstance(event, Frame):
            self.capture(
                event.payload,
                rx_mono_ns=event.rx_mono_ns,
                rx_wall_ns_utc=event.rx_wall_ns_utc,
            )
        elif isinstance(event, Connected):
            self.connected_target = event.target
            self._clear_error(ERROR_TRANSPORT)
        elif isinstance(event, Error):
            self.current_error = ErrorState(ERROR_TRANSPORT, event.message)
        elif isinstance(event, Closed):
            self.connected_target = None

    def classify(self, raw: bytes) -> Classification:
        if self.selected_type is not None:
            return self.classifier.classify(raw, self.selected_type)
        return self.classifier.classify_any(raw)

    def _expand(self, result: Classification) -> Classification:
        depth = self.config.nested_expand_depth
        if not result.ok or depth <= 0:
            return result
        expanded = self.registry.expand(result.decoded, depth)
        return Classification(result.resolved_type, expanded, None, result.candidates_tried)

    def capture(
        self,
        raw: bytes,
        *,
        rx_mono_ns: int | None = None,
        rx_wall_ns_utc: int | None = None,
    ) -> CapturedMessage:
        result = self._expand(self.classify(raw))
        message = self.log.append(
            raw, result, rx_mono_ns=rx_mono_ns, rx_wall_ns_utc=rx_wall_ns_utc
        )
        if result.ok:
            self._clear_error(ERROR_DECODE)
        else:
            self.current_error = ErrorState(ERROR_DECODE, f"frame {message.seq}: {result.error}")
            self.runlog.write(
                "decode_error",
                seq=message.seq,
                selected_type=self.selected_type,
                error=result.error,
                raw_len=len(message.raw),
            )
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                # A broken observer must not cost the session its subscription.
                self.runlog.write(
                    "listener_error",
                    seq=message.seq,
                    error=f"{type(exc).__name__}: {exc}",
                )
        return message

    def _clear_error(self, kind: str) -> None:
        if self.current_error is not None and self.current_error.kind == kind:
            self.current_error = None

    # ------------------------------------------------------------------
    # Schema and selection
    # ------------------------------------------------------------------

    def load_schema_text(self, name: str, text: str) -> list[str]:
        try:
            added = self.registry.load_schema(name, text)
        except SchemaParseError as exc:
            self.current_error = ErrorState(ERROR_SCHEMA, f"{name}: {exc}")
            raise
        self._schema_loaded(name, added)
        return added

    async def load_schema_file(self, path: str | Path) -> list[str]:
        schema_path = Path(path)
        try:
            kind, content = await asyncio.to_thread(_read_schema_file, schema_path)
            if kind == "descriptor_set":
                added = self.registry.load_descriptor_set(schema_path.name, content)
            else:
                added = self.registry.load_schema(schema_path.name, content)
        except (OSError, SchemaParseError) as exc:
            self.current_error = ErrorState(ERROR_SCHEMA, f"{schema_path.name}: {exc}")
            raise
        self._schema_loaded(schema_path.name, added)
        return added

    def _schema_loaded(self, name: str, added: list[str]) -> None:
        self._clear_error(ERROR_SCHEMA)
        self.runlog.write("schema_loaded", schema=name, types=added)

    def select_type(self, type_name: str | None) -> None:
        if type_name is not None and type_name not in self.registry:
            raise UnknownType(type_name)
        self.selected_type = type_name

    def decode_entry(self, seq: int) -> Classification:
        """Re-decode a stored frame with the current selection (detail view)."""
        message = self.log.get(seq)
        if message is None:
            raise KeyError(f"no captured frame with seq {seq}")
        return self._expand(self.classify(message.raw))

    def navigate(self) -> int:
        """Page navigation: forget captured frames, keep schema and selection."""
        dropped = self.log.clear()
        self.runlog.write("capture_clear", dropped=dropped)
        return dropped
