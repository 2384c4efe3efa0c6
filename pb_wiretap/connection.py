"""Upstream WebSocket connection with fixed-delay reconnect and event fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

import websockets
from websockets.exceptions import WebSocketException

from .capture_log import monotonic_ns
from .config import Config
from .control import encode_upstream_request, parse_upstream_text
from .events import Closed, Connect, Connected, Error, Event, Frame, Request
from .runlog import RunLog
from .ws_primitives import DropCounter, ReconnectPolicy, build_connect_kwargs, normalize_target

ConnectFactory = Callable[..., Any]
EventCallback = Callable[[Event], Any]


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class TransportError(ConnectionError):
    pass


class SubscriberClosed(TransportError):
    pass


_QUEUE_CLOSED = object()


class SubscriberHandle:
    """One observer of a :class:`ConnectionManager`.

    Events go to ``callback`` when one is given, otherwise into a private
    bounded queue read with :meth:`get` or :meth:`events`.
    """

    def __init__(
        self,
        handle_id: int,
        callback: EventCallback | None = None,
        *,
        max_queue: int = 1000,
    ) -> None:
        self.id = handle_id
        self._callback = callback
        self._queue: asyncio.Queue[Any] | None = (
            None if callback is not None else asyncio.Queue(maxsize=max(1, max_queue))
        )
        self.closed = False
        self.delivered = 0

    def __repr__(self) -> str:
        return f"SubscriberHandle(id={self.id}, closed={self.closed})"

    def deliver(self, event: Event) -> None:
        if self.closed:
            raise SubscriberClosed(f"subscriber {self.id} is closed")
        if self._callback is not None:
            self._callback(event)
        else:
            self._queue.put_nowait(event)
        self.delivered += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue is not None:
            with contextlib.suppress(asyncio.QueueFull):
                self._queue.put_nowait(_QUEUE_CLOSED)

    def pending(self) -> int:
        return 0 if self._queue is None else self._queue.qsize()

    async def get(self) -> Event:
        if self._queue is None:
            raise TypeError("callback subscribers have no queue")
        item = await self._queue.get()
        if item is _QUEUE_CLOSED:
            raise SubscriberClosed(f"subscriber {self.id} is closed")
        return item

    def get_nowait(self) -> Event | None:
        if self._queue is None or self._queue.empty():
            return None
        item = self._queue.get_nowait()
        return None if item is _QUEUE_CLOSED else item

    async def events(self) -> AsyncIterator[Event]:
        while True:
            try:
                yield await self.get()
            except SubscriberClosed:
                return


@dataclass(slots=True)
class ConnectionStats:
    attempts: int = 0
    reconnects: int = 0
    frames: int = 0
    bytes_in: int = 0
    dropped_subscribers: DropCounter = field(default_factory=DropCounter)


def _close_details(source: Any) -> tuple[int | None, str | None]:
    rcvd = getattr(source, "rcvd", None)
    if rcvd is not None:
        return getattr(rcvd, "code", None), getattr(rcvd, "reason", None) or None
    code = getattr(source, "close_code", None)
    if code is None:
        code = getattr(source, "code", None)
    reason = getattr(source, "close_reason", None)
    if reason is None:
        reason = getattr(source, "reason", None)
    return (code if isinstance(code, int) else None), (reason or None)


def _describe_error(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class ConnectionManager:
    """Owns one upstream connection and the set of subscribers fed from it.

    ``connect`` supersedes any earlier target: the previous supervisor task
    is cancelled and awaited, and every event is tagged with the generation
    that produced it so nothing from an abandoned attempt reaches
    subscribers. Reconnects use a fixed delay and, by default, never stop.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        connect_factory: ConnectFactory | None = None,
        runlog: RunLog | None = None,
    ) -> None:
        self._config = config or Config()
        self._connect_factory = connect_factory or websockets.connect
        self._connect_kwargs = build_connect_kwargs(self._config)
        self.runlog = runlog or RunLog(
            self._config.runlog_path, max_records=self._config.runlog_max_records
        )
        self.stats = ConnectionStats()
        self._state = ConnectionState.DISCONNECTED
        self._target: str | None = None
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._ws: Any = None
        self._subscribers: dict[int, SubscriberHandle] = {}
        self._handle_ids = itertools.count(1)
        self._idle_teardown: asyncio.Future[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(
        self,
        callback: EventCallback | None = None,
        *,
        max_queue: int | None = None,
    ) -> SubscriberHandle:
        handle = SubscriberHandle(
            next(self._handle_ids),
            callback,
            max_queue=self._config.subscriber_queue_max if max_queue is None else max_queue,
        )
        self._subscribers[handle.id] = handle
        return handle

    async def unsubscribe(self, handle: SubscriberHandle) -> None:
        removed = self._subscribers.pop(handle.id, None)
        handle.close()
        if removed is not None and not self._subscribers and self._target is not None:
            # Nobody is listening; do not keep the upstream socket alive.
            await self.disconnect(reason="no subscribers")

    def broadcast(self, event: Event) -> int:
        """Deliver ``event`` to every live subscriber; return the delivery count.

        A subscriber whose delivery fails is dropped; the rest still receive
        the event.
        """
        delivered = 0
        for handle in list(self._subscribers.values()):
            try:
                handle.deliver(event)
            except Exception as exc:
                self._drop(handle, exc)
                continue
            delivered += 1
        return delivered

    def _drop(self, handle: SubscriberHandle, exc: Exception) -> None:
        self._subscribers.pop(handle.id, None)
        handle.close()
        self.stats.dropped_subscribers.bump()
        self.runlog.write(
            "subscriber_dropped",
            subscriber_id=handle.id,
            reason=_describe_error(exc),
        )
        if not self._subscribers and self._target is not None:
            # Usually called from inside the supervisor task, which cannot
            # await its own cancellation; tear down from a separate task.
            self._idle_teardown = asyncio.ensure_future(
                self._disconnect_if_idle(self._generation)
            )

    async def _disconnect_if_idle(self, generation: int) -> None:
        if self._current(generation) and not self._subscribers:
            await self.disconnect(reason="no subscribers")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, target: str) -> None:
        url = normalize_target(target)
        self._generation += 1
        generation = self._generation
        await self._teardown()
        if generation != self._generation:
            # A newer connect() or disconnect() arrived while tearing down.
            return
        self._target = url
        self._task = asyncio.create_task(self._supervise(url, generation))

    async def disconnect(self, *, reason: str = "disconnect requested") -> None:
        self._generation += 1
        had_connection = self._task is not None
        await self._teardown()
        previous = self._target
        self._target = None
        self._set_state(ConnectionState.DISCONNECTED)
        if had_connection:
            self.runlog.write("ws_close", target=previous, reason=reason, deliberate=True)
            self.broadcast(Closed(code=None, reason=reason))

    async def close(self) -> None:
        await self.disconnect(reason="manager closed")
        for handle in list(self._subscribers.values()):
            handle.close()
        self._subscribers.clear()

    async def _teardown(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        self._set_state(ConnectionState.CLOSING)
        task.cancel()
        # asyncio.wait does not re-raise the task's CancelledError, so a
        # cancellation aimed at the caller still propagates.
        await asyncio.wait({task})

    def _current(self, generation: int) -> bool:
        return generation == self._generation

    def _set_state(self, state: ConnectionState, generation: int | None = None) -> None:
        if generation is not None and not self._current(generation):
            return
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self.runlog.write("ws_state", from_state=previous, to_state=state)

    def _emit(self, generation: int, event: Event) -> None:
        if self._current(generation):
            self.broadcast(event)

    async def _supervise(self, url: str, generation: int) -> None:
        policy = ReconnectPolicy(
            max_reconnects=self._config.ws_reconnect_max,
            backoff_seconds=self._config.ws_reconnect_delay_seconds,
        )
        failures = 0
        while self._current(generation):
            self._set_state(ConnectionState.CONNECTING, generation)
            self.stats.attempts += 1
            self.runlog.write("ws_connect_attempt", target=url, consecutive_failures=failures)
            try:
                async with self._connect_factory(url, **self._connect_kwargs) as ws:
                    if not self._current(generation):
                        return
                    self._ws = ws
                    failures = 0
                    self._set_state(ConnectionState.OPEN, generation)
                    self.runlog.write("ws_connect", target=url)
                    self._emit(generation, Connected(url))
                    await self._pump(ws, generation)
                code, reason = _close_details(ws)
                self._ws = None
                if not self._current(generation):
                    return
                self._set_state(ConnectionState.DISCONNECTED, generation)
                self.runlog.write("ws_close", target=url, close_code=code, close_reason=reason)
                self._emit(generation, Closed(code=code, reason=reason))
            except asyncio.CancelledError:
                self._ws = None
                raise
            except Exception as exc:
                self._ws = None
                if not self._current(generation):
                    return
                code, reason = _close_details(exc)
                self._set_state(ConnectionState.DISCONNECTED, generation)
                self.runlog.write(
                    "ws_error",
                    target=url,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                    close_code=code,
                )
                self._emit(generation, Error(_describe_error(exc)))
                self._emit(generation, Closed(code=code, reason=reason))
            failures += 1
            self.stats.reconnects += 1
            if not policy.can_reconnect(failures):
                self.runlog.write("reconnect_exhausted", target=url, failures=failures)
                return
            self.runlog.write(
                "reconnect",
                target=url,
                delay_seconds=policy.backoff(),
                consecutive_failures=failures,
            )
            await asyncio.sleep(policy.backoff())

    async def _pump(self, ws: Any, generation: int) -> None:
        async for raw in ws:
            if not self._current(generation):
                return
            rx_mono_ns = monotonic_ns()
            rx_wall_ns_utc = time.time_ns()
            if isinstance(raw, str):
                channels = parse_upstream_text(raw)
                if channels is not None:
                    self._emit(generation, channels)
                    continue
                payload = raw.encode("utf-8")
                text = True
            else:
                payload = bytes(raw)
                text = False
            self.stats.frames += 1
            self.stats.bytes_in += len(payload)
            self._emit(generation, Frame(payload, rx_mono_ns, rx_wall_ns_utc, text=text))

    # ------------------------------------------------------------------
    # Host control requests
    # ------------------------------------------------------------------

    async def send_control(self, request: Request) -> None:
        """Relay a subscriber control request to the upstream source."""
        ws = self._ws
        if ws is None or self._state is not ConnectionState.OPEN:
            raise TransportError("upstream connection is not open")
        await ws.send(encode_upstream_request(request))

    async def handle_request(self, request: Request) -> None:
        if isinstance(request, Connect):
            try:
                await self.connect(request.target)
            except ValueError as exc:
                self.broadcast(Error(_describe_error(exc)))
            return
        try:
            await self.send_control(request)
        except (TransportError, WebSocketException) as exc:
            self.broadcast(Error(_describe_error(exc)))
