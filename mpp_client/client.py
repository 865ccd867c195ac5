# =============================================================================
# MPP Python Client -- Async Client
# =============================================================================
#
# Primary public API. Async context manager, async iterator, callbacks.
# Gates inbound traffic on READY through the pending queue and feeds the rest
# to the dispatcher.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable

from ._logging import logger
from .clock import ClockSynchronizer
from .connection import ConnectionManager
from .constants import (
    DEFAULT_ROOM,
    DEFAULT_USERNAME,
    EVENT_QUEUE_SIZE,
    PENDING_QUEUE_SIZE,
    READY_TIMEOUT,
)
from .dispatcher import MessageDispatcher
from .errors import InvalidArgument, ProtocolViolation, SessionDestroyed, lookup
from .pending_queue import (
    INBOUND_BYPASS_KINDS,
    OUTBOUND_BYPASS_KINDS,
    OUTBOUND_QUEUEABLE_KINDS,
    PendingQueue,
)
from .protocol import MessageCodec
from .roster import Roster
from .types import (
    ClientEvent,
    ClientOptions,
    Command,
    CursorMove,
    EventType,
    Hello,
    InboundMessage,
    MessageKind,
    Participant,
    PendingDirection,
    ReconnectConfig,
    RoomSnapshot,
    SendChat,
    SendResult,
    SessionInfo,
    SessionState,
    SessionStats,
    SetRoom,
    SetUser,
)

# Type alias for event handlers
EventHandler = Callable[[ClientEvent], Any]
AsyncEventHandler = Callable[[ClientEvent], Awaitable[Any]]

# Delivered to handlers only, never to the async iterator
_HANDLER_ONLY_EVENTS = frozenset({EventType.DEBUG.value})


class AsyncMPPClient:
    """Async client for a Multiplayer Piano room.

    Args:
        options: Session configuration. Defaults to :class:`ClientOptions`.
        reconnect: Retry policy. Defaults to 3 attempts, 5s apart.
        queue_size: Max events buffered for the async iterator. When full,
            oldest events are dropped. Default 1000.
        pending_size: Max items held before READY. Default 1000.
        **overrides: Field overrides applied on top of *options*, e.g.
            ``token="..."`` or ``room="lobby"``.

    Example::

        async with AsyncMPPClient(token="...", room="lobby") as client:
            await client.chat("hello")
            async for event in client:
                if event.type == "chat":
                    print(event.payload["author"]["name"], event.payload["content"])
    """

    def __init__(
        self,
        options: ClientOptions | None = None,
        *,
        reconnect: ReconnectConfig | None = None,
        queue_size: int = EVENT_QUEUE_SIZE,
        pending_size: int = PENDING_QUEUE_SIZE,
        **overrides: Any,
    ) -> None:
        if options is None:
            options = ClientOptions(**overrides)
        elif overrides:
            options = dataclasses.replace(options, **overrides)
        self._options = options

        # Session data
        self._room = options.room
        self._username = options.username
        self._me: Participant | None = None
        self._cursor: CursorMove | None = None

        # Services
        self._codec = MessageCodec()
        self._roster = Roster()
        self._clock = ClockSynchronizer(options.clock_steps, options.clock_duration)
        self._pending = PendingQueue(max_size=pending_size)
        self._dispatcher = MessageDispatcher(self._roster, self._clock, self._emit)

        # Event queue for async iteration
        self._event_queue: asyncio.Queue[ClientEvent | None] = asyncio.Queue(
            maxsize=queue_size
        )

        # Callback handlers: type -> list of handlers
        self._handlers: dict[str, list[EventHandler | AsyncEventHandler]] = defaultdict(
            list
        )
        self._wildcard_handlers: list[EventHandler | AsyncEventHandler] = []

        self._stats = SessionStats()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._ready_event = asyncio.Event()

        self._connection = ConnectionManager(
            options.gateway,
            token=options.token,
            codec=self._codec,
            reconnect=reconnect,
            proxy=options.proxy,
            origin=options.origin,
            extra_headers=options.extra_headers,
            heartbeat_interval=options.heartbeat_interval,
            keepalive_interval=options.keepalive_interval,
            on_keepalive=self._take_cursor_frame,
            on_frame=self._on_raw_frame,
            on_state_change=self._on_state_change,
            on_debug=self._emit_debug,
        )

        # Messages that drive the lifecycle, handled after dispatch
        self._lifecycle_handlers: dict[MessageKind, Callable[[Any], None]] = {
            MessageKind.HELLO: self._handle_hello,
            MessageKind.ROOM_SNAPSHOT: self._handle_room_snapshot,
        }

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> AsyncMPPClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.destroy()

    # -- Async iterator -------------------------------------------------------

    def __aiter__(self) -> AsyncMPPClient:
        return self

    async def __anext__(self) -> ClientEvent:
        event = await self._event_queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    # -- Connect / Destroy ----------------------------------------------------

    async def connect(self) -> None:
        """Connect and wait for the first room snapshot.

        Raises:
            SessionDestroyed: The client was already destroyed.
            ConnectionFailure: The socket could not be opened.
            AuthorizationFailure: The gateway rejected the token.
        """
        self._emit_debug("Preparing to connect...")
        await self._connection.connect()

        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=READY_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Room snapshot not received within %ss", READY_TIMEOUT)

    async def destroy(self) -> None:
        """Disconnect and tear the session down. Safe to call repeatedly."""
        current = asyncio.current_task()
        for task in self._background_tasks:
            if task is not current:
                task.cancel()
        self._background_tasks.clear()
        await self._connection.destroy()

    async def disconnect(self) -> None:
        """Alias for destroy."""
        await self.destroy()

    async def close(self) -> None:
        """Alias for destroy."""
        await self.destroy()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._connection.state

    @property
    def is_ready(self) -> bool:
        return self._connection.is_ready

    @property
    def is_destroyed(self) -> bool:
        return self._connection.is_destroyed

    @property
    def roster(self) -> Roster:
        return self._roster

    @property
    def me(self) -> Participant | None:
        """Our own participant, as reported in the handshake acknowledgement."""
        return self._me

    @property
    def gateway(self) -> str:
        return self._connection.url

    @property
    def room(self) -> str:
        return self._room

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def clock_offset(self) -> float:
        """Estimated ``server - local`` clock difference in milliseconds."""
        return self._clock.offset

    @property
    def clock(self) -> ClockSynchronizer:
        return self._clock

    @property
    def ready_at(self) -> float | None:
        return self._connection.ready_at

    @property
    def uptime(self) -> float | None:
        """Seconds since the session last became READY."""
        ready_at = self._connection.ready_at
        return time.time() - ready_at if ready_at is not None else None

    @property
    def pending_count(self) -> int:
        return self._pending.size

    @property
    def queue_size(self) -> int:
        """Number of events waiting in the iterator queue."""
        return self._event_queue.qsize()

    @property
    def session(self) -> SessionInfo:
        return SessionInfo(
            state=self._connection.state,
            reconnect_attempts=self._connection.reconnect_attempts,
            clock_offset=self._clock.offset,
            room=self._room,
            username=self._username,
            ready_at=self._connection.ready_at,
        )

    def server_time(self) -> float:
        """Current server time estimate in epoch milliseconds."""
        return self._clock.server_now()

    # -- Commands -------------------------------------------------------------

    async def chat(self, message: str) -> SendResult:
        """Send a chat message.

        Chat is only sent while READY; earlier calls are rejected and
        reported as not sent.

        Raises:
            InvalidArgument: *message* is empty or not a string.
            SessionDestroyed: The client was destroyed.
        """
        self._ensure_alive()
        if not isinstance(message, str):
            raise InvalidArgument(lookup("INVALID_TYPE", "message", "string"))
        if not message.strip():
            raise InvalidArgument(lookup("EMPTY_ARGUMENT", "message"))
        return await self._send_command(SendChat(message))

    async def set_room(self, room_id: str = DEFAULT_ROOM) -> SendResult:
        """Join *room_id*. Also used as the room for future reconnects."""
        self._ensure_alive()
        if not isinstance(room_id, str) or not room_id:
            raise InvalidArgument(lookup("EMPTY_ARGUMENT", "room"))
        self._room = room_id
        return await self._send_command(SetRoom(room_id))

    async def set_username(self, name: str = DEFAULT_USERNAME) -> SendResult:
        """Change our display name."""
        self._ensure_alive()
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument(lookup("EMPTY_ARGUMENT", "username"))
        self._username = name
        return await self._send_command(SetUser(name))

    def move_cursor(self, x: float, y: float) -> None:
        """Record a cursor position; the latest one is sent on the next
        keep-alive tick."""
        self._ensure_alive()
        for value in (x, y):
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise InvalidArgument(lookup("INVALID_TYPE", "coordinate", "number"))
        self._cursor = CursorMove(x=x, y=y)

    # -- Handler registration -------------------------------------------------

    def on(
        self, event_type: str
    ) -> Callable[[EventHandler | AsyncEventHandler], EventHandler | AsyncEventHandler]:
        """Decorator to register a handler for one event type.

        Example::

            @client.on("chat")
            async def handle(event: ClientEvent):
                print(event.payload["content"])
        """

        def decorator(
            fn: EventHandler | AsyncEventHandler,
        ) -> EventHandler | AsyncEventHandler:
            self._handlers[event_type].append(fn)
            return fn

        return decorator

    def on_any(
        self, fn: EventHandler | AsyncEventHandler
    ) -> EventHandler | AsyncEventHandler:
        """Register a wildcard handler that receives all events."""
        self._wildcard_handlers.append(fn)
        return fn

    def off(self, event_type: str, fn: EventHandler | AsyncEventHandler) -> None:
        """Remove a specific handler."""
        handlers = self._handlers.get(event_type, [])
        if fn in handlers:
            handlers.remove(fn)

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        return {
            "state": self._connection.state.value,
            "is_ready": self.is_ready,
            "room": self._room,
            "username": self._username,
            "participants": len(self._roster),
            "clock_offset_ms": self._clock.offset,
            "latency_ms": self._clock.last_latency_ms,
            "frames_received": self._stats.frames_received,
            "messages_received": self._stats.messages_received,
            "messages_sent": self._stats.messages_sent,
            "protocol_violations": self._stats.protocol_violations,
            "reconnect_count": self._stats.reconnect_count,
            "reconnect_attempts": self._connection.reconnect_attempts,
            "uptime": self.uptime,
            "queue_size": self._event_queue.qsize(),
            "pending_queue": self._pending.get_stats(),
        }

    # -- Internal: outbound ---------------------------------------------------

    def _ensure_alive(self) -> None:
        if self._connection.is_destroyed:
            raise SessionDestroyed(lookup("SESSION_DESTROYED"))

    async def _send_command(self, cmd: Command) -> SendResult:
        """Send now, queue until READY, or reject. Never raises for
        transport reasons."""
        conn = self._connection
        if conn.is_ready or (cmd.kind in OUTBOUND_BYPASS_KINDS and conn.is_open):
            if await conn.send(self._codec.encode(cmd)):
                self._stats.messages_sent += 1
                return SendResult.SENT

        if cmd.kind in OUTBOUND_QUEUEABLE_KINDS and not conn.is_destroyed:
            if self._pending.enqueue_outbound(cmd):
                self._emit_debug(f"Queued {cmd.kind.value} until the session is ready")
                return SendResult.QUEUED

        self._emit_debug(lookup("WS_NOT_OPEN", cmd.kind.value))
        return SendResult.REJECTED

    async def _flush_outbound(self, commands: list[Command]) -> None:
        for cmd in commands:
            result = await self._send_command(cmd)
            if result is not SendResult.SENT:
                logger.debug("Pending %s was %s", cmd.kind.value, result.value)

    def _take_cursor_frame(self) -> str | None:
        """Keep-alive tick: hand the latest cursor position to the socket."""
        if self._cursor is None or not self._connection.is_ready:
            return None
        cursor, self._cursor = self._cursor, None
        self._stats.messages_sent += 1
        return self._codec.encode(cursor)

    # -- Internal: inbound ----------------------------------------------------

    def _on_raw_frame(self, data: str | bytes) -> None:
        """Decode one socket frame and process its messages in order."""
        self._stats.frames_received += 1
        try:
            items = self._codec.split_frame(data)
        except ProtocolViolation as exc:
            self._report_violation(exc)
            return

        for raw in items:
            try:
                message = self._codec.parse(raw)
            except ProtocolViolation as exc:
                self._report_violation(exc)
                continue
            self._stats.messages_received += 1
            self._process_message(message)

    def _process_message(self, message: InboundMessage) -> None:
        """Dispatch, or hold until READY unless the kind bypasses the queue."""
        if (
            self._connection.state != SessionState.READY
            and message.kind not in INBOUND_BYPASS_KINDS
        ):
            if not self._pending.enqueue_inbound(message):
                self._emit_debug(f"Pending queue full, dropped {message.kind.value}")
            return

        self._dispatcher.dispatch(message)
        handler = self._lifecycle_handlers.get(message.kind)
        if handler is not None:
            handler(message)

    def _report_violation(self, exc: ProtocolViolation) -> None:
        self._stats.protocol_violations += 1
        logger.warning("Dropping inbound data: %s", exc)
        self._emit_debug(str(exc))

    # -- Internal: lifecycle --------------------------------------------------

    def _handle_hello(self, message: Hello) -> None:
        if message.user is not None:
            self._me = message.user
        self._emit_debug(f"Handshake acknowledged, joining {self._room}")
        self._fire_task(self._send_command(SetRoom(self._room)))

    def _handle_room_snapshot(self, message: RoomSnapshot) -> None:
        if message.room_id:
            self._room = message.room_id
        if not self._connection.mark_ready():
            return

        logger.info(
            "Session ready in room %s (%d participants)", self._room, len(self._roster)
        )
        self._ready_event.set()
        self._emit(
            ClientEvent(
                type=EventType.READY,
                payload={
                    "room": self._room,
                    "participants": len(self._roster),
                    "ready_at": self._connection.ready_at,
                },
            )
        )
        flushed = self._drain_pending()
        if not any(isinstance(cmd, SetUser) for cmd in flushed):
            self._apply_username()

    def _drain_pending(self) -> list[Command]:
        """Replay everything queued before READY, front to back.

        Inbound items are dispatched synchronously; outbound commands are
        sent in order from a single task. Returns the outbound commands.
        """
        items = self._pending.drain()
        if not items:
            return []
        logger.info("Draining %d pending items", len(items))

        outbound: list[Command] = []
        for item in items:
            if item.direction is PendingDirection.INBOUND:
                self._process_message(item.message)
            else:
                outbound.append(item.message)
        if outbound:
            self._fire_task(self._flush_outbound(outbound))
        return outbound

    def _apply_username(self) -> None:
        name = self._username
        if not name or (self._me is not None and self._me.name == name):
            return
        self._fire_task(self._send_command(SetUser(name)))

    def _on_state_change(self, state: SessionState) -> None:
        if state == SessionState.RECONNECTING:
            self._stats.reconnect_count += 1
        elif state == SessionState.DISCONNECTED:
            self._ready_event.clear()
            self._emit(
                ClientEvent(
                    type=EventType.DISCONNECTED,
                    payload={"reconnect_attempts": self._connection.reconnect_attempts},
                )
            )
        elif state == SessionState.TERMINATED:
            self._ready_event.clear()
            self._clock.reset()
            self._pending.clear()
            self._cursor = None
            self._emit(
                ClientEvent(
                    type=EventType.TERMINATED,
                    payload={"reconnect_attempts": self._connection.reconnect_attempts},
                )
            )
            # Signal the iterator to stop
            self._put_event(None)

    # -- Internal: events -----------------------------------------------------

    def _emit(self, event: ClientEvent) -> None:
        """Invoke handlers, then enqueue for the async iterator."""
        self._invoke_handlers(event)
        if event.type in _HANDLER_ONLY_EVENTS:
            return
        self._put_event(event)

    def _emit_debug(self, message: str) -> None:
        logger.debug("%s", message)
        self._emit(ClientEvent(type=EventType.DEBUG, payload={"message": message}))

    def _put_event(self, event: ClientEvent | None) -> None:
        try:
            self._event_queue.put_nowait(event)
        except asyncio.QueueFull:
            # Drop oldest to make room
            try:
                self._event_queue.get_nowait()
                self._event_queue.put_nowait(event)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    def _invoke_handlers(self, event: ClientEvent) -> None:
        """Call registered handlers for this event type."""
        handlers = self._handlers.get(event.type, []) + self._wildcard_handlers
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event.type, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
