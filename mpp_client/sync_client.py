# =============================================================================
# MPP Python Client -- Synchronous Wrapper
# =============================================================================
#
# Thread-based wrapper around AsyncMPPClient for blocking usage.
# =============================================================================

from __future__ import annotations

import asyncio
import queue
import threading
from typing import Any, Callable

from ._logging import logger
from .client import AsyncMPPClient
from .constants import DEFAULT_ROOM, DEFAULT_USERNAME, EVENT_QUEUE_SIZE
from .errors import ConnectionFailure, OperationTimeout, SessionDestroyed, lookup
from .roster import Roster
from .types import (
    ClientEvent,
    ClientOptions,
    ReconnectConfig,
    SendResult,
    SessionState,
)


class SyncMPPClient:
    """Blocking / thread-based MPP client.

    Runs an :class:`AsyncMPPClient` on a background thread. Public methods
    are thread-safe and block until complete. Handlers registered with
    :meth:`on` run on the background thread.

    Args:
        options: Session configuration.
        reconnect: Reconnection config.
        queue_size: Max events buffered for ``recv()`` (default 1000).
        **overrides: Field overrides for *options*.

    Example::

        client = SyncMPPClient(token="...", room="lobby")
        client.connect()
        client.chat("hello")
        event = client.recv(timeout=5.0)
        client.close()
    """

    def __init__(
        self,
        options: ClientOptions | None = None,
        *,
        reconnect: ReconnectConfig | None = None,
        queue_size: int = EVENT_QUEUE_SIZE,
        **overrides: Any,
    ) -> None:
        self._options = options
        self._overrides = overrides
        self._reconnect = reconnect
        self._queue_size = queue_size

        self._event_queue: queue.Queue[ClientEvent | None] = queue.Queue(
            maxsize=queue_size
        )
        self._handlers: dict[str, list[Callable[[ClientEvent], Any]]] = {}
        self._wildcard_handlers: list[Callable[[ClientEvent], Any]] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._client: AsyncMPPClient | None = None
        self._running = False
        self._connected_event = threading.Event()
        self._connect_error: Exception | None = None

    # -- Lifecycle ------------------------------------------------------------

    def connect(self, timeout: float = 15.0) -> None:
        """Connect in a background thread. Blocks until the room is joined.

        Raises:
            OperationTimeout: Not connected within *timeout* seconds.
            ConnectionFailure: The socket could not be opened.
            AuthorizationFailure: The gateway rejected the token.
        """
        if self._running:
            return

        self._running = True
        self._connect_error = None
        self._connected_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="mpp-client"
        )
        self._thread.start()

        if not self._connected_event.wait(timeout=timeout):
            self._running = False
            self._stop_client(timeout=3.0)
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=3.0)
            raise OperationTimeout(lookup("OPERATION_TIMEOUT", "connect()", timeout))

        err = self._connect_error
        if err is not None:
            self._running = False
            if isinstance(err, ConnectionFailure):
                raise err
            raise ConnectionFailure(f"Connection failed: {err}") from err

    def close(self) -> None:
        """Disconnect and stop the background thread."""
        self._running = False
        self._stop_client(timeout=5.0)
        # Signal queue consumers
        try:
            self._event_queue.put_nowait(None)
        except queue.Full:
            pass

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

    def disconnect(self) -> None:
        """Alias for close."""
        self.close()

    def __enter__(self) -> SyncMPPClient:
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -- Commands -------------------------------------------------------------

    def chat(self, message: str) -> SendResult:
        """Send a chat message. Blocks until handed to the socket."""
        return self._call(lambda client: client.chat(message))

    def set_room(self, room_id: str = DEFAULT_ROOM) -> SendResult:
        return self._call(lambda client: client.set_room(room_id))

    def set_username(self, name: str = DEFAULT_USERNAME) -> SendResult:
        return self._call(lambda client: client.set_username(name))

    def move_cursor(self, x: float, y: float) -> None:
        client, loop = self._require_client()
        loop.call_soon_threadsafe(client.move_cursor, x, y)

    # -- Receive --------------------------------------------------------------

    def recv(self, timeout: float | None = None) -> ClientEvent:
        """Receive the next event. Blocks until available.

        Args:
            timeout: Max seconds to wait. ``None`` blocks indefinitely.

        Raises:
            OperationTimeout: If *timeout* expires.
            SessionDestroyed: If the session has been closed.
        """
        try:
            event = self._event_queue.get(timeout=timeout)
        except queue.Empty:
            raise OperationTimeout(lookup("OPERATION_TIMEOUT", "recv()", timeout))

        if event is None:
            raise SessionDestroyed(lookup("SESSION_CLOSED"))
        return event

    # -- Handler registration -------------------------------------------------

    def on(
        self, event_type: str
    ) -> Callable[[Callable[[ClientEvent], Any]], Callable[[ClientEvent], Any]]:
        """Decorator for event handlers (sync callbacks)."""

        def decorator(fn: Callable[[ClientEvent], Any]) -> Callable[[ClientEvent], Any]:
            self._handlers.setdefault(event_type, []).append(fn)
            return fn

        return decorator

    def on_any(self, fn: Callable[[ClientEvent], Any]) -> Callable[[ClientEvent], Any]:
        """Register wildcard handler."""
        self._wildcard_handlers.append(fn)
        return fn

    def off(self, event_type: str, fn: Callable[[ClientEvent], Any]) -> None:
        """Remove a specific handler."""
        handlers = self._handlers.get(event_type, [])
        if fn in handlers:
            handlers.remove(fn)

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._client:
            return self._client.state
        return SessionState.IDLE

    @property
    def is_ready(self) -> bool:
        if self._client:
            return self._client.is_ready
        return False

    @property
    def roster(self) -> Roster:
        if self._client:
            return self._client.roster
        return Roster()

    @property
    def queue_size(self) -> int:
        return self._event_queue.qsize()

    def get_stats(self) -> dict[str, Any]:
        if self._client:
            return self._client.get_stats()
        return {}

    # -- Internal -------------------------------------------------------------

    def _require_client(self) -> tuple[AsyncMPPClient, asyncio.AbstractEventLoop]:
        client, loop = self._client, self._loop
        if client is None or loop is None or not self._running:
            raise SessionDestroyed(lookup("SESSION_CLOSED"))
        return client, loop

    def _call(self, fn: Callable[[AsyncMPPClient], Any], timeout: float = 5.0) -> Any:
        """Run ``fn(client)`` on the loop thread and wait for its result."""
        client, loop = self._require_client()
        future = asyncio.run_coroutine_threadsafe(fn(client), loop)
        try:
            return future.result(timeout=timeout)
        except TimeoutError as exc:
            future.cancel()
            raise OperationTimeout(lookup("OPERATION_TIMEOUT", "send", timeout)) from exc

    def _stop_client(self, timeout: float) -> None:
        if not (self._loop and self._client):
            return
        future = asyncio.run_coroutine_threadsafe(self._client.destroy(), self._loop)
        try:
            future.result(timeout=timeout)
        except Exception as exc:
            logger.debug("Error stopping client: %s", exc)

    def _run_loop(self) -> None:
        """Background thread: run the async event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._async_main())
        except Exception as exc:
            logger.error("Background loop error: %s", exc)
        finally:
            self._loop.close()
            self._loop = None

    async def _async_main(self) -> None:
        """Async entry point in the background thread."""
        try:
            self._client = AsyncMPPClient(
                self._options,
                reconnect=self._reconnect,
                queue_size=self._queue_size,
                **self._overrides,
            )
            self._client.on_any(self._dispatch_to_handlers)
            await self._client.connect()
            self._connected_event.set()

            async for event in self._client:
                if not self._running:
                    break
                try:
                    self._event_queue.put_nowait(event)
                except queue.Full:
                    # Drop oldest
                    try:
                        self._event_queue.get_nowait()
                        self._event_queue.put_nowait(event)
                    except (queue.Empty, queue.Full):
                        pass

        except Exception as exc:
            self._connect_error = exc
            logger.error("Client error: %s", exc)
        finally:
            if self._client is not None:
                await self._client.destroy()
            self._connected_event.set()  # Unblock connect() if still waiting
            try:
                self._event_queue.put_nowait(None)
            except queue.Full:
                pass

    def _dispatch_to_handlers(self, event: ClientEvent) -> None:
        """Call sync handlers for the event."""
        handlers = self._handlers.get(event.type, []) + self._wildcard_handlers
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event.type, exc)
