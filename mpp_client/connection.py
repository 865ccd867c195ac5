# =============================================================================
# MPP Python Client -- Connection Manager
# =============================================================================
#
# Socket lifecycle: connect, handshake, heartbeat, bounded reconnection,
# teardown. Owns the socket; nothing else holds a reference to it.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, InvalidStatus

from ._logging import logger
from .clock import now_ms
from .constants import (
    AUTH_CLOSE_CODES,
    AUTH_HTTP_STATUSES,
    CONNECTION_TIMEOUT,
    HEARTBEAT_INTERVAL,
    MAX_MESSAGE_SIZE,
    WS_CLOSE_NORMAL,
)
from .errors import AuthorizationFailure, ConnectionFailure, SessionDestroyed, lookup
from .protocol import MessageCodec
from .types import Handshake, Heartbeat, ReconnectConfig, SessionState

_CONNECTABLE_STATES = frozenset({SessionState.IDLE, SessionState.DISCONNECTED})


class ConnectionManager:
    """Drives the session state machine over a single WebSocket.

    ``AsyncMPPClient`` uses it for all network I/O. Frames are handed to
    *on_frame* one at a time from the receive task, in arrival order.

    Args:
        url: Gateway URL.
        token: Auth token sent in the handshake.
        codec: Encodes the handshake and heartbeat commands.
        reconnect: Retry policy settings.
        proxy: Proxy URL for the socket, if any.
        origin: ``Origin`` header for the opening handshake.
        heartbeat_interval: Seconds between heartbeats.
        keepalive_interval: Seconds between keep-alive ticks, or ``None``.
        on_keepalive: Returns an encoded frame to send on a keep-alive tick,
            or ``None`` to skip the tick.
        on_frame: Called with each raw inbound frame.
        on_state_change: Called after every state transition.
        on_debug: Receives lifecycle diagnostics.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        codec: MessageCodec | None = None,
        reconnect: ReconnectConfig | None = None,
        proxy: str | None = None,
        origin: str | None = None,
        extra_headers: dict[str, str] | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        keepalive_interval: float | None = None,
        on_keepalive: Callable[[], str | None] | None = None,
        on_frame: Callable[[str | bytes], Any] | None = None,
        on_state_change: Callable[[SessionState], Any] | None = None,
        on_debug: Callable[[str], Any] | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._codec = codec or MessageCodec()
        self._reconnect_cfg = reconnect or ReconnectConfig()
        self._proxy = proxy
        self._origin = origin
        self._extra_headers = extra_headers or {}
        self._heartbeat_interval = heartbeat_interval
        self._keepalive_interval = keepalive_interval

        # Callbacks
        self._on_keepalive = on_keepalive
        self._on_frame = on_frame
        self._on_state_change = on_state_change
        self._on_debug = on_debug

        # State
        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._state = SessionState.IDLE
        self._reconnecting = False
        self._reconnect_attempts = 0
        self._socket_opens = 0
        self._ready_at: float | None = None
        self._destroyed = False

        # Tasks
        self._recv_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[Any] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> asyncio.Task[Any]:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._destroyed

    @property
    def is_ready(self) -> bool:
        return self.is_open and self._state == SessionState.READY

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def socket_opens(self) -> int:
        """Number of socket open attempts made so far."""
        return self._socket_opens

    @property
    def ready_at(self) -> float | None:
        """``time.time()`` of the last transition to READY."""
        return self._ready_at

    # -- Connect / Ready / Destroy --------------------------------------------

    async def connect(self) -> None:
        """Open the socket and send the handshake.

        Raises:
            SessionDestroyed: After :meth:`destroy`.
            ConnectionFailure: No gateway, or the socket could not open.
            AuthorizationFailure: The gateway rejected the credentials.
        """
        if self._destroyed:
            raise SessionDestroyed(lookup("SESSION_DESTROYED"))
        if self._state not in _CONNECTABLE_STATES:
            self._debug(lookup("WS_CONNECTION_EXISTS"))
            return
        if not self._url:
            raise ConnectionFailure(lookup("GATEWAY_UNRESOLVED"))

        self._debug(f"Connecting to gateway {self._url}")
        self._set_state(SessionState.CONNECTING)
        try:
            await self._open()
        except AuthorizationFailure as exc:
            logger.error("Authorization rejected: %s", exc)
            await self.destroy()
            raise
        except ConnectionFailure:
            if not self._destroyed:
                self._set_state(SessionState.DISCONNECTED)
            raise

    def mark_ready(self) -> bool:
        """Move HANDSHAKING -> READY. Returns False if nothing changed."""
        if self._state == SessionState.READY:
            self._debug("Session is already ready")
            return False
        if self._state != SessionState.HANDSHAKING:
            self._debug(f"Cannot become ready while {self._state.value}")
            return False
        self._ready_at = time.time()
        self._reconnect_attempts = 0
        self._set_state(SessionState.READY)
        return True

    async def destroy(self) -> None:
        """Tear down permanently. Idempotent and safe from any state."""
        if self._destroyed:
            return
        self._destroyed = True
        self._debug("Manager was destroyed")

        current = asyncio.current_task()
        tasks_to_await: list[asyncio.Task[Any]] = []
        for task in (
            self._reconnect_task,
            self._heartbeat_task,
            self._keepalive_task,
            self._recv_task,
            *self._background_tasks,
        ):
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks_to_await.append(task)
        self._reconnect_task = None
        self._heartbeat_task = None
        self._keepalive_task = None
        self._recv_task = None
        self._background_tasks.clear()
        if tasks_to_await:
            await asyncio.gather(*tasks_to_await, return_exceptions=True)

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close(WS_CLOSE_NORMAL, lookup("WS_CLOSE_REQUESTED"))
            except Exception as exc:
                logger.debug("Error closing socket: %s", exc)

        self._set_state(SessionState.TERMINATED)

    # -- Send -----------------------------------------------------------------

    async def send(self, data: str) -> bool:
        """Send a text frame. Returns True on success, never raises."""
        ws = self._ws
        if ws is None or self._destroyed:
            return False
        try:
            await ws.send(data)
            return True
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return False
        except Exception as exc:
            logger.debug("Send failed: %s", exc)
            return False

    # -- Reconnection ---------------------------------------------------------

    async def reconnect(self) -> bool:
        """Run the bounded retry policy.

        Returns True once a socket is re-opened. Returns False without
        doing anything when an attempt is already in flight or the session
        is not DISCONNECTED, and False after the session is torn down.
        """
        if self._reconnecting:
            self._debug("Reconnect already in progress")
            return False
        if self._state != SessionState.DISCONNECTED or self._destroyed:
            self._debug(f"Reconnect skipped while {self._state.value}")
            return False

        self._reconnecting = True
        cfg = self._reconnect_cfg
        try:
            while not self._destroyed:
                self._reconnect_attempts += 1
                self._set_state(SessionState.RECONNECTING)
                logger.info(
                    "Reconnecting to %s (attempt %d/%d)",
                    self._url,
                    self._reconnect_attempts,
                    cfg.max_attempts,
                )
                try:
                    await self._open()
                    if self._destroyed:
                        return False
                    if self._ws is None:
                        raise ConnectionFailure(lookup("CLOSED_DURING_HANDSHAKE"))
                except AuthorizationFailure as exc:
                    logger.error("Authorization rejected, not retrying: %s", exc)
                    await self.destroy()
                    return False
                except SessionDestroyed:
                    return False
                except ConnectionFailure as exc:
                    self._debug(f"Couldn't reconnect: {exc}")
                    if self._reconnect_attempts >= cfg.max_attempts:
                        break
                    self._debug(f"Possible network error. Retrying in {cfg.delay}s...")
                    await asyncio.sleep(cfg.delay)
                    continue
                return True

            if not self._destroyed:
                logger.error("Max reconnect attempts (%d) reached", cfg.max_attempts)
                await self.destroy()
            return False
        finally:
            self._reconnecting = False

    # -- Internal: socket -----------------------------------------------------

    async def _open(self) -> None:
        ws = await self._open_socket()
        if self._destroyed:
            await ws.close(WS_CLOSE_NORMAL, lookup("WS_CLOSE_REQUESTED"))
            raise SessionDestroyed(lookup("SESSION_DESTROYED"))

        self._ws = ws
        self._set_state(SessionState.HANDSHAKING)
        self._recv_task = asyncio.create_task(self._recv_loop(ws))

        if not await self.send(self._codec.encode(Handshake(token=self._token))):
            self._debug("Handshake send failed")
        self._start_tickers()

    async def _open_socket(self) -> websockets.asyncio.client.ClientConnection:
        """Open the WebSocket, mapping failures onto the error taxonomy."""
        self._socket_opens += 1
        kwargs: dict[str, Any] = {}
        if self._proxy:
            kwargs["proxy"] = self._proxy
        try:
            return await asyncio.wait_for(
                websockets.asyncio.client.connect(
                    self._url,
                    origin=self._origin,
                    additional_headers=self._extra_headers or None,
                    max_size=MAX_MESSAGE_SIZE,
                    open_timeout=None,  # asyncio.wait_for handles timeout
                    ping_interval=None,  # protocol heartbeat instead
                    **kwargs,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionFailure(
                lookup("CONNECT_TIMEOUT", self._url, CONNECTION_TIMEOUT)
            ) from exc
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in AUTH_HTTP_STATUSES:
                raise AuthorizationFailure(lookup("AUTH_REJECTED", f"HTTP {status}")) from exc
            raise ConnectionFailure(lookup("CONNECT_FAILED", self._url, exc)) from exc
        except Exception as exc:
            raise ConnectionFailure(lookup("CONNECT_FAILED", self._url, exc)) from exc

    async def _recv_loop(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        """Read frames until the socket closes."""
        try:
            async for frame in ws:
                if self._on_frame:
                    self._on_frame(frame)
        except asyncio.CancelledError:
            return
        except ConnectionClosed:
            pass
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
        await self._handle_closed(ws)

    async def _handle_closed(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._recv_task = None
        self._stop_tickers()
        if self._destroyed:
            return

        code = ws.close_code
        reason = ws.close_reason
        self._debug(f"Socket closed: code={code} reason={reason!r}")

        if code in AUTH_CLOSE_CODES:
            logger.error("Auth/policy close (code %s): %s", code, reason)
            await self.destroy()
            return

        self._set_state(SessionState.DISCONNECTED)
        if self._reconnecting:
            # The running attempt sees the lost socket and counts it as failed.
            return
        self._reconnect_task = asyncio.ensure_future(self.reconnect())

    # -- Internal: tickers ----------------------------------------------------

    def _start_tickers(self) -> None:
        self._stop_tickers()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if self._keepalive_interval and self._on_keepalive is not None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_tickers(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._keepalive_task):
            if task is not None and task is not current:
                task.cancel()
        self._heartbeat_task = None
        self._keepalive_task = None

    async def _heartbeat_loop(self) -> None:
        """Send a time echo now, then every heartbeat interval."""
        while self._ws is not None:
            ok = await self.send(self._codec.encode(Heartbeat(client_time=now_ms())))
            if not ok:
                logger.debug("Heartbeat send failed")
            try:
                await asyncio.sleep(self._heartbeat_interval)
            except asyncio.CancelledError:
                return

    async def _keepalive_loop(self) -> None:
        assert self._on_keepalive is not None
        while self._ws is not None:
            try:
                await asyncio.sleep(self._keepalive_interval)
            except asyncio.CancelledError:
                return
            frame = self._on_keepalive()
            if frame is not None:
                await self.send(frame)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: SessionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(new_state)

    def _debug(self, message: str) -> None:
        if self._on_debug:
            self._on_debug(f"[WS => Manager] {message}")
        else:
            logger.debug("[WS => Manager] %s", message)
