"""Tests for AsyncMPPClient (unit tests with mocked connection)."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import channel_msg, hello_msg, settle
from mpp_client.client import AsyncMPPClient
from mpp_client.errors import InvalidArgument, SessionDestroyed
from mpp_client.types import (
    ClientEvent,
    ClientOptions,
    SendResult,
    SessionState,
    SetRoom,
)


@pytest.fixture
def client():
    """Create a client with a mocked connection manager."""
    c = AsyncMPPClient(
        gateway="wss://mpp.test:8443", token="test-token", clock_steps=1, clock_duration=0
    )
    c._connection = MagicMock()
    c._connection.is_open = True
    c._connection.is_ready = True
    c._connection.is_destroyed = False
    c._connection.state = SessionState.READY
    c._connection.reconnect_attempts = 0
    c._connection.ready_at = 1_700_000_000.0
    c._connection.url = "wss://mpp.test:8443"
    c._connection.send = AsyncMock(return_value=True)
    c._connection.destroy = AsyncMock()
    return c


def handshaking(c):
    """Put the mocked connection in HANDSHAKING; mark_ready moves it to READY."""
    c._connection.is_ready = False
    c._connection.state = SessionState.HANDSHAKING

    def mark_ready():
        c._connection.state = SessionState.READY
        c._connection.is_ready = True
        return True

    c._connection.mark_ready = MagicMock(side_effect=mark_ready)
    return c


def frame(*messages) -> str:
    return json.dumps(list(messages))


def sent_messages(c) -> list:
    return [m for call in c._connection.send.call_args_list for m in json.loads(call.args[0])]


def drain_events(c) -> list:
    events = []
    while not c._event_queue.empty():
        events.append(c._event_queue.get_nowait())
    return events


class TestOptions:
    def test_overrides_build_options(self):
        c = AsyncMPPClient(room="piano", username="Bob")
        assert c.room == "piano"
        assert c.username == "Bob"

    def test_overrides_apply_on_top_of_options(self):
        c = AsyncMPPClient(ClientOptions(room="a", token="t"), room="b")
        assert c.room == "b"
        assert c._options.token == "t"

    def test_initial_state(self):
        c = AsyncMPPClient()
        assert c.state == SessionState.IDLE
        assert c.is_ready is False
        assert c.me is None
        assert c.clock_offset == 0
        assert c.uptime is None
        assert len(c.roster) == 0


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_sends(self, client):
        result = await client.chat("hello")
        assert result == SendResult.SENT
        assert sent_messages(client) == [{"m": "a", "message": "hello"}]
        assert client._stats.messages_sent == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_empty_chat_rejected(self, client, text):
        with pytest.raises(InvalidArgument):
            await client.chat(text)
        client._connection.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_string_chat_rejected(self, client):
        with pytest.raises(InvalidArgument, match="not a string"):
            await client.chat(42)

    @pytest.mark.asyncio
    async def test_chat_before_ready_is_rejected(self, client):
        handshaking(client)
        debug = []
        client.on("debug")(debug.append)
        assert await client.chat("hello") == SendResult.REJECTED
        client._connection.send.assert_not_called()
        assert client.pending_count == 0
        assert any("not open" in e.payload["message"] for e in debug)

    @pytest.mark.asyncio
    async def test_chat_after_destroy_raises(self, client):
        client._connection.is_destroyed = True
        with pytest.raises(SessionDestroyed):
            await client.chat("hello")

    @pytest.mark.asyncio
    async def test_send_failure_is_reported_not_raised(self, client):
        client._connection.send = AsyncMock(return_value=False)
        assert await client.chat("hello") == SendResult.REJECTED


class TestRoomAndUser:
    @pytest.mark.asyncio
    async def test_set_room_while_handshaking_is_sent(self, client):
        handshaking(client)
        assert await client.set_room("piano") == SendResult.SENT
        assert sent_messages(client) == [{"m": "ch", "_id": "piano"}]
        assert client.room == "piano"

    @pytest.mark.asyncio
    async def test_set_room_default(self, client):
        await client.set_room()
        assert sent_messages(client) == [{"m": "ch", "_id": "lobby"}]

    @pytest.mark.asyncio
    async def test_set_room_without_socket_is_queued(self, client):
        client._connection.is_open = False
        client._connection.is_ready = False
        client._connection.state = SessionState.DISCONNECTED
        assert await client.set_room("piano") == SendResult.QUEUED
        assert client.pending_count == 1

    @pytest.mark.asyncio
    async def test_set_username_before_ready_is_queued(self, client):
        handshaking(client)
        assert await client.set_username("Bob") == SendResult.QUEUED
        assert client.username == "Bob"
        client._connection.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_username_sends(self, client):
        assert await client.set_username("Bob") == SendResult.SENT
        assert sent_messages(client) == [{"m": "userset", "set": {"name": "Bob"}}]

    @pytest.mark.asyncio
    async def test_empty_username_rejected(self, client):
        with pytest.raises(InvalidArgument):
            await client.set_username("  ")

    @pytest.mark.asyncio
    async def test_empty_room_rejected(self, client):
        with pytest.raises(InvalidArgument):
            await client.set_room("")


class TestCursor:
    def test_cursor_flushed_once(self, client):
        client.move_cursor(10, 20)
        client.move_cursor(30, 40)
        assert json.loads(client._take_cursor_frame()) == [{"m": "m", "x": 30, "y": 40}]
        assert client._take_cursor_frame() is None

    def test_cursor_held_until_ready(self, client):
        handshaking(client)
        client.move_cursor(1, 2)
        assert client._take_cursor_frame() is None
        assert client._cursor is not None

    def test_invalid_coordinates(self, client):
        with pytest.raises(InvalidArgument):
            client.move_cursor("1", 2)


class TestInbound:
    @pytest.mark.asyncio
    async def test_chat_event_when_ready(self, client):
        client._on_raw_frame(frame({"m": "a", "a": "hi", "p": {"_id": "Z", "name": "Zed"}}))
        events = drain_events(client)
        assert [e.type for e in events] == ["chat"]
        assert events[0].payload["author"]["known"] is False

    @pytest.mark.asyncio
    async def test_forwarded_opcode(self, client):
        client._on_raw_frame(frame({"m": "n", "t": 1, "n": [{"n": "a1", "v": 0.5}]}))
        events = drain_events(client)
        assert events[0].type == "n"
        assert events[0].payload["n"][0]["n"] == "a1"

    @pytest.mark.asyncio
    async def test_bad_frame_dropped(self, client):
        debug = []
        client.on("debug")(debug.append)
        client._on_raw_frame("not json")
        assert client._stats.protocol_violations == 1
        assert len(debug) == 1
        assert drain_events(client) == []

    @pytest.mark.asyncio
    async def test_bad_message_does_not_drop_frame(self, client):
        client._on_raw_frame(
            frame(
                {"m": "bye"},
                {"m": "a", "a": "still here", "p": {"_id": "A"}},
            )
        )
        assert client._stats.protocol_violations == 1
        assert [e.type for e in drain_events(client)] == ["chat"]

    @pytest.mark.asyncio
    async def test_chat_before_ready_is_held(self, client):
        handshaking(client)
        client._on_raw_frame(frame({"m": "a", "a": "early", "p": {"_id": "A"}}))
        assert drain_events(client) == []
        assert client.pending_count == 1

    @pytest.mark.asyncio
    async def test_time_sync_bypasses_queue(self, client):
        handshaking(client)
        client._on_raw_frame(frame({"m": "t", "t": 5_000_000_000_000, "e": 1}))
        assert client.pending_count == 0
        assert client.clock.samples == 1


class TestHandshakeFlow:
    @pytest.mark.asyncio
    async def test_hello_joins_configured_room(self, client):
        handshaking(client)
        client._room = "piano"
        client._on_raw_frame(frame(hello_msg("me", "Anonymous")))
        await settle()
        assert client.me.id == "me"
        assert sent_messages(client) == [{"m": "ch", "_id": "piano"}]

    @pytest.mark.asyncio
    async def test_snapshot_reaches_ready_and_drains(self, client):
        handshaking(client)
        client._on_raw_frame(frame({"m": "a", "a": "early", "p": {"_id": "A"}}))
        client._on_raw_frame(frame(channel_msg("lobby", [("A", "Alice")])))
        events = drain_events(client)
        assert [e.type for e in events] == ["ready", "chat"]
        assert events[0].payload["room"] == "lobby"
        assert events[0].payload["participants"] == 1
        # Held chat is resolved against the snapshot roster
        assert events[1].payload["author"]["name"] == "Alice"
        assert client._ready_event.is_set()
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_queued_commands_flushed_in_order(self, client):
        handshaking(client)
        await client.set_username("Bob")
        client._connection.is_open = False
        await client.set_room("piano")
        client._connection.is_open = True
        client._on_raw_frame(frame(channel_msg("lobby")))
        await settle()
        assert sent_messages(client) == [
            {"m": "userset", "set": {"name": "Bob"}},
            {"m": "ch", "_id": "piano"},
        ]

    @pytest.mark.asyncio
    async def test_username_applied_after_ready(self, client):
        handshaking(client)
        client._username = "Bob"
        client._on_raw_frame(frame(hello_msg("me", "Anonymous")))
        await settle()
        client._connection.send.reset_mock()
        client._on_raw_frame(frame(channel_msg("lobby")))
        await settle()
        assert {"m": "userset", "set": {"name": "Bob"}} in sent_messages(client)

    @pytest.mark.asyncio
    async def test_matching_username_not_resent(self, client):
        handshaking(client)
        client._username = "Bob"
        client._on_raw_frame(frame(hello_msg("me", "Bob")))
        await settle()
        client._connection.send.reset_mock()
        client._on_raw_frame(frame(channel_msg("lobby")))
        await settle()
        assert sent_messages(client) == []

    @pytest.mark.asyncio
    async def test_second_snapshot_is_not_ready_again(self, client):
        client._connection.mark_ready = MagicMock(return_value=False)
        client._on_raw_frame(frame(channel_msg("lobby", [("B", "Bob")])))
        assert drain_events(client) == []
        assert "B" in client.roster


class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_disconnected_event(self, client):
        client._ready_event.set()
        client._on_state_change(SessionState.DISCONNECTED)
        assert not client._ready_event.is_set()
        assert [e.type for e in drain_events(client)] == ["disconnected"]

    @pytest.mark.asyncio
    async def test_terminated_resets_session_and_ends_iteration(self, client):
        client._on_raw_frame(frame({"m": "n", "t": 1}))
        client._clock.sample(9_999_999_999_999)
        client._pending.enqueue_outbound(SetRoom("piano"))
        client._on_state_change(SessionState.TERMINATED)
        events = [event async for event in client]
        assert [e.type for e in events] == ["n", "terminated"]
        assert client.clock_offset == 0
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_reconnecting_counted(self, client):
        client._on_state_change(SessionState.RECONNECTING)
        assert client.get_stats()["reconnect_count"] == 1


class TestHandlers:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, client):
        seen = []

        @client.on("chat")
        def sync_handler(event):
            seen.append(("sync", event.payload["content"]))

        @client.on("chat")
        async def async_handler(event):
            seen.append(("async", event.payload["content"]))

        client._on_raw_frame(frame({"m": "a", "a": "yo", "p": {"_id": "A"}}))
        await settle()
        assert seen == [("sync", "yo"), ("async", "yo")]

    @pytest.mark.asyncio
    async def test_wildcard_receives_debug(self, client):
        seen = []
        client.on_any(seen.append)
        client._emit_debug("hello")
        assert seen == [ClientEvent(type="debug", payload={"message": "hello"})]
        # Debug events never reach the iterator
        assert client.queue_size == 0

    @pytest.mark.asyncio
    async def test_off(self, client):
        seen = []
        client.on("chat")(seen.append)
        client.off("chat", seen.append)
        client._on_raw_frame(frame({"m": "a", "a": "yo", "p": {"_id": "A"}}))
        assert seen == []

    @pytest.mark.asyncio
    async def test_handler_error_does_not_break_dispatch(self, client):
        seen = []

        @client.on("chat")
        def broken(event):
            raise RuntimeError("boom")

        client.on("chat")(seen.append)
        client._on_raw_frame(frame({"m": "a", "a": "yo", "p": {"_id": "A"}}))
        assert len(seen) == 1


class TestEventQueue:
    @pytest.mark.asyncio
    async def test_drop_oldest_when_full(self):
        c = AsyncMPPClient(queue_size=2)
        for i in range(3):
            c._emit(ClientEvent(type="n", payload={"i": i}))
        assert [e.payload["i"] for e in drain_events(c)] == [1, 2]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_waits_for_ready(self, client):
        client._connection.connect = AsyncMock(side_effect=lambda: client._ready_event.set())
        await asyncio.wait_for(client.connect(), timeout=1.0)
        client._connection.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_context_manager(self, client):
        client._connection.connect = AsyncMock(side_effect=lambda: client._ready_event.set())
        async with client as c:
            assert c is client
        client._connection.destroy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_aliases(self, client):
        await client.disconnect()
        await client.close()
        assert client._connection.destroy.await_count == 2


class TestStats:
    def test_get_stats(self, client):
        stats = client.get_stats()
        assert stats["state"] == "ready"
        assert stats["room"] == "lobby"
        assert stats["participants"] == 0
        assert stats["pending_queue"]["size"] == 0

    def test_session_info(self, client):
        info = client.session
        assert info.state == SessionState.READY
        assert info.room == "lobby"
        assert info.ready_at == 1_700_000_000.0

    def test_gateway(self, client):
        assert client.gateway == "wss://mpp.test:8443"
