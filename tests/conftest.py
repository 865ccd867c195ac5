"""Shared fixtures for MPP client tests."""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest

from mpp_client.client import AsyncMPPClient
from mpp_client.types import ReconnectConfig, SessionState

SERVER_TIME = 1_700_000_000_000


def hello_msg(user_id: str = "me", name: str = "Anonymous") -> dict:
    return {"m": "hi", "t": SERVER_TIME, "u": {"_id": user_id, "name": name}}


def channel_msg(room: str = "lobby", people=()) -> dict:
    return {
        "m": "ch",
        "ch": {"_id": room},
        "ppl": [{"_id": pid, "name": name} for pid, name in people],
    }


class FakeSocket:
    """In-memory stand-in for a websockets client connection.

    With ``auto=True`` it answers the handshake with ``hi`` and a room
    change with a ``ch`` snapshot, like a real server would.
    """

    def __init__(self, *, auto: bool = True, me=("me", "Anonymous"), people=()):
        self.auto = auto
        self.me = me
        self.people = list(people)
        self.sent: list[str] = []
        self.close_code = None
        self.close_reason = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    # -- websockets API used by the client -----------------------------------

    async def send(self, data):
        if self.close_code is not None:
            raise ConnectionError("socket closed")
        self.sent.append(data)
        if not self.auto:
            return
        for msg in json.loads(data):
            if msg["m"] == "hi":
                self.feed(hello_msg(*self.me))
            elif msg["m"] == "ch":
                self.feed(channel_msg(msg["_id"], [self.me, *self.people]))

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    # -- Test controls -------------------------------------------------------

    def feed(self, *messages):
        """Deliver one frame holding *messages*."""
        self._incoming.put_nowait(json.dumps(list(messages)))

    def feed_raw(self, data):
        self._incoming.put_nowait(data)

    def drop(self, code=1006, reason=""):
        """Simulate the server closing the connection."""
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(None)

    def sent_messages(self) -> list[dict]:
        return [msg for frame in self.sent for msg in json.loads(frame)]

    def sent_ops(self) -> list[str]:
        return [msg["m"] for msg in self.sent_messages()]


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


async def wait_for_state(client, state: SessionState, timeout: float = 2.0) -> None:
    await wait_until(lambda: client.state == state, timeout)


def make_session(socket: FakeSocket | None = None, **overrides):
    """Build a client whose sockets come from *socket* instead of the network."""
    options = {
        "gateway": "wss://mpp.test:8443",
        "token": "test-token",
        "heartbeat_interval": 3600,
        "keepalive_interval": None,
        "clock_steps": 2,
        "clock_duration": 0.01,
    }
    options.update(overrides)
    client = AsyncMPPClient(reconnect=ReconnectConfig(max_attempts=3, delay=0), **options)
    socket = socket or FakeSocket()
    client._connection._open_socket = AsyncMock(return_value=socket)
    return client, socket


@pytest.fixture
def fake_socket():
    return FakeSocket()


class HandshakeDropSocket(FakeSocket):
    """Socket the server closes while the handshake is being sent."""

    async def send(self, data):
        self.drop(1006)
        await settle()
        raise ConnectionError("socket closed")
