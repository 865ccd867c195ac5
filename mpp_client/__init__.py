"""Python client for Multiplayer Piano rooms.

Async usage::

    from mpp_client import connect

    async with connect(token="your-token", room="lobby") as client:
        await client.chat("hello")
        async for event in client:
            print(event.type, event.payload)

Sync usage::

    from mpp_client import SyncMPPClient

    client = SyncMPPClient(token="your-token", room="lobby")
    client.connect()
    event = client.recv(timeout=5.0)
    client.close()

Configuration from the environment (``MPP_GATEWAY``, ``MPP_TOKEN``,
``MPP_ROOM``, ``MPP_USERNAME``, ``MPP_PROXY``)::

    client = AsyncMPPClient(ClientOptions.from_env())

Optional extras::

    pip install mpp-client[fast]   # orjson
"""

from ._version import __version__
from .client import AsyncMPPClient
from .clock import ClockSynchronizer
from .errors import (
    AuthorizationFailure,
    ConnectionFailure,
    InvalidArgument,
    MPPError,
    OperationTimeout,
    ProtocolViolation,
    SessionDestroyed,
)
from .roster import Roster
from .sync_client import SyncMPPClient
from .types import (
    ClientEvent,
    ClientOptions,
    EventType,
    Participant,
    ReconnectConfig,
    SendResult,
    SessionInfo,
    SessionState,
)


def connect(options: ClientOptions | None = None, **kwargs) -> AsyncMPPClient:
    """Create an MPP client.

    Use as an async context manager. Keyword arguments are forwarded
    to :class:`AsyncMPPClient` -- common ones: ``token``, ``room``,
    ``username``, ``gateway``, ``reconnect``.

    Args:
        options: Session configuration, e.g. from :meth:`ClientOptions.from_env`.
        **kwargs: Passed to :class:`AsyncMPPClient`.

    Returns:
        An :class:`AsyncMPPClient` instance.

    Raises:
        ConnectionFailure: If the connection cannot be established.
        AuthorizationFailure: If the token is rejected.

    Example::

        async with connect(token="...", room="lobby") as client:
            async for event in client:
                print(event.type, event.payload)
    """
    return AsyncMPPClient(options, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "AsyncMPPClient",
    "SyncMPPClient",
    "ClockSynchronizer",
    "Roster",
    "ClientEvent",
    "ClientOptions",
    "EventType",
    "Participant",
    "ReconnectConfig",
    "SendResult",
    "SessionInfo",
    "SessionState",
    "MPPError",
    "ConnectionFailure",
    "AuthorizationFailure",
    "ProtocolViolation",
    "SessionDestroyed",
    "InvalidArgument",
    "OperationTimeout",
]
