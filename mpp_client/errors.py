# =============================================================================
# MPP Python Client -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any, Callable

# Named message templates. Values are either plain strings or callables that
# build the message from positional arguments.
MESSAGES: dict[str, str | Callable[..., str]] = {}


def register(name: str, message: str | Callable[..., str]) -> None:
    """Register a named error message template."""
    MESSAGES[name] = message


def lookup(name: str, *args: Any) -> str:
    """Format the registered message *name* with *args*.

    Raises:
        KeyError: If no message is registered under *name*.
    """
    message = MESSAGES[name]
    if callable(message):
        return message(*args)
    return message


for _name, _message in {
    "INVALID_TYPE": lambda name, expected, an=False: (
        f"Supplied {name} is not a{'n' if an else ''} {expected}."
    ),
    "EMPTY_ARGUMENT": lambda name: f"Cannot send an empty {name}.",
    "WS_NOT_OPEN": lambda data="data": f"Websocket not open to send {data}.",
    "WS_CONNECTION_EXISTS": "There is already an existing WebSocket connection.",
    "WS_CLOSE_REQUESTED": "WebSocket closed due to user request.",
    "GATEWAY_UNRESOLVED": "No gateway endpoint is configured.",
    "CONNECT_FAILED": lambda url, reason: f"Failed to connect to {url}: {reason}",
    "CONNECT_TIMEOUT": lambda url, timeout: (
        f"Connection to {url} timed out after {timeout}s"
    ),
    "AUTH_REJECTED": lambda detail: f"Gateway rejected authorization: {detail}",
    "CLOSED_DURING_HANDSHAKE": "Socket closed before the handshake completed.",
    "SESSION_DESTROYED": "The session has been destroyed and cannot be reused.",
    "MALFORMED_FRAME": lambda reason: f"Malformed frame: {reason}",
    "MALFORMED_MESSAGE": lambda op, reason: f"Malformed '{op}' message: {reason}",
    "OPERATION_TIMEOUT": lambda op, timeout: f"{op} timed out after {timeout}s",
    "SESSION_CLOSED": "The session is closed.",
}.items():
    register(_name, _message)


class MPPError(Exception):
    """Base exception for all MPP client errors."""


class ConnectionFailure(MPPError):
    """Socket-level failure (could not open, lost connection). Retryable."""


class AuthorizationFailure(ConnectionFailure):
    """The gateway rejected the credentials. Never retried."""


class ProtocolViolation(MPPError):
    """A frame or message did not match the wire protocol."""


class SessionDestroyed(MPPError):
    """An operation was attempted on a torn-down session."""


class InvalidArgument(MPPError, ValueError):
    """A caller-supplied argument was rejected before reaching the network."""


class OperationTimeout(MPPError, TimeoutError):
    """A blocking call did not complete in time."""
