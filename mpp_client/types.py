# =============================================================================
# MPP Python Client -- Type Definitions
# =============================================================================

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from .constants import (
    CLOCK_SYNC_DURATION,
    CLOCK_SYNC_STEPS,
    DEFAULT_GATEWAY,
    DEFAULT_ORIGIN,
    DEFAULT_ROLE,
    DEFAULT_ROOM,
    HEARTBEAT_INTERVAL,
    KEEPALIVE_INTERVAL,
    RECONNECT_DELAY,
    RECONNECT_MAX_ATTEMPTS,
)


class SessionState(str, Enum):
    """Connection lifecycle state.

    Typical flow: IDLE -> CONNECTING -> HANDSHAKING -> READY. A dropped
    socket moves to DISCONNECTED, then RECONNECTING while the retry
    policy runs. TERMINATED is the only terminal state.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class MessageKind(str, Enum):
    """Logical message kinds, independent of the wire opcode."""

    # outbound
    HANDSHAKE = "handshake"
    HEARTBEAT = "heartbeat"
    SET_ROOM = "setRoom"
    SET_USER = "setUser"
    CURSOR = "cursor"
    # both directions
    CHAT = "chat"
    # inbound
    HELLO = "hello"
    ROOM_SNAPSHOT = "roomSnapshot"
    PARTICIPANT_JOIN = "participantJoin"
    PARTICIPANT_LEAVE = "participantLeave"
    TIME_SYNC = "timeSync"
    FORWARDED = "forwarded"


class EventType(str, Enum):
    """Consumer-facing event types emitted by the client."""

    READY = "ready"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"
    CHAT = "chat"
    PARTICIPANT_ADDED = "participant_added"
    PARTICIPANT_UPDATED = "participant_updated"
    PARTICIPANT_REMOVED = "participant_removed"
    DEBUG = "debug"


class SendResult(str, Enum):
    """Outcome of a facade send operation."""

    SENT = "sent"
    QUEUED = "queued"
    REJECTED = "rejected"


class PendingDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass(frozen=True, slots=True)
class Participant:
    """One user or bot in the current room."""

    id: str
    name: str
    role: str = DEFAULT_ROLE
    color: str | None = None


# -- Outbound commands ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Handshake:
    token: str | None = None
    kind: ClassVar[MessageKind] = MessageKind.HANDSHAKE


@dataclass(frozen=True, slots=True)
class Heartbeat:
    client_time: float
    kind: ClassVar[MessageKind] = MessageKind.HEARTBEAT


@dataclass(frozen=True, slots=True)
class SetRoom:
    room_id: str
    kind: ClassVar[MessageKind] = MessageKind.SET_ROOM


@dataclass(frozen=True, slots=True)
class SetUser:
    name: str
    kind: ClassVar[MessageKind] = MessageKind.SET_USER


@dataclass(frozen=True, slots=True)
class SendChat:
    message: str
    kind: ClassVar[MessageKind] = MessageKind.CHAT


@dataclass(frozen=True, slots=True)
class CursorMove:
    x: float
    y: float
    kind: ClassVar[MessageKind] = MessageKind.CURSOR


Command = Union[Handshake, Heartbeat, SetRoom, SetUser, SendChat, CursorMove]


# -- Inbound messages ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Hello:
    """Handshake acknowledgement. Carries the server clock and our identity."""

    server_time: float
    user: Participant | None = None
    motd: str | None = None
    kind: ClassVar[MessageKind] = MessageKind.HELLO


@dataclass(frozen=True, slots=True)
class RoomSnapshot:
    room_id: str | None
    participants: tuple[Participant, ...] = ()
    kind: ClassVar[MessageKind] = MessageKind.ROOM_SNAPSHOT


@dataclass(frozen=True, slots=True)
class ChatMessage:
    author_id: str
    text: str
    author_name: str | None = None
    time: float | None = None
    kind: ClassVar[MessageKind] = MessageKind.CHAT


@dataclass(frozen=True, slots=True)
class ParticipantJoin:
    participant: Participant
    kind: ClassVar[MessageKind] = MessageKind.PARTICIPANT_JOIN


@dataclass(frozen=True, slots=True)
class ParticipantLeave:
    participant_id: str
    kind: ClassVar[MessageKind] = MessageKind.PARTICIPANT_LEAVE


@dataclass(frozen=True, slots=True)
class TimeSync:
    server_time: float
    echoed_time: float | None = None
    kind: ClassVar[MessageKind] = MessageKind.TIME_SYNC


@dataclass(frozen=True, slots=True)
class Forwarded:
    """Any opcode without roster or clock semantics (notes, cursors, ...)."""

    opcode: str
    payload: dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[MessageKind] = MessageKind.FORWARDED


InboundMessage = Union[
    Hello, RoomSnapshot, ChatMessage, ParticipantJoin, ParticipantLeave, TimeSync, Forwarded
]


@dataclass(frozen=True, slots=True)
class ClientEvent:
    """An event delivered to consumers.

    Attributes:
        type: An :class:`EventType` value, or the raw wire opcode for
            forwarded messages (e.g. ``"n"`` for notes).
        payload: Event data as a dict.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Store plain strings so handler lookups by "chat" match EventType.CHAT
        if isinstance(self.type, Enum):
            object.__setattr__(self, "type", self.type.value)


# -- Configuration -------------------------------------------------------------


@dataclass
class ReconnectConfig:
    """Bounded-retry reconnection settings.

    Attributes:
        max_attempts: Attempts before the session is torn down.
        delay: Fixed wait in seconds between failed attempts.
    """

    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    delay: float = RECONNECT_DELAY


@dataclass
class ClientOptions:
    """Session configuration.

    Attributes:
        gateway: WebSocket URL of the server.
        token: Auth token sent with the handshake.
        room: Room joined once the handshake is acknowledged.
        username: Display name applied after READY. ``None`` keeps the
            name the server assigned.
        proxy: Proxy URL (``http://``, ``socks5://``) for the socket.
        origin: ``Origin`` header sent on the opening handshake.
        heartbeat_interval: Seconds between heartbeat ticks.
        keepalive_interval: Seconds between cursor/keep-alive ticks,
            ``None`` to disable the ticker.
        clock_steps: Sub-ticks per clock smoothing run.
        clock_duration: Seconds per clock smoothing run.
    """

    gateway: str = DEFAULT_GATEWAY
    token: str | None = None
    room: str = DEFAULT_ROOM
    username: str | None = None
    proxy: str | None = None
    origin: str | None = DEFAULT_ORIGIN
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    keepalive_interval: float | None = KEEPALIVE_INTERVAL
    clock_steps: int = CLOCK_SYNC_STEPS
    clock_duration: float = CLOCK_SYNC_DURATION
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, prefix: str = "MPP_", **overrides: Any) -> ClientOptions:
        """Build options from ``MPP_GATEWAY``, ``MPP_TOKEN``, ``MPP_ROOM``,
        ``MPP_USERNAME`` and ``MPP_PROXY``. Keyword overrides win."""
        env = {
            "gateway": os.environ.get(f"{prefix}GATEWAY"),
            "token": os.environ.get(f"{prefix}TOKEN"),
            "room": os.environ.get(f"{prefix}ROOM"),
            "username": os.environ.get(f"{prefix}USERNAME"),
            "proxy": os.environ.get(f"{prefix}PROXY"),
        }
        kwargs = {k: v for k, v in env.items() if v}
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclass(frozen=True)
class SessionInfo:
    """Read-only view of the session's lifecycle data."""

    state: SessionState
    reconnect_attempts: int
    clock_offset: float
    room: str
    username: str | None
    ready_at: float | None = None


@dataclass
class SessionStats:
    """Counters for a single session."""

    frames_received: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    protocol_violations: int = 0
    reconnect_count: int = 0
