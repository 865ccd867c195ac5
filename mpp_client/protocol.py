# =============================================================================
# MPP Python Client -- Wire Protocol Codec
# =============================================================================
#
# Every frame, in both directions, is a JSON array of objects. Each object
# carries its opcode in the "m" field, so one frame may batch many logical
# messages:
#
#   [{"m":"t","t":1700000000000,"e":1699999999950},{"m":"a","a":"hi",...}]
#
# Outgoing commands are encoded from typed dataclasses; incoming objects are
# parsed into typed messages. Opcodes without roster or clock semantics are
# passed through as ``Forwarded``.
# =============================================================================

from __future__ import annotations

import json
from typing import Any, Callable, Iterable

from ._logging import logger
from .constants import (
    DEFAULT_ROLE,
    MAX_MESSAGE_SIZE,
    OP_BYE,
    OP_CHANNEL,
    OP_CHAT,
    OP_CURSOR,
    OP_HELLO,
    OP_PARTICIPANT,
    OP_TIME,
    OP_USER_SET,
)
from .errors import ProtocolViolation, lookup
from .types import (
    ChatMessage,
    Command,
    CursorMove,
    Forwarded,
    Handshake,
    Heartbeat,
    Hello,
    InboundMessage,
    Participant,
    ParticipantJoin,
    ParticipantLeave,
    RoomSnapshot,
    SendChat,
    SetRoom,
    SetUser,
    TimeSync,
)

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


class MessageCodec:
    """Encode outgoing commands and decode incoming frames.

    Decoding is split in two so the caller can drop a single bad message
    without losing the rest of its frame: :meth:`split_frame` validates
    the envelope, :meth:`parse` turns one object into a typed message.
    Both raise :class:`~mpp_client.errors.ProtocolViolation`.
    """

    def __init__(self) -> None:
        self._parsers: dict[str, Callable[[dict[str, Any]], InboundMessage]] = {
            OP_HELLO: self._parse_hello,
            OP_CHANNEL: self._parse_channel,
            OP_CHAT: self._parse_chat,
            OP_PARTICIPANT: self._parse_participant_join,
            OP_BYE: self._parse_bye,
            OP_TIME: self._parse_time,
        }

    # -- Encoding --------------------------------------------------------------

    def encode(self, commands: Command | Iterable[Command]) -> str:
        """Encode one command, or several batched into one frame."""
        if not isinstance(commands, (list, tuple)):
            commands = [commands]
        return _json_dumps([self._encode_one(cmd) for cmd in commands])

    def _encode_one(self, cmd: Command) -> dict[str, Any]:
        if isinstance(cmd, Handshake):
            msg: dict[str, Any] = {"m": OP_HELLO}
            if cmd.token:
                msg["token"] = cmd.token
            return msg
        if isinstance(cmd, Heartbeat):
            return {"m": OP_TIME, "e": int(cmd.client_time)}
        if isinstance(cmd, SetRoom):
            return {"m": OP_CHANNEL, "_id": cmd.room_id}
        if isinstance(cmd, SetUser):
            return {"m": OP_USER_SET, "set": {"name": cmd.name}}
        if isinstance(cmd, SendChat):
            return {"m": OP_CHAT, "message": cmd.message}
        if isinstance(cmd, CursorMove):
            return {"m": OP_CURSOR, "x": cmd.x, "y": cmd.y}
        raise TypeError(f"Cannot encode {type(cmd).__name__}")

    # -- Decoding --------------------------------------------------------------

    def split_frame(self, data: str | bytes) -> list[Any]:
        """Validate a raw frame and return its message objects in order."""
        size = len(data) if isinstance(data, bytes) else len(data.encode("utf-8"))
        if size > MAX_MESSAGE_SIZE:
            raise ProtocolViolation(
                lookup("MALFORMED_FRAME", f"exceeds {MAX_MESSAGE_SIZE} bytes")
            )
        if isinstance(data, bytes):
            try:
                data = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolViolation(lookup("MALFORMED_FRAME", exc)) from exc
        try:
            parsed = _json_loads(data)
        except ValueError as exc:
            raise ProtocolViolation(lookup("MALFORMED_FRAME", exc)) from exc
        if not isinstance(parsed, list):
            raise ProtocolViolation(
                lookup("MALFORMED_FRAME", f"expected array, got {type(parsed).__name__}")
            )
        return parsed

    def parse(self, raw: Any) -> InboundMessage:
        """Parse one message object from a frame."""
        if not isinstance(raw, dict):
            raise ProtocolViolation(
                lookup("MALFORMED_FRAME", f"message is {type(raw).__name__}, not object")
            )
        op = raw.get("m")
        if not isinstance(op, str) or not op:
            raise ProtocolViolation(lookup("MALFORMED_MESSAGE", "?", "missing opcode"))
        parser = self._parsers.get(op)
        if parser is None:
            return Forwarded(opcode=op, payload=raw)
        return parser(raw)

    # -- Opcode parsers --------------------------------------------------------

    def _parse_hello(self, raw: dict[str, Any]) -> Hello:
        user = raw.get("u")
        motd = raw.get("motd")
        return Hello(
            server_time=_number(raw, "t", OP_HELLO),
            user=_participant(user, OP_HELLO) if isinstance(user, dict) else None,
            motd=motd if isinstance(motd, str) else None,
        )

    def _parse_channel(self, raw: dict[str, Any]) -> RoomSnapshot:
        people = raw.get("ppl", [])
        if not isinstance(people, list):
            raise ProtocolViolation(lookup("MALFORMED_MESSAGE", OP_CHANNEL, "ppl is not a list"))
        participants = []
        for entry in people:
            try:
                participants.append(_participant(entry, OP_CHANNEL))
            except ProtocolViolation as exc:
                logger.warning("Skipping roster entry: %s", exc)
        channel = raw.get("ch")
        room_id = channel.get("_id") if isinstance(channel, dict) else None
        return RoomSnapshot(
            room_id=room_id if isinstance(room_id, str) else None,
            participants=tuple(participants),
        )

    def _parse_chat(self, raw: dict[str, Any]) -> ChatMessage:
        text = raw.get("a")
        if not isinstance(text, str):
            raise ProtocolViolation(lookup("MALFORMED_MESSAGE", OP_CHAT, "missing text"))
        author = raw.get("p")
        if not isinstance(author, dict):
            raise ProtocolViolation(lookup("MALFORMED_MESSAGE", OP_CHAT, "missing author"))
        author_id = _identifier(author, OP_CHAT)
        name = author.get("name")
        sent_at = raw.get("t")
        return ChatMessage(
            author_id=author_id,
            text=text,
            author_name=name if isinstance(name, str) else None,
            time=float(sent_at) if _is_number(sent_at) else None,
        )

    def _parse_participant_join(self, raw: dict[str, Any]) -> ParticipantJoin:
        return ParticipantJoin(participant=_participant(raw, OP_PARTICIPANT))

    def _parse_bye(self, raw: dict[str, Any]) -> ParticipantLeave:
        participant_id = raw.get("p")
        if not isinstance(participant_id, str) or not participant_id:
            raise ProtocolViolation(lookup("MALFORMED_MESSAGE", OP_BYE, "missing id"))
        return ParticipantLeave(participant_id=participant_id)

    def _parse_time(self, raw: dict[str, Any]) -> TimeSync:
        echoed = raw.get("e")
        return TimeSync(
            server_time=_number(raw, "t", OP_TIME),
            echoed_time=float(echoed) if _is_number(echoed) else None,
        )


# -- Helpers -------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(raw: dict[str, Any], key: str, op: str) -> float:
    value = raw.get(key)
    if not _is_number(value):
        raise ProtocolViolation(lookup("MALFORMED_MESSAGE", op, f"'{key}' is not a number"))
    return float(value)


def _identifier(raw: dict[str, Any], op: str) -> str:
    ident = raw.get("_id") or raw.get("id")
    if not isinstance(ident, str) or not ident:
        raise ProtocolViolation(lookup("MALFORMED_MESSAGE", op, "missing participant id"))
    return ident


def _participant(raw: Any, op: str) -> Participant:
    if not isinstance(raw, dict):
        raise ProtocolViolation(lookup("MALFORMED_MESSAGE", op, "participant is not an object"))
    name = raw.get("name")
    color = raw.get("color")
    return Participant(
        id=_identifier(raw, op),
        name=name if isinstance(name, str) else "",
        role=_role(raw.get("tag")),
        color=color if isinstance(color, str) else None,
    )


def _role(tag: Any) -> str:
    # tag is either a bare string or {"text": ..., "color": ...}
    if isinstance(tag, dict):
        tag = tag.get("text")
    if isinstance(tag, str) and tag:
        return tag
    if tag is not None:
        logger.debug("Ignoring unrecognised tag %r", tag)
    return DEFAULT_ROLE
