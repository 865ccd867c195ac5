# =============================================================================
# MPP Python Client -- Message Dispatcher
# =============================================================================
#
# Applies parsed inbound messages to the roster and clock, and turns them into
# consumer events. Dispatch is synchronous and strictly in the order given.
# =============================================================================

from __future__ import annotations

from typing import Any, Callable

from ._logging import logger
from .clock import ClockSynchronizer
from .constants import DEFAULT_ROLE, UNKNOWN_ROLE
from .roster import Roster
from .types import (
    ChatMessage,
    ClientEvent,
    EventType,
    Forwarded,
    Hello,
    InboundMessage,
    MessageKind,
    Participant,
    ParticipantJoin,
    ParticipantLeave,
    RoomSnapshot,
    TimeSync,
)


def participant_payload(participant: Participant) -> dict[str, Any]:
    return {
        "id": participant.id,
        "name": participant.name,
        "role": participant.role,
        "color": participant.color,
    }


class MessageDispatcher:
    """Route inbound messages to the roster, the clock and event handlers.

    Both chat and leave events carry ``known=False`` when the id is not in
    the roster, but the role differs. A chat author is marked ``"unknown"``
    because the message names someone the roster has not seen, and the
    name comes from the message itself. A leave for an unknown id carries
    the default participant metadata (empty name, ``"user"`` role), the
    same values a participant with no tag would have.

    Args:
        roster: Membership of the current room.
        clock: Receives server time samples.
        emit: Called with each consumer event, in dispatch order.
    """

    def __init__(
        self,
        roster: Roster,
        clock: ClockSynchronizer,
        emit: Callable[[ClientEvent], None],
    ) -> None:
        self._roster = roster
        self._clock = clock
        self._emit = emit
        self._handlers: dict[MessageKind, Callable[[Any], None]] = {
            MessageKind.HELLO: self._handle_hello,
            MessageKind.ROOM_SNAPSHOT: self._handle_room_snapshot,
            MessageKind.CHAT: self._handle_chat,
            MessageKind.PARTICIPANT_JOIN: self._handle_participant_join,
            MessageKind.PARTICIPANT_LEAVE: self._handle_participant_leave,
            MessageKind.TIME_SYNC: self._handle_time_sync,
            MessageKind.FORWARDED: self._handle_forwarded,
        }

    def dispatch(self, message: InboundMessage) -> None:
        handler = self._handlers.get(message.kind)
        if handler is None:
            logger.warning("No handler for message kind %s", message.kind.value)
            return
        handler(message)

    # -- Handlers -------------------------------------------------------------

    def _handle_hello(self, message: Hello) -> None:
        self._clock.sample(message.server_time)

    def _handle_time_sync(self, message: TimeSync) -> None:
        self._clock.sample(message.server_time, message.echoed_time)

    def _handle_room_snapshot(self, message: RoomSnapshot) -> None:
        # Additive: participants missing from the snapshot stay in the roster.
        added = self._roster.merge(message.participants)
        logger.debug(
            "Room snapshot %s: %d participants (%d new)",
            message.room_id,
            len(message.participants),
            added,
        )

    def _handle_chat(self, message: ChatMessage) -> None:
        known = self._roster.get(message.author_id)
        if known is not None:
            author = {
                "id": known.id,
                "name": known.name,
                "role": known.role,
                "known": True,
            }
        else:
            logger.debug("Chat from unknown author %s", message.author_id)
            author = {
                "id": message.author_id,
                "name": message.author_name or "",
                "role": UNKNOWN_ROLE,
                "known": False,
            }
        self._emit(
            ClientEvent(
                type=EventType.CHAT,
                payload={"content": message.text, "author": author, "time": message.time},
            )
        )

    def _handle_participant_join(self, message: ParticipantJoin) -> None:
        participant = message.participant
        previous = self._roster.upsert(participant)
        payload = participant_payload(participant)
        if previous is None:
            self._emit(ClientEvent(type=EventType.PARTICIPANT_ADDED, payload=payload))
            return
        payload["previous"] = {"name": previous.name, "role": previous.role}
        self._emit(ClientEvent(type=EventType.PARTICIPANT_UPDATED, payload=payload))

    def _handle_participant_leave(self, message: ParticipantLeave) -> None:
        previous = self._roster.remove(message.participant_id)
        if previous is None:
            logger.debug("Leave for unknown participant %s", message.participant_id)
            payload = {
                "id": message.participant_id,
                "name": "",
                "role": DEFAULT_ROLE,
                "color": None,
                "known": False,
            }
        else:
            payload = participant_payload(previous)
            payload["known"] = True
        self._emit(ClientEvent(type=EventType.PARTICIPANT_REMOVED, payload=payload))

    def _handle_forwarded(self, message: Forwarded) -> None:
        self._emit(ClientEvent(type=message.opcode, payload=message.payload))
