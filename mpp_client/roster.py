# =============================================================================
# MPP Python Client -- Room Roster
# =============================================================================

from __future__ import annotations

from typing import Iterator

from .types import Participant


class Roster:
    """Participants in the current room, keyed by participant id.

    At most one entry per id. Upserts replace the stored entry, so
    replaying the same join or snapshot leaves the roster unchanged.
    """

    def __init__(self) -> None:
        self._participants: dict[str, Participant] = {}

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    def __iter__(self) -> Iterator[Participant]:
        return iter(list(self._participants.values()))

    def get(self, participant_id: str) -> Participant | None:
        return self._participants.get(participant_id)

    def ids(self) -> set[str]:
        return set(self._participants)

    def upsert(self, participant: Participant) -> Participant | None:
        """Insert or replace *participant*. Returns the previous entry."""
        previous = self._participants.get(participant.id)
        self._participants[participant.id] = participant
        return previous

    def merge(self, participants: tuple[Participant, ...] | list[Participant]) -> int:
        """Upsert every participant; existing entries not listed are kept.

        Returns the number of ids that were not present before.
        """
        added = 0
        for participant in participants:
            if self.upsert(participant) is None:
                added += 1
        return added

    def remove(self, participant_id: str) -> Participant | None:
        """Remove and return the entry for *participant_id*, if any."""
        return self._participants.pop(participant_id, None)

    def clear(self) -> None:
        self._participants.clear()

    def to_dict(self) -> dict[str, dict[str, str | None]]:
        return {
            p.id: {"name": p.name, "role": p.role, "color": p.color}
            for p in self._participants.values()
        }
