# =============================================================================
# MPP Python Client -- Pending Queue
# =============================================================================
#
# Holds inbound messages and outbound commands that arrive before the session
# is READY. Drained once, in arrival order, when READY is reached.
# =============================================================================

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from ._logging import logger
from .constants import PENDING_QUEUE_SIZE
from .types import Command, InboundMessage, MessageKind, PendingDirection

# Inbound kinds handled in any state; these are what moves the session to READY.
INBOUND_BYPASS_KINDS = frozenset(
    {
        MessageKind.HELLO,
        MessageKind.TIME_SYNC,
        MessageKind.ROOM_SNAPSHOT,
    }
)

# Outbound kinds sent as soon as the socket is open, READY or not.
OUTBOUND_BYPASS_KINDS = frozenset({MessageKind.SET_ROOM})

# Outbound kinds buffered while no socket is usable. Anything else is rejected.
OUTBOUND_QUEUEABLE_KINDS = frozenset({MessageKind.SET_ROOM, MessageKind.SET_USER})


@dataclass
class PendingItem:
    """A message or command waiting for the session to become READY."""

    direction: PendingDirection
    message: InboundMessage | Command
    enqueued_at: float = 0.0

    @property
    def kind(self) -> MessageKind:
        return self.message.kind


class PendingQueue:
    """FIFO buffer for pre-READY traffic.

    Args:
        max_size: Maximum number of buffered items. Default 1000.
    """

    def __init__(self, *, max_size: int = PENDING_QUEUE_SIZE) -> None:
        self._max_size = max_size
        self._queue: deque[PendingItem] = deque()
        self._dropped = 0
        self._drained = 0

    @property
    def size(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, direction: PendingDirection, message: InboundMessage | Command) -> bool:
        """Append an item. Returns False if the queue is full."""
        if len(self._queue) >= self._max_size:
            self._dropped += 1
            logger.debug(
                "Pending queue full (%d), dropping %s %s",
                self._max_size,
                direction.value,
                message.kind.value,
            )
            return False
        self._queue.append(
            PendingItem(direction=direction, message=message, enqueued_at=time.monotonic())
        )
        return True

    def enqueue_inbound(self, message: InboundMessage) -> bool:
        return self.enqueue(PendingDirection.INBOUND, message)

    def enqueue_outbound(self, command: Command) -> bool:
        return self.enqueue(PendingDirection.OUTBOUND, command)

    def drain(self) -> list[PendingItem]:
        """Return every queued item front to back and empty the queue."""
        items = list(self._queue)
        self._queue.clear()
        self._drained += len(items)
        return items

    def clear(self) -> None:
        """Discard all queued items."""
        self._queue.clear()

    def oldest_age(self) -> float:
        """Seconds the front item has been waiting, 0.0 when empty."""
        if not self._queue:
            return 0.0
        return time.monotonic() - self._queue[0].enqueued_at

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._queue),
            "capacity": self._max_size,
            "dropped": self._dropped,
            "drained": self._drained,
            "oldest_age_seconds": round(self.oldest_age(), 3),
        }
