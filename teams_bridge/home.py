import bisect
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Optional

from .sync.events import Event, MessageEvent, ReactionSync
from .teams.models import to_ms


logger = logging.getLogger(__name__)


HISTORY_LIMIT = 1000


class MemoryHome:
    """In-process home side: records what the engine emits and answers its lookups."""

    def __init__(self, on_event: Optional[Callable[[Event], None]] = None, history: int = HISTORY_LIMIT):
        self.on_event = on_event
        # Most recent events only; 0 keeps none.
        self.events: deque[Event] = deque(maxlen=history)
        # (account, thread) -> sorted [(stream_order, message_id)]
        self._timeline: dict[tuple[str, str], list[tuple[int, str]]] = {}
        self._reactions: dict[tuple[str, str, str], int] = {}

    def emit(self, event: Event) -> None:
        self.events.append(event)
        if isinstance(event, MessageEvent):
            timeline = self._timeline.setdefault((event.account_id, event.thread_id), [])
            bisect.insort(timeline, (event.stream_order, event.message_id))
        elif isinstance(event, ReactionSync):
            count = sum(len(user.reactions) for user in event.users.values())
            self._reactions[(event.account_id, event.thread_id, event.target_message_id)] = count

        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.error("Event callback failed: %s", e)

    def of_type(self, kind: type) -> list:
        return [event for event in self.events if isinstance(event, kind)]

    async def message_at_or_before(self, account_id: str, thread_id: str, ts: datetime) -> Optional[str]:
        timeline = self._timeline.get((account_id, thread_id))
        if not timeline:
            return None
        idx = bisect.bisect_right(timeline, (to_ms(ts), "\U0010ffff"))
        if idx == 0:
            return None
        return timeline[idx - 1][1]

    async def reaction_count(self, account_id: str, thread_id: str, message_id: str) -> int:
        return self._reactions.get((account_id, thread_id, message_id), 0)
